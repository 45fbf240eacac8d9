from sqlalchemy import Column, Integer, String, DateTime, Text, UniqueConstraint, BigInteger
from models.base import Base, BigIntPK, EntityType, RunStatus, enum_column_type, utcnow


class FetchCheckpoint(Base):
    """
    Tracks fetch progress per tenant and entity type.

    Purpose:
    - Resume a crashed fetch cycle from the last committed page cursor
    - Remember the window the cursor belongs to, so a resumed cycle keeps the
      same updated_at filter
    - Fetch statistics per tenant/entity

    Design:
    - One row per (tenant, entity type)
    - cursor is written in the same transaction as the page's raw rows and
      cleared when the cycle reaches the last page
    """
    __tablename__ = "fetch_checkpoints"

    id = Column(BigIntPK, primary_key=True, autoincrement=True)

    tenant_id = Column(String(255), nullable=False)
    entity_type = Column(enum_column_type(EntityType), nullable=False)

    # Checkpoint data
    cursor = Column(Text, nullable=True)  # next page to fetch, null when idle
    window_start = Column(DateTime, nullable=True)  # window of the in-flight cycle
    last_window_start = Column(DateTime, nullable=True)  # window of the last completed cycle

    # Statistics
    last_run_at = Column(DateTime, nullable=True, index=True)
    last_success_at = Column(DateTime, nullable=True)
    last_failure_at = Column(DateTime, nullable=True)

    total_runs = Column(Integer, nullable=False, default=0)
    total_records_fetched = Column(BigInteger, nullable=False, default=0)
    last_records_fetched = Column(Integer, nullable=False, default=0)

    # Status
    status = Column(enum_column_type(RunStatus), default=RunStatus.PENDING, nullable=False)
    error_message = Column(Text, nullable=True)

    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        UniqueConstraint("tenant_id", "entity_type", name="uq_checkpoint_tenant_entity"),
    )

    @property
    def in_flight(self) -> bool:
        return self.cursor is not None

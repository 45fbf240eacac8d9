from sqlalchemy import Column, String, Text, DateTime, Boolean, Integer, Index, UniqueConstraint
from models.base import Base, BigIntPK, EntityType, JSONType, enum_column_type, utcnow


class RawRecord(Base):
    """
    Verbatim upstream payloads, one row per (tenant, external id, source).

    Purpose:
    - Immutable audit trail of what the upstream API returned
    - Replay: normalized tables can be rebuilt from here
    - Work queue for the transform cycle (processed flag + claim marker)

    Design Decisions:
    - content_hash decides whether an upsert changed the payload; unchanged
      payloads keep their processed state
    - exhausted marks records that used up their retry budget; they stay
      processed=false but are never claimed again
    - claim_token/claimed_at implement the logical lock taken by a transform
      worker; a stale claim (worker crash) expires after the claim TTL
    """
    __tablename__ = "raw_records"

    id = Column(BigIntPK, primary_key=True, autoincrement=True)

    # Source identification
    tenant_id = Column(String(255), nullable=False, index=True)
    source_system = Column(String(50), nullable=False, default="shopify")
    external_id = Column(String(255), nullable=False)
    entity_type = Column(enum_column_type(EntityType), nullable=False)
    event_type = Column(String(100), nullable=False)

    # Raw data storage
    payload = Column(JSONType, nullable=False)
    content_hash = Column(String(64), nullable=False)

    received_at = Column(DateTime, nullable=False, default=utcnow)

    # Processing tracking
    processed = Column(Boolean, nullable=False, default=False)
    processed_at = Column(DateTime, nullable=True)

    # Error handling
    error_message = Column(Text, nullable=True)
    retry_count = Column(Integer, nullable=False, default=0)
    max_retries = Column(Integer, nullable=False, default=3)
    next_retry_at = Column(DateTime, nullable=True)
    exhausted = Column(Boolean, nullable=False, default=False)

    # Claim marker
    claim_token = Column(String(64), nullable=True)
    claimed_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        UniqueConstraint("tenant_id", "external_id", "source_system", name="uq_raw_tenant_external_source"),
        Index("idx_raw_unprocessed", "tenant_id", "entity_type", "processed", "received_at"),
        Index("idx_raw_retry", "next_retry_at"),
    )

    def __repr__(self) -> str:
        return f"<RawRecord {self.tenant_id}/{self.entity_type}/{self.external_id} processed={self.processed}>"

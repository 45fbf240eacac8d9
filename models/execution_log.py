from sqlalchemy import Column, BigInteger, String, DateTime, Integer, Text, Index, ForeignKey
from sqlalchemy.orm import relationship
from models.base import Base, BigIntPK, FlowType, JSONType, RunStatus, TriggerSource, enum_column_type, utcnow


class ExecutionLogEntry(Base):
    """
    One row per pipeline invocation.

    Purpose:
    - Audit trail of every sync run and each of its steps
    - Retry scheduling (status=retrying + next_retry_at)
    - Drill-down: a summary entry and its step entries share correlation_id,
      steps point at the summary through parent_log_id

    Status transitions are enforced by sync.execution_log; terminal rows are
    never rewritten.
    """
    __tablename__ = "integration_logs"

    id = Column(BigIntPK, primary_key=True, autoincrement=True)

    # Flow identification
    flow_name = Column(String(200), nullable=False, index=True)
    flow_type = Column(enum_column_type(FlowType), nullable=False, index=True)
    source_system = Column(String(50), nullable=False, default="shopify")

    # Multi-tenant support
    tenant_id = Column(String(255), nullable=False, index=True)

    # Flow execution
    status = Column(enum_column_type(RunStatus), nullable=False, default=RunStatus.PENDING, index=True)
    started_at = Column(DateTime, nullable=False, default=utcnow)
    completed_at = Column(DateTime, nullable=True)
    duration_ms = Column(BigInteger, nullable=True)

    # Data metrics
    records_total = Column(Integer, nullable=False, default=0)
    records_success = Column(Integer, nullable=False, default=0)
    records_failed = Column(Integer, nullable=False, default=0)
    records_skipped = Column(Integer, nullable=False, default=0)
    records_updated = Column(Integer, nullable=False, default=0)

    # Error tracking
    error_message = Column(Text, nullable=True)
    error_details = Column(JSONType, nullable=True)
    stack_trace = Column(Text, nullable=True)

    # Retry information
    retry_count = Column(Integer, nullable=False, default=0)
    max_retries = Column(Integer, nullable=False, default=3)
    next_retry_at = Column(DateTime, nullable=True)

    # Context and metadata
    context = Column(JSONType, nullable=True)  # tenant config snapshot
    run_metadata = Column("metadata", JSONType, nullable=True)
    triggered_by = Column(enum_column_type(TriggerSource), nullable=True)
    correlation_id = Column(String(64), nullable=True, index=True)

    # Parent/child correlation
    parent_log_id = Column(BigInteger, ForeignKey("integration_logs.id", ondelete="SET NULL"), nullable=True)
    child_log_count = Column(Integer, nullable=False, default=0)

    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    # Relationships
    parent = relationship("ExecutionLogEntry", remote_side=[id], back_populates="children")
    children = relationship("ExecutionLogEntry", back_populates="parent", order_by="ExecutionLogEntry.id")

    __table_args__ = (
        Index("idx_integration_logs_tenant_started", "tenant_id", "started_at"),
        Index("idx_integration_logs_tenant_status_started", "tenant_id", "status", "started_at"),
        Index("idx_integration_logs_retry", "status", "next_retry_at"),
    )

    @property
    def is_summary(self) -> bool:
        return self.parent_log_id is None

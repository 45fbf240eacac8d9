"""
SQLAlchemy ORM models for database tables.

Models:
    base: Declarative base, shared enums (EntityType, RunStatus, FlowType, TriggerSource)
    raw_data: Verbatim upstream payloads with processing/retry bookkeeping
    normalized_data: Orders, order lines, products and variants
    execution_log: Execution log (integration_logs) entries
    checkpoint: Durable fetch cursors per tenant and entity type

Database Schema:
    JSON columns use JSONB on PostgreSQL and plain JSON elsewhere. All
    timestamps are naive UTC.

Usage:
    from models import RawRecord, NormalizedOrder, ExecutionLogEntry
    from models.base import EntityType, RunStatus

Relationships:
    - RawRecord -> Normalized* (back-reference through raw_record_id)
    - NormalizedOrder -> NormalizedOrderLine (tenant, external id)
    - NormalizedProduct -> NormalizedVariant (tenant, external id)
    - ExecutionLogEntry -> ExecutionLogEntry (parent_log_id)
"""

from models.base import Base, EntityType, RunStatus, FlowType, TriggerSource
from models.raw_data import RawRecord
from models.normalized_data import (
    NormalizedOrder,
    NormalizedOrderLine,
    NormalizedProduct,
    NormalizedVariant,
)
from models.execution_log import ExecutionLogEntry
from models.checkpoint import FetchCheckpoint

__all__ = [
    "Base",
    "EntityType",
    "RunStatus",
    "FlowType",
    "TriggerSource",
    "RawRecord",
    "NormalizedOrder",
    "NormalizedOrderLine",
    "NormalizedProduct",
    "NormalizedVariant",
    "ExecutionLogEntry",
    "FetchCheckpoint",
]

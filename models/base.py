from datetime import datetime, timezone
from sqlalchemy import JSON, BigInteger, Enum, Integer
from sqlalchemy.orm import declarative_base
from sqlalchemy.dialects.postgresql import JSONB
import enum

Base = declarative_base()

# JSONB on PostgreSQL, plain JSON elsewhere (tests run on SQLite)
JSONType = JSON().with_variant(JSONB(), "postgresql")

# SQLite only autoincrements INTEGER PRIMARY KEY
BigIntPK = BigInteger().with_variant(Integer, "sqlite")


def enum_column_type(enum_cls) -> Enum:
    """Enum column storing member values ('orders') rather than names"""
    return Enum(enum_cls, values_callable=lambda members: [m.value for m in members])


def utcnow() -> datetime:
    """Naive UTC timestamp, the storage convention for every column"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


# ============================================================================
# ENUMS
# ============================================================================

class EntityType(str, enum.Enum):
    """Upstream entity families that are synced"""
    ORDERS = "orders"
    PRODUCTS = "products"


class RunStatus(str, enum.Enum):
    """Execution log status"""
    PENDING = "pending"
    RUNNING = "running"
    SUCCESS = "success"
    PARTIAL = "partial"
    FAILED = "failed"
    RETRYING = "retrying"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self not in (RunStatus.PENDING, RunStatus.RUNNING)


class FlowType(str, enum.Enum):
    """Kind of pipeline invocation recorded in the execution log"""
    FETCH_ORDERS = "fetch_orders"
    FETCH_PRODUCTS = "fetch_products"
    TRANSFORM_ORDERS = "transform_orders"
    TRANSFORM_PRODUCTS = "transform_products"
    SYNC_FULL = "sync_full"
    SYNC_INCREMENTAL = "sync_incremental"
    CLEANUP = "cleanup"
    RECONCILIATION = "reconciliation"
    VALIDATION = "validation"
    CUSTOM = "custom"

    @classmethod
    def fetch_for(cls, entity_type: EntityType) -> "FlowType":
        return cls(f"fetch_{entity_type.value}")

    @classmethod
    def transform_for(cls, entity_type: EntityType) -> "FlowType":
        return cls(f"transform_{entity_type.value}")


class TriggerSource(str, enum.Enum):
    """What started a run"""
    SCHEDULER = "scheduler"
    MANUAL = "manual"
    RETRY = "retry"

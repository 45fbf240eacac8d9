"""
Raw record store: verbatim upstream payloads plus the transform work queue.
"""

import hashlib
import json
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy import and_, case, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from core.config import settings
from core.database import dialect_insert
from core.exceptions import StoreError
from core.retry import RetryPolicy
from models.base import EntityType, utcnow
from models.raw_data import RawRecord

logger = logging.getLogger(__name__)

ERROR_MESSAGE_MAX_LENGTH = 4000


def compute_content_hash(payload: Dict[str, Any]) -> str:
    """SHA-256 of the canonical JSON form (sorted keys, no whitespace)"""
    canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class FailureOutcome:
    retry_count: int
    exhausted: bool
    next_retry_at: Optional[datetime]


class RawStore:
    """
    Persist and hand out raw records.

    Ensures:
    - One row per (tenant, external id, source system); re-fetching an
      unchanged payload keeps its processed state
    - A record is claimed by at most one transform worker at a time
    - Failed records are retried with backoff until their budget is spent
    """

    def __init__(self, db_session: AsyncSession, claim_ttl_seconds: int = settings.CLAIM_TTL_SECONDS):
        self.db = db_session
        self.claim_ttl = timedelta(seconds=claim_ttl_seconds)

    async def upsert_raw(
        self,
        tenant_id: str,
        external_id: str,
        source_system: str,
        event_type: str,
        payload: Dict[str, Any],
        entity_type: EntityType,
        max_retries: int = 3,
        received_at: Optional[datetime] = None,
    ) -> int:
        """
        Insert or update one raw record (INSERT ON CONFLICT UPDATE).

        The caller commits; the fetch cycle commits a whole page at once.

        Returns:
            Raw record id
        """
        now = received_at or utcnow()
        insert = dialect_insert(self.db)

        stmt = insert(RawRecord).values(
            tenant_id=tenant_id,
            source_system=source_system,
            external_id=str(external_id),
            entity_type=entity_type,
            event_type=event_type,
            payload=payload,
            content_hash=compute_content_hash(payload),
            received_at=now,
            processed=False,
            retry_count=0,
            max_retries=max_retries,
            exhausted=False,
            created_at=now,
            updated_at=now,
        )

        # Processing state survives only when the content is unchanged
        unchanged = RawRecord.content_hash == stmt.excluded.content_hash
        stmt = stmt.on_conflict_do_update(
            index_elements=["tenant_id", "external_id", "source_system"],
            set_={
                "payload": stmt.excluded.payload,
                "event_type": stmt.excluded.event_type,
                "entity_type": stmt.excluded.entity_type,
                "received_at": stmt.excluded.received_at,
                "content_hash": stmt.excluded.content_hash,
                "max_retries": stmt.excluded.max_retries,
                "updated_at": stmt.excluded.updated_at,
                "processed": case((unchanged, RawRecord.processed), else_=False),
                "processed_at": case((unchanged, RawRecord.processed_at), else_=None),
                "error_message": case((unchanged, RawRecord.error_message), else_=None),
                "retry_count": case((unchanged, RawRecord.retry_count), else_=0),
                "next_retry_at": case((unchanged, RawRecord.next_retry_at), else_=None),
                "exhausted": case((unchanged, RawRecord.exhausted), else_=False),
            }
        ).returning(RawRecord.id)

        result = await self.db.execute(stmt)
        return result.scalar_one()

    def _eligible(self, tenant_id: str, entity_type: EntityType, as_of: datetime):
        stale_before = as_of - self.claim_ttl
        return and_(
            RawRecord.tenant_id == tenant_id,
            RawRecord.entity_type == entity_type,
            RawRecord.processed.is_(False),
            RawRecord.exhausted.is_(False),
            or_(RawRecord.retry_count == 0, RawRecord.next_retry_at <= as_of),
            or_(RawRecord.claim_token.is_(None), RawRecord.claimed_at < stale_before),
        )

    async def claim_unprocessed_batch(
        self,
        tenant_id: str,
        entity_type: EntityType,
        batch_size: int,
        as_of: Optional[datetime] = None,
    ) -> List[RawRecord]:
        """
        Atomically claim up to ``batch_size`` unprocessed records, oldest first.

        A single UPDATE ... WHERE id IN (SELECT ... FOR UPDATE SKIP LOCKED)
        RETURNING statement takes the claim, so two workers never receive the
        same record. The claim is committed before returning.

        Args:
            as_of: Retry eligibility instant (defaults to now). The transform
                cycle passes its start time so records failed during the cycle
                are not picked up again by the same cycle.

        Returns:
            Detached RawRecord snapshots
        """
        as_of = as_of or utcnow()
        token = uuid.uuid4().hex
        eligible = self._eligible(tenant_id, entity_type, as_of)

        candidates = (
            select(RawRecord.id)
            .where(eligible)
            .order_by(RawRecord.received_at, RawRecord.id)
            .limit(batch_size)
            .with_for_update(skip_locked=True)
        )

        stmt = (
            update(RawRecord)
            .where(RawRecord.id.in_(candidates), eligible)
            .values(claim_token=token, claimed_at=utcnow())
            .returning(RawRecord)
            .execution_options(synchronize_session=False, populate_existing=True)
        )

        result = await self.db.execute(stmt)
        records = list(result.scalars().all())
        await self.db.commit()

        for record in records:
            self.db.expunge(record)
        records.sort(key=lambda r: (r.received_at, r.id))

        if records:
            logger.debug(f"Claimed {len(records)} {entity_type.value} raw records for {tenant_id} (claim {token})")
        return records

    async def _get(self, record_id: int) -> RawRecord:
        record = await self.db.get(RawRecord, record_id)
        if record is None:
            raise StoreError(
                "Raw record not found",
                context={"raw_record_id": record_id, "table_name": "raw_records"}
            )
        return record

    async def mark_processed(
        self,
        record_id: int,
        content_hash: Optional[str] = None,
        commit: bool = True,
    ) -> bool:
        """
        Mark a record processed and release its claim.

        When ``content_hash`` is given the record is only marked if its payload
        is still the one that was transformed; a payload replaced meanwhile
        stays unprocessed and is picked up again.

        Returns:
            True if the record was marked processed
        """
        conditions = [RawRecord.id == record_id]
        if content_hash is not None:
            conditions.append(RawRecord.content_hash == content_hash)

        result = await self.db.execute(
            update(RawRecord)
            .where(*conditions)
            .values(
                processed=True,
                processed_at=utcnow(),
                error_message=None,
                next_retry_at=None,
                claim_token=None,
                claimed_at=None,
            )
            .execution_options(synchronize_session=False)
        )
        marked = result.rowcount > 0

        if not marked:
            # Payload changed under the claim; release it so the new content is processed
            await self.db.execute(
                update(RawRecord)
                .where(RawRecord.id == record_id)
                .values(claim_token=None, claimed_at=None)
                .execution_options(synchronize_session=False)
            )
            logger.info(f"Raw record {record_id} changed while being processed; left for the next batch")

        if commit:
            await self.db.commit()
        return marked

    async def mark_failed(
        self,
        record_id: int,
        error: Exception,
        policy: RetryPolicy,
        next_retry_at: Optional[datetime] = None,
        now: Optional[datetime] = None,
    ) -> FailureOutcome:
        """
        Record a processing failure and schedule the next attempt.

        retry_count is incremented; once it reaches the record's max_retries
        the record is marked exhausted and is never claimed again.
        """
        now = now or utcnow()
        record = await self._get(record_id)

        record.retry_count = (record.retry_count or 0) + 1
        record.error_message = str(error)[:ERROR_MESSAGE_MAX_LENGTH]
        record.claim_token = None
        record.claimed_at = None

        if record.retry_count >= record.max_retries:
            record.exhausted = True
            record.next_retry_at = None
            logger.warning(
                f"Raw record {record.external_id} exhausted its retry budget "
                f"({record.retry_count}/{record.max_retries})"
            )
        else:
            record.next_retry_at = next_retry_at or policy.next_retry_at(record.retry_count - 1, now)

        outcome = FailureOutcome(
            retry_count=record.retry_count,
            exhausted=record.exhausted,
            next_retry_at=record.next_retry_at,
        )
        await self.db.commit()
        return outcome

    async def release_claims(self, record_ids: List[int]) -> None:
        """Hand claimed but unprocessed records back to the queue"""
        if not record_ids:
            return
        await self.db.execute(
            update(RawRecord)
            .where(RawRecord.id.in_(record_ids), RawRecord.processed.is_(False))
            .values(claim_token=None, claimed_at=None)
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()

    async def count_exhausted(self, tenant_id: str, entity_type: EntityType) -> int:
        result = await self.db.execute(
            select(func.count(RawRecord.id)).where(
                RawRecord.tenant_id == tenant_id,
                RawRecord.entity_type == entity_type,
                RawRecord.exhausted.is_(True),
            )
        )
        return result.scalar_one()

    async def exhausted_external_ids(
        self, tenant_id: str, entity_type: EntityType, limit: int = 100
    ) -> List[str]:
        result = await self.db.execute(
            select(RawRecord.external_id)
            .where(
                RawRecord.tenant_id == tenant_id,
                RawRecord.entity_type == entity_type,
                RawRecord.exhausted.is_(True),
            )
            .order_by(RawRecord.external_id)
            .limit(limit)
        )
        return list(result.scalars().all())

    async def count_pending(self, tenant_id: str, entity_type: EntityType) -> int:
        """Unprocessed, non-exhausted records (claimed or not)"""
        result = await self.db.execute(
            select(func.count(RawRecord.id)).where(
                RawRecord.tenant_id == tenant_id,
                RawRecord.entity_type == entity_type,
                RawRecord.processed.is_(False),
                RawRecord.exhausted.is_(False),
            )
        )
        return result.scalar_one()

"""
Load normalized entities with upsert logic (idempotency)
"""

import enum
import logging
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from core.database import dialect_insert
from core.exceptions import IntegrityViolationError
from models.base import utcnow
from models.normalized_data import (
    NormalizedOrder,
    NormalizedOrderLine,
    NormalizedProduct,
    NormalizedVariant,
)
from schemas.normalized import (
    ChildEntity,
    OrderCreate,
    OrderLineCreate,
    ParentEntity,
    ProductCreate,
    TransformResult,
    VariantCreate,
)

logger = logging.getLogger(__name__)

KEY_COLUMNS = ("tenant_id", "external_id", "source_system")

ENTITY_MODELS = {
    OrderCreate: NormalizedOrder,
    OrderLineCreate: NormalizedOrderLine,
    ProductCreate: NormalizedProduct,
    VariantCreate: NormalizedVariant,
}

# child model -> (column holding the parent's external id, parent model)
CHILD_PARENTS = {
    NormalizedOrderLine: ("order_external_id", NormalizedOrder),
    NormalizedVariant: ("product_external_id", NormalizedProduct),
}


class UpsertOutcome(str, enum.Enum):
    INSERTED = "inserted"
    UPDATED = "updated"


class NormalizedStore:
    """
    Write normalized entities with idempotent upsert operations.

    Ensures:
    - No duplicate rows on repeated runs (key: tenant, external id, source)
    - Business fields always reflect the latest payload; inserted_at is kept
    - A parent's child set is replaced as a whole, never merged
    - Database integrity errors surface as IntegrityViolationError tagged with
      the offending external id

    Nothing here commits: the transform cycle commits the normalized write
    together with marking the raw record processed.
    """

    def __init__(self, db_session: AsyncSession):
        self.db = db_session

    @staticmethod
    def model_for(entity) -> Any:
        try:
            return ENTITY_MODELS[type(entity)]
        except KeyError:
            raise TypeError(f"No table for {type(entity).__name__}")

    async def _exists(self, model, tenant_id: str, external_id: str, source_system: str) -> bool:
        result = await self.db.execute(
            select(model.id).where(
                model.tenant_id == tenant_id,
                model.external_id == external_id,
                model.source_system == source_system,
            )
        )
        return result.first() is not None

    @staticmethod
    def _values(entity, raw_record_id: Optional[int], now) -> Dict[str, Any]:
        values = entity.model_dump()
        values["raw_record_id"] = raw_record_id
        values["inserted_at"] = now
        values["synced_at"] = now
        return values

    async def _execute(self, stmt, model, external_id: str, **context) -> None:
        try:
            await self.db.execute(stmt)
        except IntegrityError as e:
            raise IntegrityViolationError(
                f"Integrity violation writing {model.__tablename__}",
                context={"external_id": external_id, "table_name": model.__tablename__, **context},
                original_exception=e
            )

    async def upsert_entity(self, entity: ParentEntity, raw_record_id: Optional[int] = None) -> UpsertOutcome:
        """
        Insert or update one entity (INSERT ON CONFLICT UPDATE).

        Returns:
            INSERTED if no row existed for the key, UPDATED otherwise
        """
        model = self.model_for(entity)
        existed = await self._exists(model, entity.tenant_id, entity.external_id, entity.source_system)

        values = self._values(entity, raw_record_id, utcnow())
        insert = dialect_insert(self.db)
        stmt = insert(model).values(**values)
        stmt = stmt.on_conflict_do_update(
            index_elements=list(KEY_COLUMNS),
            set_={
                name: stmt.excluded[name]
                for name in values
                if name not in KEY_COLUMNS and name != "inserted_at"
            }
        )
        await self._execute(stmt, model, entity.external_id)

        return UpsertOutcome.UPDATED if existed else UpsertOutcome.INSERTED

    async def upsert_children(
        self,
        parent: ParentEntity,
        children: Sequence[ChildEntity],
        raw_record_id: Optional[int] = None,
        child_model=None,
    ) -> int:
        """
        Replace the parent's child set with ``children``.

        The parent must already exist. Existing children of the parent are
        deleted and the new set is inserted, so a child missing from the new
        payload disappears.

        Returns:
            Number of children written
        """
        parent_model = self.model_for(parent)
        if child_model is None:
            child_model = NormalizedOrderLine if parent_model is NormalizedOrder else NormalizedVariant
        parent_column, expected_parent = CHILD_PARENTS[child_model]
        if expected_parent is not parent_model:
            raise TypeError(f"{child_model.__tablename__} rows cannot belong to {parent_model.__tablename__}")

        if not await self._exists(parent_model, parent.tenant_id, parent.external_id, parent.source_system):
            raise IntegrityViolationError(
                f"Parent {parent.external_id} does not exist in {parent_model.__tablename__}",
                context={
                    "external_id": parent.external_id,
                    "table_name": child_model.__tablename__,
                    "child_external_ids": [c.external_id for c in children][:20],
                }
            )

        await self.db.execute(
            delete(child_model).where(
                child_model.tenant_id == parent.tenant_id,
                child_model.source_system == parent.source_system,
                getattr(child_model, parent_column) == parent.external_id,
            )
        )

        insert = dialect_insert(self.db)
        now = utcnow()
        for child in children:
            if getattr(child, parent_column) != parent.external_id:
                raise IntegrityViolationError(
                    f"Child {child.external_id} references another parent",
                    context={
                        "external_id": child.external_id,
                        "parent_external_id": parent.external_id,
                        "table_name": child_model.__tablename__,
                    }
                )
            stmt = insert(child_model).values(**self._values(child, raw_record_id, now))
            await self._execute(
                stmt,
                child_model,
                child.external_id,
                parent_external_id=parent.external_id
            )

        return len(children)

    async def write_unit(self, result: TransformResult, raw_record_id: Optional[int] = None) -> UpsertOutcome:
        """
        Write a parent and its complete child set.

        Both writes happen in the session's current transaction; the caller
        commits or rolls back the unit as a whole.
        """
        outcome = await self.upsert_entity(result.parent, raw_record_id)
        written = await self.upsert_children(result.parent, result.children, raw_record_id)
        logger.debug(
            f"{outcome.value} {result.entity_type.value} {result.external_id} with {written} children"
        )
        return outcome

    async def get_children(self, parent: ParentEntity) -> List[Any]:
        parent_model = self.model_for(parent)
        child_model = NormalizedOrderLine if parent_model is NormalizedOrder else NormalizedVariant
        parent_column, _ = CHILD_PARENTS[child_model]
        result = await self.db.execute(
            select(child_model)
            .where(
                child_model.tenant_id == parent.tenant_id,
                child_model.source_system == parent.source_system,
                getattr(child_model, parent_column) == parent.external_id,
            )
            .order_by(child_model.external_id)
        )
        return list(result.scalars().all())

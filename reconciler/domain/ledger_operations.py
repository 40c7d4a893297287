"""Domain operations for the billing event ledger."""

import logging
import uuid as uuid_pkg
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import func, select, update
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.ext.asyncio import AsyncSession

from reconciler.models.billing import BillingEvent

logger = logging.getLogger(__name__)


@dataclass
class LedgerInsert:
    """Result of a ledger insert attempt."""

    inserted: bool
    entry_id: uuid_pkg.UUID | None


class LedgerOperations:
    """
    Operations for the append-only billing event ledger.

    The unique constraint on `dedupe_key` is the idempotency boundary for the
    whole pipeline: exactly one caller observes `inserted=True` for a key.
    """

    def __init__(self) -> None:
        self.model = BillingEvent

    async def record_event(
        self,
        db: AsyncSession,
        *,
        dedupe_key: str,
        event_type: str,
        workspace_id: uuid_pkg.UUID | None = None,
        object_id: str | None = None,
        status: str | None = None,
        meta: dict[str, Any] | None = None,
        actor_email: str | None = None,
    ) -> LedgerInsert:
        """
        Insert a ledger row unless one with the same dedupe key exists.

        Returns inserted=False and the existing entry id on a duplicate. A
        concurrent insert of the same key blocks on the unique index until the
        other transaction finishes, so the fallback read sees the winner's row.
        """
        stmt = (
            insert(self.model)
            .values(
                id=uuid_pkg.uuid4(),
                dedupe_key=dedupe_key,
                workspace_id=workspace_id,
                actor_email=actor_email,
                event_type=event_type,
                object_id=object_id,
                status=status,
                meta=meta or {},
                created_at=datetime.now(UTC),
            )
            .on_conflict_do_nothing(index_elements=["dedupe_key"])
            .returning(self.model.id)
        )
        result = await db.execute(stmt)
        entry_id = result.scalar_one_or_none()
        if entry_id is not None:
            return LedgerInsert(inserted=True, entry_id=entry_id)

        existing = await self.get_by_dedupe_key(db, dedupe_key)
        logger.info(f"[ledger] Duplicate dedupe key {dedupe_key}")
        return LedgerInsert(inserted=False, entry_id=existing.id if existing else None)

    async def annotate_outcome(
        self,
        db: AsyncSession,
        entry_id: uuid_pkg.UUID,
        outcome: dict[str, Any],
        workspace_id: uuid_pkg.UUID | None = None,
    ) -> None:
        """
        Attach the pipeline outcome to a ledger row.

        The original event columns are never rewritten; `workspace_id` is only
        filled in when it was still null at insert time.
        """
        values: dict[str, Any] = {
            "outcome": outcome,
            "annotated_at": datetime.now(UTC),
        }
        if workspace_id is not None:
            values["workspace_id"] = func.coalesce(self.model.workspace_id, workspace_id)

        stmt = update(self.model).where(self.model.id == entry_id).values(**values)  # type: ignore[arg-type]
        await db.execute(stmt)

    async def get(
        self,
        db: AsyncSession,
        entry_id: uuid_pkg.UUID,
        for_update: bool = False,
    ) -> BillingEvent | None:
        statement = select(self.model).where(self.model.id == entry_id)  # type: ignore[arg-type]
        if for_update:
            statement = statement.with_for_update().execution_options(populate_existing=True)
        result = await db.execute(statement)
        return result.scalar_one_or_none()

    async def get_by_dedupe_key(self, db: AsyncSession, dedupe_key: str) -> BillingEvent | None:
        statement = select(self.model).where(self.model.dedupe_key == dedupe_key)  # type: ignore[arg-type]
        result = await db.execute(statement)
        return result.scalar_one_or_none()

    async def list_for_workspace(
        self,
        db: AsyncSession,
        workspace_id: uuid_pkg.UUID,
        limit: int = 50,
    ) -> list[BillingEvent]:
        """Most recent ledger rows for a workspace, newest first."""
        statement = (
            select(self.model)
            .where(self.model.workspace_id == workspace_id)  # type: ignore[arg-type]
            .order_by(self.model.created_at.desc())  # type: ignore[attr-defined]
            .limit(limit)
        )
        result = await db.execute(statement)
        return list(result.scalars().all())


ledger_ops = LedgerOperations()

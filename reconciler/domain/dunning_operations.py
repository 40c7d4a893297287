"""Domain operations for per-workspace dunning state."""

import uuid as uuid_pkg

from sqlalchemy import select
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.ext.asyncio import AsyncSession

from reconciler.models.dunning import DunningState


class DunningOperations:
    """Row access for DunningState. Transition rules live in the dunning service."""

    def __init__(self) -> None:
        self.model = DunningState

    async def get(
        self,
        db: AsyncSession,
        workspace_id: uuid_pkg.UUID,
        for_update: bool = False,
    ) -> DunningState | None:
        """Get a workspace's dunning row, optionally locking it (SELECT ... FOR UPDATE)."""
        statement = select(self.model).where(self.model.workspace_id == workspace_id)  # type: ignore[arg-type]
        if for_update:
            statement = statement.with_for_update().execution_options(populate_existing=True)
        result = await db.execute(statement)
        return result.scalar_one_or_none()

    async def get_or_create_locked(
        self,
        db: AsyncSession,
        workspace_id: uuid_pkg.UUID,
    ) -> DunningState:
        """
        Ensure a dunning row exists, then return it row-locked.

        Concurrent callers serialize on the row lock until the holding
        transaction ends, so read-compare-write on the row is safe.
        """
        stmt = (
            insert(self.model)
            .values(id=uuid_pkg.uuid4(), workspace_id=workspace_id, recovery_required=False)
            .on_conflict_do_nothing(index_elements=["workspace_id"])
        )
        await db.execute(stmt)
        state = await self.get(db, workspace_id, for_update=True)
        if state is None:
            raise RuntimeError(f"Dunning row for workspace {workspace_id} vanished after upsert")
        return state

    async def save(self, db: AsyncSession, state: DunningState) -> DunningState:
        db.add(state)
        await db.flush()
        return state

    async def list_recovery_required(self, db: AsyncSession) -> list[DunningState]:
        """Every workspace currently in payment recovery."""
        statement = (
            select(self.model)
            .where(self.model.recovery_required.is_(True))  # type: ignore[attr-defined]
            .order_by(self.model.workspace_id)
        )
        result = await db.execute(statement)
        return list(result.scalars().all())


dunning_ops = DunningOperations()

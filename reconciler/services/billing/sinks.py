"""Plan sinks - every storage location that holds a workspace's plan.

The canonical record is the system of record; mirrors are legacy copies
kept for older read paths. Each sink writes and reads back independently.
New mirrors are added by registering another PlanSink subclass.
"""

import logging
import uuid as uuid_pkg
from abc import ABC, abstractmethod
from datetime import UTC, datetime

from sqlalchemy import func, select, update
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.ext.asyncio import AsyncSession

from reconciler.models.billing import WorkspaceBilling
from reconciler.models.user import User
from reconciler.models.workspace import Workspace, WorkspaceMember
from reconciler.services.billing.types import PlanUpdate

logger = logging.getLogger(__name__)


class PlanSink(ABC):
    """A location holding a copy of the workspace plan."""

    name: str

    @abstractmethod
    async def write(self, db: AsyncSession, plan_update: PlanUpdate) -> bool:
        """Apply the plan. True iff at least one row was written."""

    @abstractmethod
    async def read(self, db: AsyncSession, workspace_id: uuid_pkg.UUID) -> str | None:
        """Read the plan back, or None if this location has no row for the workspace."""


class CanonicalBillingSink(PlanSink):
    """The canonical `workspace_billing` record (upsert keyed by workspace)."""

    name = "workspace"

    async def write(self, db: AsyncSession, plan_update: PlanUpdate) -> bool:
        now = datetime.now(UTC)
        stmt = insert(WorkspaceBilling).values(
            id=uuid_pkg.uuid4(),
            workspace_id=plan_update.workspace_id,
            plan=plan_update.plan,
            interval=plan_update.interval,
            status=plan_update.status,
            provider_customer_id=plan_update.provider_customer_id,
            provider_subscription_id=plan_update.provider_subscription_id,
            latest_invoice_id=plan_update.latest_invoice_id,
            livemode=plan_update.livemode,
            sync_source=plan_update.sync_source,
            sync_key=plan_update.sync_key,
            created_at=now,
            updated_at=now,
        )
        excluded = stmt.excluded
        stmt = stmt.on_conflict_do_update(
            index_elements=["workspace_id"],
            set_={
                "plan": excluded.plan,
                "interval": excluded.interval,
                "status": func.coalesce(excluded.status, WorkspaceBilling.status),
                # A null never erases a known provider reference
                "provider_customer_id": func.coalesce(
                    excluded.provider_customer_id, WorkspaceBilling.provider_customer_id
                ),
                "provider_subscription_id": func.coalesce(
                    excluded.provider_subscription_id, WorkspaceBilling.provider_subscription_id
                ),
                "latest_invoice_id": func.coalesce(
                    excluded.latest_invoice_id, WorkspaceBilling.latest_invoice_id
                ),
                "livemode": func.coalesce(excluded.livemode, WorkspaceBilling.livemode),
                "sync_source": excluded.sync_source,
                "sync_key": excluded.sync_key,
                "updated_at": now,
            },
        ).returning(WorkspaceBilling.id)
        result = await db.execute(stmt)
        return result.scalar_one_or_none() is not None

    async def read(self, db: AsyncSession, workspace_id: uuid_pkg.UUID) -> str | None:
        stmt = select(WorkspaceBilling.plan).where(
            WorkspaceBilling.workspace_id == workspace_id  # type: ignore[arg-type]
        )
        result = await db.execute(stmt)
        return result.scalar_one_or_none()


class MembershipPlanMirror(PlanSink):
    """Legacy copy on every membership row of the workspace; read back via the owner's row."""

    name = "membership"

    async def write(self, db: AsyncSession, plan_update: PlanUpdate) -> bool:
        values: dict[str, object] = {"plan": plan_update.plan}
        if plan_update.status is not None:
            values["subscription_status"] = plan_update.status
        stmt = (
            update(WorkspaceMember)
            .where(WorkspaceMember.workspace_id == plan_update.workspace_id)  # type: ignore[arg-type]
            .values(**values)
            .returning(WorkspaceMember.id)
        )
        result = await db.execute(stmt)
        return len(result.scalars().all()) > 0

    async def read(self, db: AsyncSession, workspace_id: uuid_pkg.UUID) -> str | None:
        stmt = (
            select(WorkspaceMember.plan)
            .join(Workspace, Workspace.id == WorkspaceMember.workspace_id)  # type: ignore[arg-type]
            .where(
                WorkspaceMember.workspace_id == workspace_id,  # type: ignore[arg-type]
                WorkspaceMember.user_id == Workspace.owner_id,  # type: ignore[arg-type]
            )
        )
        result = await db.execute(stmt)
        return result.scalar_one_or_none()


class UserPlanMirror(PlanSink):
    """Legacy copy on the workspace owner's user row."""

    name = "user"

    async def write(self, db: AsyncSession, plan_update: PlanUpdate) -> bool:
        owner_id = (
            select(Workspace.owner_id)
            .where(Workspace.id == plan_update.workspace_id)  # type: ignore[arg-type]
            .scalar_subquery()
        )
        values: dict[str, object] = {"plan": plan_update.plan}
        if plan_update.status is not None:
            values["subscription_status"] = plan_update.status
        stmt = (
            update(User)
            .where(User.id == owner_id)  # type: ignore[arg-type]
            .values(**values)
            .returning(User.id)
        )
        result = await db.execute(stmt)
        return len(result.scalars().all()) > 0

    async def read(self, db: AsyncSession, workspace_id: uuid_pkg.UUID) -> str | None:
        stmt = (
            select(User.plan)
            .join(Workspace, Workspace.owner_id == User.id)  # type: ignore[arg-type]
            .where(Workspace.id == workspace_id)  # type: ignore[arg-type]
        )
        result = await db.execute(stmt)
        return result.scalar_one_or_none()


MIRROR_REGISTRY: dict[str, type[PlanSink]] = {
    MembershipPlanMirror.name: MembershipPlanMirror,
    UserPlanMirror.name: UserPlanMirror,
}


def build_sinks(mirror_names: list[str]) -> list[PlanSink]:
    """Canonical sink first, then each configured mirror in order."""
    sinks: list[PlanSink] = [CanonicalBillingSink()]
    for name in mirror_names:
        sink_cls = MIRROR_REGISTRY.get(name)
        if sink_cls is None:
            logger.warning(f"[plan-sync] Unknown mirror sink '{name}' in settings, skipping")
            continue
        sinks.append(sink_cls())
    return sinks

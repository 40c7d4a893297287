"""Workspace resolution - map an event's hints to exactly one workspace.

Strategies, first match wins:
  1. metadata        - explicit workspace id in metadata, if that workspace exists
  2. active_workspace - the workspace the caller is acting in (manual requests),
                       else the hinted user's active workspace; either only
                       while the user is still a member
  3. sole_owned      - the hinted user's only owned workspace (several = abstain)
  4. billing_record  - the workspace whose canonical record already holds this
                       subscription (or, unambiguously, this customer)
"""

import logging
import uuid as uuid_pkg

from sqlalchemy.ext.asyncio import AsyncSession

from reconciler.domain.billing_record_operations import billing_record_ops
from reconciler.domain.workspace_operations import workspace_ops
from reconciler.services.billing.resolution import Strategy, first_resolved
from reconciler.services.billing.types import (
    BillingSignal,
    SignalSource,
    Unresolved,
    WorkspaceResolution,
)

logger = logging.getLogger(__name__)


def _parse_uuid(value: str | None) -> uuid_pkg.UUID | None:
    if not value:
        return None
    try:
        return uuid_pkg.UUID(str(value))
    except ValueError:
        return None


class WorkspaceResolver:
    """Deterministic workspace resolution for a billing signal."""

    async def resolve(
        self,
        db: AsyncSession,
        signal: BillingSignal,
    ) -> WorkspaceResolution | Unresolved:
        chain = await first_resolved(
            [
                Strategy("metadata", lambda: self._from_metadata(db, signal)),
                Strategy("active_workspace", lambda: self._from_active_workspace(db, signal)),
                Strategy("sole_owned", lambda: self._from_sole_owned(db, signal)),
                Strategy("billing_record", lambda: self._from_billing_record(db, signal)),
            ]
        )
        if chain.value is None:
            logger.warning(
                f"[workspace-resolver] Unresolved for {signal.event_type} {signal.dedupe_key} "
                f"(workspace_hint={signal.workspace_id_hint}, user_hint={signal.user_id_hint}, "
                f"customer={signal.customer_id}, subscription={signal.subscription_id})"
            )
            return Unresolved(reason="no_strategy_resolved", tried=chain.tried)
        return WorkspaceResolution(workspace_id=chain.value, strategy=chain.strategy or "")

    async def _from_metadata(
        self, db: AsyncSession, signal: BillingSignal
    ) -> uuid_pkg.UUID | None:
        workspace_id = _parse_uuid(signal.workspace_id_hint)
        if workspace_id is None:
            return None
        workspace = await workspace_ops.get(db, workspace_id)
        if workspace is None:
            logger.info(f"[workspace-resolver] Metadata workspace {workspace_id} does not exist")
            return None
        return workspace.id

    async def _from_active_workspace(
        self, db: AsyncSession, signal: BillingSignal
    ) -> uuid_pkg.UUID | None:
        user_id = _parse_uuid(signal.user_id_hint)
        if user_id is None:
            return None
        if signal.source == SignalSource.MANUAL:
            context_workspace = _parse_uuid(signal.context_workspace_hint)
            if context_workspace is not None and await workspace_ops.is_member(
                db, context_workspace, user_id
            ):
                return context_workspace
        user = await workspace_ops.get_user(db, user_id)
        if user is None or user.active_workspace_id is None:
            return None
        if not await workspace_ops.is_member(db, user.active_workspace_id, user.id):
            logger.info(
                f"[workspace-resolver] User {user.id} is no longer a member of "
                f"active workspace {user.active_workspace_id}"
            )
            return None
        return user.active_workspace_id

    async def _from_sole_owned(
        self, db: AsyncSession, signal: BillingSignal
    ) -> uuid_pkg.UUID | None:
        user_id = _parse_uuid(signal.user_id_hint)
        if user_id is None:
            return None
        owned = await workspace_ops.get_by_owner(db, user_id)
        if len(owned) == 1:
            return owned[0].id
        if len(owned) > 1:
            logger.info(
                f"[workspace-resolver] User {user_id} owns {len(owned)} workspaces, not guessing"
            )
        return None

    async def _from_billing_record(
        self, db: AsyncSession, signal: BillingSignal
    ) -> uuid_pkg.UUID | None:
        if signal.subscription_id:
            record = await billing_record_ops.get_by_provider_subscription(
                db, signal.subscription_id
            )
            if record is not None:
                return record.workspace_id
        if signal.customer_id:
            records = await billing_record_ops.get_by_provider_customer(db, signal.customer_id)
            if len(records) == 1:
                return records[0].workspace_id
        return None


workspace_resolver = WorkspaceResolver()

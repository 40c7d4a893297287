"""Dunning state machine - payment recovery state derived from subscription status.

Phases: healthy -> recovery_required -> recovery_required_banner_dismissed.

- past_due / unpaid / incomplete (or a payment failure) enter recovery.
- canceled enters recovery only for involuntary churn, i.e. when the
  workspace was already in recovery or has a payment failure on record.
- active / trialing / a successful payment always return to healthy and
  clear any dismissal.
- A dismissal hides the banner until the status changes again.
- Unknown statuses leave the state untouched.

The recovery email cool-down is stored on the workspace's row and checked
under a row lock, so it holds across process instances.
"""

import logging
import uuid as uuid_pkg
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta

from sqlalchemy.ext.asyncio import AsyncSession

from reconciler.config import settings
from reconciler.domain.dunning_operations import dunning_ops
from reconciler.domain.ledger_operations import ledger_ops
from reconciler.domain.workspace_operations import workspace_ops
from reconciler.models.billing import LedgerEventType, SubscriptionStatus
from reconciler.models.dunning import DunningPhase, DunningState
from reconciler.services.email.recovery_email import RecoveryEmailNotifier, recovery_notifier

logger = logging.getLogger(__name__)

HEALTHY_STATUSES = {SubscriptionStatus.ACTIVE.value, SubscriptionStatus.TRIALING.value}
RECOVERY_REQUIRED_STATUSES = {
    SubscriptionStatus.PAST_DUE.value,
    SubscriptionStatus.UNPAID.value,
    SubscriptionStatus.INCOMPLETE.value,
}

_STATUS_ALIASES = {
    "active": SubscriptionStatus.ACTIVE,
    "trialing": SubscriptionStatus.TRIALING,
    "past_due": SubscriptionStatus.PAST_DUE,
    "unpaid": SubscriptionStatus.UNPAID,
    "canceled": SubscriptionStatus.CANCELED,
    "cancelled": SubscriptionStatus.CANCELED,
    "incomplete": SubscriptionStatus.INCOMPLETE,
    "incomplete_expired": SubscriptionStatus.INCOMPLETE,
    "requires_action": SubscriptionStatus.INCOMPLETE,
}


def normalize_billing_status(value: str | None) -> str:
    """Map a provider status to a SubscriptionStatus value ('unknown' if unrecognized)."""
    raw = (value or "").strip().lower()
    return _STATUS_ALIASES.get(raw, SubscriptionStatus.UNKNOWN).value


def should_show_banner(state: DunningState | None) -> bool:
    return state is not None and state.phase == DunningPhase.RECOVERY_REQUIRED


@dataclass
class DunningTransition:
    previous_phase: DunningPhase
    phase: DunningPhase
    status: str

    @property
    def entered_recovery(self) -> bool:
        return self.previous_phase == DunningPhase.HEALTHY and self.phase != DunningPhase.HEALTHY

    @property
    def recovered(self) -> bool:
        return self.previous_phase != DunningPhase.HEALTHY and self.phase == DunningPhase.HEALTHY


def apply_status_signal(
    state: DunningState,
    *,
    status: str | None,
    payment_failed: bool = False,
    payment_succeeded: bool = False,
    now: datetime,
) -> DunningTransition:
    """Apply one status observation to a dunning row in memory. No I/O."""
    previous_phase = state.phase
    normalized = normalize_billing_status(status)
    was_required = state.recovery_required

    if payment_succeeded or normalized in HEALTHY_STATUSES:
        recovery_required = False
    elif normalized == SubscriptionStatus.CANCELED.value:
        recovery_required = (
            was_required or payment_failed or state.last_payment_failure_at is not None
        )
    elif normalized in RECOVERY_REQUIRED_STATUSES or payment_failed:
        recovery_required = True
    else:
        return DunningTransition(previous_phase, previous_phase, normalized)

    if recovery_required:
        if payment_failed or (not was_required and state.last_payment_failure_at is None):
            state.last_payment_failure_at = now
        status_changed = (
            normalized != SubscriptionStatus.UNKNOWN.value
            and normalized != state.subscription_status
        )
        if status_changed:
            state.banner_dismissed_at = None
    else:
        state.last_payment_failure_at = None
        state.banner_dismissed_at = None

    if normalized != SubscriptionStatus.UNKNOWN.value:
        state.subscription_status = normalized
    state.recovery_required = recovery_required
    state.updated_at = now
    return DunningTransition(previous_phase, state.phase, normalized)


@dataclass
class RecoveryEmailResult:
    sent: bool
    skipped: bool
    reason: str | None = None
    recipient: str | None = None


class DunningStateMachine:
    """Persists dunning transitions and throttles recovery emails."""

    def __init__(
        self,
        notifier: RecoveryEmailNotifier = recovery_notifier,
        cooldown: timedelta | None = None,
        clock: Callable[[], datetime] = lambda: datetime.now(UTC),
    ) -> None:
        self.notifier = notifier
        self.cooldown = cooldown or timedelta(hours=settings.recovery_email_cooldown_hours)
        self.clock = clock

    async def record_status(
        self,
        db: AsyncSession,
        workspace_id: uuid_pkg.UUID,
        *,
        status: str | None,
        payment_failed: bool = False,
        payment_succeeded: bool = False,
    ) -> DunningTransition:
        state = await dunning_ops.get_or_create_locked(db, workspace_id)
        transition = apply_status_signal(
            state,
            status=status,
            payment_failed=payment_failed,
            payment_succeeded=payment_succeeded,
            now=self.clock(),
        )
        await dunning_ops.save(db, state)
        if transition.entered_recovery:
            logger.warning(
                f"[dunning] Workspace {workspace_id} entered payment recovery "
                f"(status={transition.status})"
            )
        elif transition.recovered:
            logger.info(
                f"[dunning] Workspace {workspace_id} recovered (status={transition.status})"
            )
        elif transition.previous_phase != transition.phase:
            logger.info(
                f"[dunning] Workspace {workspace_id}: {transition.previous_phase.value} -> "
                f"{transition.phase.value} (status={transition.status})"
            )
        return transition

    async def dismiss_banner(self, db: AsyncSession, workspace_id: uuid_pkg.UUID) -> DunningState:
        """Hide the recovery banner until the status changes. No-op when healthy."""
        state = await dunning_ops.get_or_create_locked(db, workspace_id)
        if not state.recovery_required:
            return state
        now = self.clock()
        state.banner_dismissed_at = now
        state.updated_at = now
        await dunning_ops.save(db, state)
        logger.info(f"[dunning] Workspace {workspace_id}: banner dismissed")
        return state

    async def maybe_send_recovery_email(
        self,
        db: AsyncSession,
        workspace_id: uuid_pkg.UUID,
    ) -> RecoveryEmailResult:
        """
        Send a recovery email if recovery is required and the cool-down has elapsed.

        Holds the dunning row lock across check, send and stamp. Only a
        successful send advances `last_recovery_email_at`; every attempt is
        written to the ledger.
        """
        state = await dunning_ops.get(db, workspace_id, for_update=True)
        if state is None or not state.recovery_required:
            return RecoveryEmailResult(sent=False, skipped=True, reason="recovery_not_required")

        now = self.clock()
        if state.last_recovery_email_at and now - state.last_recovery_email_at < self.cooldown:
            return RecoveryEmailResult(sent=False, skipped=True, reason="cooldown")

        workspace = await workspace_ops.get(db, workspace_id)
        owner = await workspace_ops.get_owner(db, workspace_id)
        recipient = owner.email.strip().lower() if owner and owner.email else None

        if recipient is None:
            await self._log_attempt(db, state, None, error="no_recipient")
            logger.error(f"[dunning] Workspace {workspace_id}: no owner email for recovery email")
            return RecoveryEmailResult(sent=False, skipped=False, reason="no_recipient")

        logger.info(f"[dunning] Workspace {workspace_id}: sending recovery email")
        sent = await self.notifier.send_recovery_email(
            workspace_id, recipient, workspace.name if workspace else None
        )

        if not sent:
            await self._log_attempt(db, state, recipient, error="provider_rejected")
            return RecoveryEmailResult(
                sent=False, skipped=False, reason="provider_rejected", recipient=recipient
            )

        state.last_recovery_email_at = now
        state.updated_at = now
        await dunning_ops.save(db, state)
        await self._log_attempt(db, state, recipient)
        return RecoveryEmailResult(sent=True, skipped=False, recipient=recipient)

    async def _log_attempt(
        self,
        db: AsyncSession,
        state: DunningState,
        recipient: str | None,
        error: str | None = None,
    ) -> None:
        event_type = (
            LedgerEventType.RECOVERY_EMAIL_FAILED if error else LedgerEventType.RECOVERY_EMAIL_SENT
        )
        meta: dict[str, str] = {}
        if recipient:
            meta["recipient_email"] = recipient
        if error:
            meta["error"] = error[:1000]
        await ledger_ops.record_event(
            db,
            dedupe_key=f"recovery_email:{uuid_pkg.uuid4()}",
            event_type=event_type.value,
            workspace_id=state.workspace_id,
            status=state.subscription_status,
            meta=meta,
            actor_email=recipient,
        )


dunning_machine = DunningStateMachine()

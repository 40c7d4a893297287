"""Reconciliation orchestrator - drives one billing event through the pipeline.

    received -> deduped (stop)
    received -> workspace_resolved -> plan_resolved -> synced -> dunning_updated -> done
    any stage -> failed (outcome.reached records how far it got)

The ledger insert is the idempotency boundary: resolvers, sinks and the
dunning machine only run for the caller that inserted the dedupe key. Every
path that gets past the insert ends with `annotate_outcome`, so the ledger row
always carries the full audit trail.

Resolution failures are returned, never raised. Provider and storage errors
propagate so the request transaction (ledger row included) rolls back and the
event can be redelivered.
"""

import logging
import uuid as uuid_pkg
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from reconciler.domain.ledger_operations import ledger_ops
from reconciler.models.billing import LedgerEventType
from reconciler.services.billing.dunning import (
    DunningStateMachine,
    dunning_machine,
    normalize_billing_status,
)
from reconciler.services.billing.plan_resolver import PlanResolver, plan_resolver
from reconciler.services.billing.plan_sync import PlanSyncWriter, plan_sync_writer
from reconciler.services.billing.signals import (
    enrich_with_subscription,
    is_paid_subscription_session,
    needs_subscription_lookup,
    signal_from_checkout_session,
    signal_from_subscription,
    signal_from_webhook_event,
    subscription_fingerprint,
)
from reconciler.services.billing.types import (
    BillingSignal,
    PlanUpdate,
    ReconcileErrorCode,
    ReconcileOutcome,
    ReconcileStage,
    SignalSource,
    Unresolved,
)
from reconciler.services.billing.workspace_resolver import WorkspaceResolver, workspace_resolver
from reconciler.services.stripe_service import StripeService, stripe_service

logger = logging.getLogger(__name__)


class ReconciliationOrchestrator:
    """Runs ledger -> workspace -> plan -> sync -> dunning for one signal."""

    def __init__(
        self,
        workspaces: WorkspaceResolver = workspace_resolver,
        plans: PlanResolver = plan_resolver,
        writer: PlanSyncWriter = plan_sync_writer,
        dunning: DunningStateMachine = dunning_machine,
        provider: StripeService = stripe_service,
    ) -> None:
        self.workspaces = workspaces
        self.plans = plans
        self.writer = writer
        self.dunning = dunning
        self.provider = provider

    # ─────────────────────────────────────────────────────────────
    # Entry points
    # ─────────────────────────────────────────────────────────────

    async def reconcile_webhook_event(
        self,
        db: AsyncSession,
        event: dict[str, Any],
    ) -> ReconcileOutcome:
        """Process a signature-verified Stripe webhook event."""
        return await self.process_signal(db, signal_from_webhook_event(event))

    async def reconcile_manual(
        self,
        db: AsyncSession,
        *,
        user_id: uuid_pkg.UUID,
        user_email: str | None = None,
        workspace_id: uuid_pkg.UUID | None = None,
        session_id: str | None = None,
        subscription_id: str | None = None,
        correlation_id: str | None = None,
    ) -> ReconcileOutcome:
        """
        Reconcile on behalf of a signed-in user (e.g. after returning from checkout).

        With a correlation id (the Idempotency-Key) the dedupe key is
        `manual:<correlation id>`, and a key that already carries a successful
        outcome is returned without calling the provider.

        Without one, the key is `manual:<session or subscription id>:<fingerprint>`
        where the fingerprint digests the subscription as just fetched. Repeating
        the request against an unchanged subscription dedupes; once the
        subscription changes in Stripe the next request syncs again.

        `workspace_id` is the caller's workspace context, tried after any
        workspace named in Stripe metadata.
        """
        base = correlation_id or session_id or subscription_id
        if not base:
            raise ValueError("session_id or subscription_id is required")
        dedupe_key = f"manual:{base}"
        event_type = LedgerEventType.MANUAL_RECONCILE.value

        if correlation_id:
            existing = await ledger_ops.get_by_dedupe_key(db, dedupe_key)
            if existing is not None and existing.outcome and existing.outcome.get("ok"):
                logger.info(f"[reconcile] {dedupe_key} already reconciled, returning prior outcome")
                return ReconcileOutcome.deduplicated(existing.id, existing.outcome)

        signal: BillingSignal | None = None
        if session_id:
            session = self.provider.get_checkout_session(session_id)
            if session is None or not is_paid_subscription_session(session):
                return await self._reject(
                    db,
                    BillingSignal(
                        dedupe_key=dedupe_key,
                        event_type=event_type,
                        source=SignalSource.MANUAL,
                        object_id=session_id,
                        status=(session or {}).get("payment_status"),
                        actor_email=user_email,
                    ),
                    ReconcileErrorCode.SESSION_NOT_PAID_SUBSCRIPTION,
                )
            signal = signal_from_checkout_session(
                session,
                dedupe_key=dedupe_key,
                event_type=event_type,
                source=SignalSource.MANUAL,
            )
            subscription_id = signal.subscription_id

        subscription = self.provider.get_subscription(subscription_id) if subscription_id else None
        if subscription is None:
            return await self._reject(
                db,
                signal
                or BillingSignal(
                    dedupe_key=dedupe_key,
                    event_type=event_type,
                    source=SignalSource.MANUAL,
                    object_id=subscription_id,
                    subscription_id=subscription_id,
                    actor_email=user_email,
                ),
                ReconcileErrorCode.SUBSCRIPTION_NOT_FOUND,
            )

        if signal is None:
            signal = signal_from_subscription(
                subscription,
                dedupe_key=dedupe_key,
                event_type=event_type,
                source=SignalSource.MANUAL,
            )
        else:
            enrich_with_subscription(signal, subscription)

        if not correlation_id:
            signal.dedupe_key = f"{dedupe_key}:{subscription_fingerprint(subscription)}"
        signal.user_id_hint = signal.user_id_hint or str(user_id)
        signal.context_workspace_hint = str(workspace_id) if workspace_id else None
        signal.actor_email = signal.actor_email or user_email
        return await self.process_signal(db, signal)

    # ─────────────────────────────────────────────────────────────
    # Pipeline
    # ─────────────────────────────────────────────────────────────

    async def process_signal(self, db: AsyncSession, signal: BillingSignal) -> ReconcileOutcome:
        logger.info(
            f"[reconcile] Received {signal.event_type} {signal.dedupe_key} "
            f"(source={signal.source.value})"
        )
        entry_id, duplicate = await self._record(db, signal)
        if duplicate is not None:
            return duplicate

        reached = ReconcileStage.RECEIVED
        if not signal.actionable:
            logger.info(f"[reconcile] Ignoring {signal.event_type} {signal.dedupe_key}")
            return await self._finish(
                db,
                ReconcileOutcome(
                    ok=True,
                    stage=ReconcileStage.IGNORED,
                    entry_id=entry_id,
                    reached=reached,
                ),
            )

        if needs_subscription_lookup(signal) and signal.subscription_id:
            subscription = self.provider.get_subscription(signal.subscription_id)
            if subscription is None:
                return await self._finish(
                    db,
                    ReconcileOutcome(
                        ok=False,
                        stage=ReconcileStage.FAILED,
                        code=ReconcileErrorCode.SUBSCRIPTION_NOT_FOUND,
                        entry_id=entry_id,
                        reached=reached,
                        detail=signal.subscription_id,
                    ),
                )
            enrich_with_subscription(signal, subscription)

        workspace = await self.workspaces.resolve(db, signal)
        if isinstance(workspace, Unresolved):
            return await self._finish(
                db,
                ReconcileOutcome(
                    ok=False,
                    stage=ReconcileStage.FAILED,
                    code=ReconcileErrorCode.WORKSPACE_RESOLUTION_FAILED,
                    entry_id=entry_id,
                    reached=reached,
                    detail=f"tried={','.join(workspace.tried)}",
                ),
            )
        reached = ReconcileStage.WORKSPACE_RESOLVED

        plan = await self.plans.resolve(signal)
        if isinstance(plan, Unresolved):
            return await self._finish(
                db,
                ReconcileOutcome(
                    ok=False,
                    stage=ReconcileStage.FAILED,
                    code=ReconcileErrorCode.PLAN_RESOLUTION_FAILED,
                    entry_id=entry_id,
                    workspace_id=workspace.workspace_id,
                    workspace_strategy=workspace.strategy,
                    reached=reached,
                    detail=f"tried={','.join(plan.tried)}",
                ),
            )
        reached = ReconcileStage.PLAN_RESOLVED

        status = self._status_for(signal)
        sync = await self.writer.apply_plan(
            db,
            PlanUpdate(
                workspace_id=workspace.workspace_id,
                plan=plan.plan,
                interval=plan.interval,
                status=status,
                provider_customer_id=signal.customer_id,
                provider_subscription_id=signal.subscription_id,
                latest_invoice_id=signal.latest_invoice_id,
                livemode=signal.livemode,
                sync_source=signal.source.value,
                sync_key=signal.dedupe_key,
            ),
        )
        reached = ReconcileStage.SYNCED

        transition = await self.dunning.record_status(
            db,
            workspace.workspace_id,
            status=status,
            payment_failed=signal.payment_failed,
            payment_succeeded=signal.payment_succeeded,
        )
        reached = ReconcileStage.DUNNING_UPDATED

        return await self._finish(
            db,
            ReconcileOutcome(
                ok=sync.effective,
                stage=ReconcileStage.DONE,
                code=None if sync.effective else ReconcileErrorCode.PLAN_SYNC_NO_EFFECT,
                entry_id=entry_id,
                workspace_id=workspace.workspace_id,
                workspace_strategy=workspace.strategy,
                plan=plan.plan,
                interval=plan.interval,
                plan_strategy=plan.strategy,
                wrote=sync.wrote,
                readback=sync.readback,
                effective=sync.effective,
                dunning_phase=transition.phase.value,
                reached=reached,
            ),
        )

    # ─────────────────────────────────────────────────────────────
    # Helpers
    # ─────────────────────────────────────────────────────────────

    async def _record(
        self,
        db: AsyncSession,
        signal: BillingSignal,
    ) -> tuple[uuid_pkg.UUID | None, ReconcileOutcome | None]:
        """
        Insert the ledger row. Returns (entry_id, None) to proceed, or the
        deduplicated outcome to stop.

        A manual retry whose earlier attempt failed is re-run on the same row;
        the row lock serializes concurrent retries.
        """
        ledger = await ledger_ops.record_event(
            db,
            dedupe_key=signal.dedupe_key,
            event_type=signal.event_type,
            object_id=signal.object_id,
            status=signal.status,
            meta=signal.to_meta(),
            actor_email=signal.actor_email,
        )
        if ledger.inserted:
            return ledger.entry_id, None

        prior = await ledger_ops.get(db, ledger.entry_id, for_update=True) if ledger.entry_id else None
        prior_outcome = prior.outcome if prior else None
        if (
            signal.source == SignalSource.MANUAL
            and prior_outcome
            and prior_outcome.get("ok") is False
        ):
            logger.info(
                f"[reconcile] Retrying {signal.dedupe_key} "
                f"(previous attempt failed with {prior_outcome.get('code')})"
            )
            return ledger.entry_id, None

        logger.info(f"[reconcile] Duplicate {signal.event_type} {signal.dedupe_key}, skipping")
        return ledger.entry_id, ReconcileOutcome.deduplicated(ledger.entry_id, prior_outcome)

    async def _reject(
        self,
        db: AsyncSession,
        signal: BillingSignal,
        code: ReconcileErrorCode,
    ) -> ReconcileOutcome:
        """Record a manual request that failed before a full signal could be built."""
        entry_id, duplicate = await self._record(db, signal)
        if duplicate is not None:
            return duplicate
        return await self._finish(
            db,
            ReconcileOutcome(
                ok=False,
                stage=ReconcileStage.FAILED,
                code=code,
                entry_id=entry_id,
                reached=ReconcileStage.RECEIVED,
                detail=signal.object_id,
            ),
        )

    async def _finish(self, db: AsyncSession, outcome: ReconcileOutcome) -> ReconcileOutcome:
        if outcome.entry_id is not None:
            await ledger_ops.annotate_outcome(
                db, outcome.entry_id, outcome.to_annotation(), workspace_id=outcome.workspace_id
            )

        if outcome.ok:
            logger.info(
                f"[reconcile] Entry {outcome.entry_id}: {outcome.stage.value} "
                f"(workspace={outcome.workspace_id}, plan={outcome.plan})"
            )
        else:
            logger.warning(
                f"[reconcile] Entry {outcome.entry_id}: {outcome.code.value if outcome.code else 'failed'} "
                f"after {outcome.reached.value if outcome.reached else outcome.stage.value} "
                f"(workspace={outcome.workspace_id}, detail={outcome.detail})"
            )
        return outcome

    @staticmethod
    def _status_for(signal: BillingSignal) -> str | None:
        if signal.subscription_deleted:
            return "canceled"
        if not signal.status:
            return None
        status = normalize_billing_status(signal.status)
        return None if status == "unknown" else status


reconciliation_orchestrator = ReconciliationOrchestrator()

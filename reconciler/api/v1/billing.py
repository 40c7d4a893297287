"""Billing reconciliation API endpoints."""

import logging
from datetime import datetime
from typing import Any
from uuid import UUID

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, model_validator
from sqlalchemy.exc import SQLAlchemyError
from stripe import StripeError

from reconciler.api.deps import DbSession, WorkspaceContext, get_workspace_context
from reconciler.api.deps.workspace import require_billing_admin
from reconciler.config import settings
from reconciler.core.exceptions import ServiceUnavailableError, ValidationError
from reconciler.core.rate_limit import RECOVERY_EMAIL_LIMIT, rate_limiter, reconcile_limit
from reconciler.domain.dunning_operations import dunning_ops
from reconciler.domain.ledger_operations import ledger_ops
from reconciler.models.dunning import DunningPhase, DunningState
from reconciler.services.billing.dunning import dunning_machine, should_show_banner
from reconciler.services.billing.orchestrator import reconciliation_orchestrator
from reconciler.services.billing.types import ReconcileErrorCode, ReconcileOutcome
from reconciler.services.stripe_service import stripe_service

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/billing", tags=["billing"])

# HTTP status per structured failure code (manual reconcile)
ERROR_STATUS = {
    ReconcileErrorCode.SESSION_NOT_PAID_SUBSCRIPTION: 409,
    ReconcileErrorCode.WORKSPACE_RESOLUTION_FAILED: 409,
    ReconcileErrorCode.PLAN_SYNC_NO_EFFECT: 409,
    ReconcileErrorCode.SUBSCRIPTION_NOT_FOUND: 404,
    ReconcileErrorCode.PLAN_RESOLUTION_FAILED: 422,
}


# ─────────────────────────────────────────────────────────────────────────────
# Request/Response Schemas
# ─────────────────────────────────────────────────────────────────────────────


class ReconcileRequest(BaseModel):
    """Manual reconcile by checkout session or subscription id."""

    session_id: str | None = None
    subscription_id: str | None = None

    @model_validator(mode="after")
    def _require_identifier(self) -> "ReconcileRequest":
        if not (self.session_id or self.subscription_id):
            raise ValueError("session_id or subscription_id is required")
        return self


class ReconcileResponse(BaseModel):
    ok: bool
    deduped: bool = False
    code: str | None = None
    workspace_id: UUID | None = None
    plan: str | None = None
    interval: str | None = None
    wrote: dict[str, bool] = {}
    readback: dict[str, str | None] = {}
    effective: bool | None = None
    dunning_phase: str | None = None

    @classmethod
    def from_outcome(cls, outcome: ReconcileOutcome) -> "ReconcileResponse":
        return cls(
            ok=outcome.ok,
            deduped=outcome.deduped,
            code=outcome.code.value if outcome.code else None,
            workspace_id=outcome.workspace_id,
            plan=outcome.plan,
            interval=outcome.interval,
            wrote=outcome.wrote,
            readback=outcome.readback,
            effective=outcome.effective,
            dunning_phase=outcome.dunning_phase,
        )


class WebhookResponse(BaseModel):
    received: bool = True
    ok: bool
    deduped: bool
    code: str | None = None


class DunningInfo(BaseModel):
    """Payment recovery state for the current workspace."""

    workspace_id: UUID
    phase: str
    recovery_required: bool
    show_banner: bool
    subscription_status: str | None = None
    last_payment_failure_at: datetime | None = None
    banner_dismissed_at: datetime | None = None
    last_recovery_email_at: datetime | None = None

    @classmethod
    def from_state(cls, workspace_id: UUID, state: DunningState | None) -> "DunningInfo":
        if state is None:
            return cls(
                workspace_id=workspace_id,
                phase=DunningPhase.HEALTHY.value,
                recovery_required=False,
                show_banner=False,
            )
        return cls(
            workspace_id=workspace_id,
            phase=state.phase.value,
            recovery_required=state.recovery_required,
            show_banner=should_show_banner(state),
            subscription_status=state.subscription_status,
            last_payment_failure_at=state.last_payment_failure_at,
            banner_dismissed_at=state.banner_dismissed_at,
            last_recovery_email_at=state.last_recovery_email_at,
        )


class RecoveryEmailResponse(BaseModel):
    sent: bool
    reason: str | None = None


class BillingEventInfo(BaseModel):
    """A ledger row, for the audit view."""

    id: UUID
    dedupe_key: str
    event_type: str
    object_id: str | None
    status: str | None
    actor_email: str | None
    meta: dict[str, Any]
    outcome: dict[str, Any] | None
    created_at: datetime
    annotated_at: datetime | None


# ─────────────────────────────────────────────────────────────────────────────
# Authenticated Endpoints
# ─────────────────────────────────────────────────────────────────────────────


@router.post("/reconcile", response_model=ReconcileResponse)
async def reconcile(
    request: ReconcileRequest,
    http_request: Request,
    db: DbSession,
    context: WorkspaceContext = Depends(get_workspace_context),
    idempotency_key: str | None = Header(default=None),
) -> Any:
    """
    Reconcile billing state from Stripe on demand (e.g. after returning from checkout).

    Retrying with the same Idempotency-Key (or, without one, against an unchanged
    subscription) is safe: a successful earlier run is returned as `deduped`.
    Once the subscription changes in Stripe, a keyless retry syncs again.
    """
    if not settings.stripe_enabled:
        raise ServiceUnavailableError("Stripe")

    rate_limiter.check_rate_limit(context.user_id, "billing_reconcile", reconcile_limit())

    try:
        outcome = await reconciliation_orchestrator.reconcile_manual(
            db,
            user_id=context.user_id,
            user_email=context.user_email,
            session_id=request.session_id,
            subscription_id=request.subscription_id,
            correlation_id=idempotency_key,
            workspace_id=context.workspace_id,
        )
    except StripeError as e:
        logger.error(f"[billing] Manual reconcile failed on Stripe API: {e}")
        raise HTTPException(
            502, {"ok": False, "code": "STRIPE_API_ERROR", "message": str(e)}
        ) from e

    http_request.state.reconcile_outcome = outcome
    response = ReconcileResponse.from_outcome(outcome)
    if outcome.ok or outcome.code is None:
        return response

    # Failure outcomes are recorded on the ledger, so the transaction still commits
    return JSONResponse(
        status_code=ERROR_STATUS.get(outcome.code, 409),
        content=response.model_dump(mode="json"),
    )


@router.get("/dunning", response_model=DunningInfo)
async def get_dunning(
    db: DbSession,
    context: WorkspaceContext = Depends(get_workspace_context),
) -> DunningInfo:
    """Payment recovery state for the banner and billing settings page."""
    state = await dunning_ops.get(db, context.workspace_id)
    return DunningInfo.from_state(context.workspace_id, state)


@router.post("/dismiss-banner", response_model=DunningInfo)
async def dismiss_banner(
    db: DbSession,
    context: WorkspaceContext = Depends(require_billing_admin),
) -> DunningInfo:
    """
    Hide the payment recovery banner until the subscription status changes.

    Owner or admin only.
    """
    state = await dunning_machine.dismiss_banner(db, context.workspace_id)
    if not state.recovery_required:
        raise ValidationError("Payment recovery is not required for this workspace")
    return DunningInfo.from_state(context.workspace_id, state)


@router.post("/recovery-email", response_model=RecoveryEmailResponse)
async def send_recovery_email(
    db: DbSession,
    context: WorkspaceContext = Depends(require_billing_admin),
) -> RecoveryEmailResponse:
    """
    Ask for a payment recovery email to the workspace owner.

    Subject to the per-workspace cool-down; owner or admin only.
    """
    rate_limiter.check_rate_limit(context.user_id, "billing_recovery_email", RECOVERY_EMAIL_LIMIT)

    result = await dunning_machine.maybe_send_recovery_email(db, context.workspace_id)
    if result.reason == "recovery_not_required":
        raise ValidationError("Payment recovery is not required for this workspace")
    return RecoveryEmailResponse(sent=result.sent, reason=result.reason)


@router.get("/events", response_model=list[BillingEventInfo])
async def list_billing_events(
    db: DbSession,
    context: WorkspaceContext = Depends(require_billing_admin),
    limit: int = Query(default=50, ge=1, le=200),
) -> list[BillingEventInfo]:
    """Recent ledger rows for the current workspace, newest first."""
    events = await ledger_ops.list_for_workspace(db, context.workspace_id, limit=limit)
    return [
        BillingEventInfo(
            id=event.id,
            dedupe_key=event.dedupe_key,
            event_type=event.event_type,
            object_id=event.object_id,
            status=event.status,
            actor_email=event.actor_email,
            meta=event.meta or {},
            outcome=event.outcome,
            created_at=event.created_at,
            annotated_at=event.annotated_at,
        )
        for event in events
    ]


# ─────────────────────────────────────────────────────────────────────────────
# Webhook Handler
# ─────────────────────────────────────────────────────────────────────────────


@router.post("/webhooks/stripe", response_model=WebhookResponse)
async def handle_stripe_webhook(
    request: Request,
    db: DbSession,
) -> WebhookResponse:
    """
    Handle Stripe webhook events.

    Verifies the webhook signature before processing. No authentication
    required (verified by Stripe signature).

    Once the event is on the ledger the response is 200, including for
    resolution failures, so Stripe stops redelivering. Transient Stripe or
    database errors roll everything back and return 500 so it redelivers.
    """
    payload = await request.body()
    sig_header = request.headers.get("stripe-signature", "")

    try:
        event = stripe_service.construct_webhook_event(payload, sig_header)
    except ValueError:
        raise HTTPException(400, "Invalid webhook signature") from None

    logger.info(f"Received Stripe webhook: {event.get('type')} ({event.get('id')})")

    try:
        outcome = await reconciliation_orchestrator.reconcile_webhook_event(db, event)
        await db.commit()
    except (StripeError, SQLAlchemyError) as e:
        await db.rollback()
        logger.exception(f"[billing] Webhook {event.get('id')} failed, Stripe will retry: {e}")
        raise HTTPException(500, "Webhook processing failed") from e

    request.state.reconcile_outcome = outcome
    return WebhookResponse(
        ok=outcome.ok,
        deduped=outcome.deduped,
        code=outcome.code.value if outcome.code else None,
    )

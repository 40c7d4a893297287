"""Billing API endpoint tests."""

from __future__ import annotations

import uuid
from datetime import UTC, datetime
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from httpx import AsyncClient
from sqlalchemy.exc import OperationalError
from stripe import APIConnectionError

from reconciler.services.billing.dunning import RecoveryEmailResult
from reconciler.services.billing.types import (
    ReconcileErrorCode,
    ReconcileOutcome,
    ReconcileStage,
)

from tests.helpers.mock_factories import make_dunning_state, make_mock_ledger_entry

ORCHESTRATOR = "reconciler.api.v1.billing.reconciliation_orchestrator"


def _ok_outcome(workspace_id: uuid.UUID, **overrides) -> ReconcileOutcome:
    fields = {
        "ok": True,
        "stage": ReconcileStage.DONE,
        "workspace_id": workspace_id,
        "plan": "pro",
        "interval": "monthly",
        "wrote": {"workspace": True, "user": True},
        "readback": {"workspace": "pro", "user": "pro"},
        "effective": True,
        "dunning_phase": "healthy",
    }
    fields.update(overrides)
    return ReconcileOutcome(**fields)


def _failed_outcome(code: ReconcileErrorCode) -> ReconcileOutcome:
    return ReconcileOutcome(ok=False, stage=ReconcileStage.FAILED, code=code)


# ─────────────────────────────────────────────────────────────────────────────
# POST /billing/reconcile
# ─────────────────────────────────────────────────────────────────────────────


@pytest.fixture
def stripe_enabled():
    with patch("reconciler.api.v1.billing.settings") as mock_settings:
        mock_settings.stripe_enabled = True
        yield mock_settings


@pytest.mark.asyncio
async def test_reconcile_returns_sync_result(
    api_client: AsyncClient, stripe_enabled, test_user, test_workspace_id
):
    """POST /api/v1/billing/reconcile returns the plan and per-target results."""
    with patch(ORCHESTRATOR) as mock_orchestrator:
        mock_orchestrator.reconcile_manual = AsyncMock(return_value=_ok_outcome(test_workspace_id))
        resp = await api_client.post(
            "/api/v1/billing/reconcile",
            json={"session_id": "cs_1"},
            headers={"Idempotency-Key": "req-1"},
        )

    assert resp.status_code == 200
    data = resp.json()
    assert data["ok"] is True
    assert data["plan"] == "pro"
    assert data["readback"] == {"workspace": "pro", "user": "pro"}
    assert data["workspace_id"] == str(test_workspace_id)

    kwargs = mock_orchestrator.reconcile_manual.call_args.kwargs
    assert kwargs["user_id"] == test_user.id
    assert kwargs["user_email"] == "owner@example.com"
    assert kwargs["session_id"] == "cs_1"
    assert kwargs["correlation_id"] == "req-1"
    assert kwargs["workspace_id"] == test_workspace_id


@pytest.mark.asyncio
async def test_reconcile_requires_identifier(api_client: AsyncClient, stripe_enabled):
    resp = await api_client.post("/api/v1/billing/reconcile", json={})
    assert resp.status_code == 422


@pytest.mark.asyncio
async def test_reconcile_stripe_disabled(api_client: AsyncClient):
    with patch("reconciler.api.v1.billing.settings") as mock_settings:
        mock_settings.stripe_enabled = False
        resp = await api_client.post("/api/v1/billing/reconcile", json={"session_id": "cs_1"})
    assert resp.status_code == 503


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("code", "status_code"),
    [
        (ReconcileErrorCode.SESSION_NOT_PAID_SUBSCRIPTION, 409),
        (ReconcileErrorCode.SUBSCRIPTION_NOT_FOUND, 404),
        (ReconcileErrorCode.WORKSPACE_RESOLUTION_FAILED, 409),
        (ReconcileErrorCode.PLAN_RESOLUTION_FAILED, 422),
        (ReconcileErrorCode.PLAN_SYNC_NO_EFFECT, 409),
    ],
)
async def test_reconcile_failure_codes(
    api_client: AsyncClient, stripe_enabled, code, status_code
):
    with patch(ORCHESTRATOR) as mock_orchestrator:
        mock_orchestrator.reconcile_manual = AsyncMock(return_value=_failed_outcome(code))
        resp = await api_client.post("/api/v1/billing/reconcile", json={"session_id": "cs_1"})

    assert resp.status_code == status_code
    data = resp.json()
    assert data["ok"] is False
    assert data["code"] == code.value


@pytest.mark.asyncio
async def test_reconcile_failure_still_commits_ledger(
    api_client: AsyncClient, stripe_enabled, db_session
):
    """A structured failure is a normal response, so get_db commits the ledger row."""
    with patch(ORCHESTRATOR) as mock_orchestrator:
        mock_orchestrator.reconcile_manual = AsyncMock(
            return_value=_failed_outcome(ReconcileErrorCode.SESSION_NOT_PAID_SUBSCRIPTION)
        )
        resp = await api_client.post("/api/v1/billing/reconcile", json={"session_id": "cs_1"})

    assert resp.status_code == 409
    db_session.commit.assert_awaited()
    db_session.rollback.assert_not_awaited()


@pytest.mark.asyncio
async def test_reconcile_stripe_error_is_502(api_client: AsyncClient, stripe_enabled):
    with patch(ORCHESTRATOR) as mock_orchestrator:
        mock_orchestrator.reconcile_manual = AsyncMock(side_effect=APIConnectionError("down"))
        resp = await api_client.post(
            "/api/v1/billing/reconcile", json={"subscription_id": "sub_1"}
        )

    assert resp.status_code == 502
    assert resp.json()["detail"]["code"] == "STRIPE_API_ERROR"


@pytest.mark.asyncio
async def test_reconcile_deduped_is_200(
    api_client: AsyncClient, stripe_enabled, test_workspace_id
):
    with patch(ORCHESTRATOR) as mock_orchestrator:
        mock_orchestrator.reconcile_manual = AsyncMock(
            return_value=_ok_outcome(test_workspace_id, stage=ReconcileStage.DEDUPED, deduped=True)
        )
        resp = await api_client.post("/api/v1/billing/reconcile", json={"session_id": "cs_1"})

    assert resp.status_code == 200
    assert resp.json()["deduped"] is True


@pytest.mark.asyncio
async def test_reconcile_is_rate_limited(
    api_client: AsyncClient, stripe_enabled, test_workspace_id
):
    stripe_enabled.reconcile_rate_limit_requests = 2
    stripe_enabled.reconcile_rate_limit_window_seconds = 60

    with (
        patch(ORCHESTRATOR) as mock_orchestrator,
        patch("reconciler.core.rate_limit.settings", stripe_enabled),
    ):
        mock_orchestrator.reconcile_manual = AsyncMock(return_value=_ok_outcome(test_workspace_id))
        statuses = [
            (await api_client.post("/api/v1/billing/reconcile", json={"session_id": "cs_1"})).status_code
            for _ in range(3)
        ]

    assert statuses == [200, 200, 429]


# ─────────────────────────────────────────────────────────────────────────────
# Dunning endpoints
# ─────────────────────────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_get_dunning_without_row_is_healthy(api_client: AsyncClient, test_workspace_id):
    with patch("reconciler.api.v1.billing.dunning_ops") as mock_ops:
        mock_ops.get = AsyncMock(return_value=None)
        resp = await api_client.get("/api/v1/billing/dunning")

    assert resp.status_code == 200
    data = resp.json()
    assert data["phase"] == "healthy"
    assert data["show_banner"] is False
    assert data["workspace_id"] == str(test_workspace_id)


@pytest.mark.asyncio
async def test_get_dunning_in_recovery_shows_banner(api_client: AsyncClient, test_workspace_id):
    state = make_dunning_state(
        workspace_id=test_workspace_id,
        subscription_status="past_due",
        recovery_required=True,
        last_payment_failure_at=datetime(2026, 3, 1, tzinfo=UTC),
    )
    with patch("reconciler.api.v1.billing.dunning_ops") as mock_ops:
        mock_ops.get = AsyncMock(return_value=state)
        resp = await api_client.get("/api/v1/billing/dunning")

    data = resp.json()
    assert data["phase"] == "recovery_required"
    assert data["show_banner"] is True
    assert data["subscription_status"] == "past_due"


@pytest.mark.asyncio
async def test_dismiss_banner(api_client: AsyncClient, test_workspace_id):
    state = make_dunning_state(
        workspace_id=test_workspace_id,
        subscription_status="past_due",
        recovery_required=True,
        banner_dismissed_at=datetime(2026, 3, 2, tzinfo=UTC),
    )
    with patch("reconciler.api.v1.billing.dunning_machine") as mock_machine:
        mock_machine.dismiss_banner = AsyncMock(return_value=state)
        resp = await api_client.post("/api/v1/billing/dismiss-banner")

    assert resp.status_code == 200
    data = resp.json()
    assert data["phase"] == "recovery_required_banner_dismissed"
    assert data["show_banner"] is False


@pytest.mark.asyncio
async def test_dismiss_banner_when_healthy_is_400(api_client: AsyncClient, test_workspace_id):
    state = make_dunning_state(workspace_id=test_workspace_id, subscription_status="active")
    with patch("reconciler.api.v1.billing.dunning_machine") as mock_machine:
        mock_machine.dismiss_banner = AsyncMock(return_value=state)
        resp = await api_client.post("/api/v1/billing/dismiss-banner")

    assert resp.status_code == 400


@pytest.mark.asyncio
async def test_recovery_email_sent(api_client: AsyncClient):
    with patch("reconciler.api.v1.billing.dunning_machine") as mock_machine:
        mock_machine.maybe_send_recovery_email = AsyncMock(
            return_value=RecoveryEmailResult(sent=True, skipped=False, recipient="owner@example.com")
        )
        resp = await api_client.post("/api/v1/billing/recovery-email")

    assert resp.status_code == 200
    assert resp.json() == {"sent": True, "reason": None}


@pytest.mark.asyncio
async def test_recovery_email_cooldown(api_client: AsyncClient):
    with patch("reconciler.api.v1.billing.dunning_machine") as mock_machine:
        mock_machine.maybe_send_recovery_email = AsyncMock(
            return_value=RecoveryEmailResult(sent=False, skipped=True, reason="cooldown")
        )
        resp = await api_client.post("/api/v1/billing/recovery-email")

    assert resp.status_code == 200
    assert resp.json() == {"sent": False, "reason": "cooldown"}


@pytest.mark.asyncio
async def test_recovery_email_not_required_is_400(api_client: AsyncClient):
    with patch("reconciler.api.v1.billing.dunning_machine") as mock_machine:
        mock_machine.maybe_send_recovery_email = AsyncMock(
            return_value=RecoveryEmailResult(
                sent=False, skipped=True, reason="recovery_not_required"
            )
        )
        resp = await api_client.post("/api/v1/billing/recovery-email")

    assert resp.status_code == 400


@pytest.mark.asyncio
async def test_list_billing_events(api_client: AsyncClient, test_workspace_id):
    entry = make_mock_ledger_entry(
        dedupe_key="evt_1",
        workspace_id=test_workspace_id,
        meta={"source": "webhook"},
        outcome={"ok": True, "stage": "done"},
    )
    with patch("reconciler.api.v1.billing.ledger_ops") as mock_ledger:
        mock_ledger.list_for_workspace = AsyncMock(return_value=[entry])
        resp = await api_client.get("/api/v1/billing/events?limit=10")

    assert resp.status_code == 200
    data = resp.json()
    assert data[0]["dedupe_key"] == "evt_1"
    assert data[0]["outcome"]["ok"] is True
    assert mock_ledger.list_for_workspace.call_args.kwargs["limit"] == 10


# ─────────────────────────────────────────────────────────────────────────────
# POST /billing/webhooks/stripe
# ─────────────────────────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_webhook_bad_signature_is_400(api_client: AsyncClient):
    with patch("reconciler.api.v1.billing.stripe_service") as mock_stripe:
        mock_stripe.construct_webhook_event = MagicMock(
            side_effect=ValueError("Invalid webhook signature")
        )
        resp = await api_client.post(
            "/api/v1/billing/webhooks/stripe",
            content=b"{}",
            headers={"stripe-signature": "t=1,v1=bad"},
        )

    assert resp.status_code == 400


@pytest.mark.asyncio
async def test_webhook_processes_and_commits(
    api_client: AsyncClient, db_session, test_workspace_id
):
    event = {"id": "evt_1", "type": "customer.subscription.updated", "data": {"object": {}}}
    with (
        patch("reconciler.api.v1.billing.stripe_service") as mock_stripe,
        patch(ORCHESTRATOR) as mock_orchestrator,
    ):
        mock_stripe.construct_webhook_event = MagicMock(return_value=event)
        mock_orchestrator.reconcile_webhook_event = AsyncMock(
            return_value=_ok_outcome(test_workspace_id)
        )
        resp = await api_client.post(
            "/api/v1/billing/webhooks/stripe",
            content=b"{}",
            headers={"stripe-signature": "t=1,v1=ok"},
        )

    assert resp.status_code == 200
    assert resp.json() == {"received": True, "ok": True, "deduped": False, "code": None}
    mock_orchestrator.reconcile_webhook_event.assert_awaited_once_with(db_session, event)
    db_session.commit.assert_awaited()


@pytest.mark.asyncio
async def test_webhook_resolution_failure_is_still_200(api_client: AsyncClient):
    event = {"id": "evt_2", "type": "customer.subscription.updated", "data": {"object": {}}}
    with (
        patch("reconciler.api.v1.billing.stripe_service") as mock_stripe,
        patch(ORCHESTRATOR) as mock_orchestrator,
    ):
        mock_stripe.construct_webhook_event = MagicMock(return_value=event)
        mock_orchestrator.reconcile_webhook_event = AsyncMock(
            return_value=_failed_outcome(ReconcileErrorCode.WORKSPACE_RESOLUTION_FAILED)
        )
        resp = await api_client.post(
            "/api/v1/billing/webhooks/stripe",
            content=b"{}",
            headers={"stripe-signature": "t=1,v1=ok"},
        )

    assert resp.status_code == 200
    assert resp.json()["code"] == "WORKSPACE_RESOLUTION_FAILED"


@pytest.mark.asyncio
async def test_webhook_outcome_code_is_in_request_log(api_client: AsyncClient):
    """A 200 webhook that failed resolution is logged as a failure with its code."""
    event = {"id": "evt_5", "type": "customer.subscription.updated", "data": {"object": {}}}
    entry_id = uuid.uuid4()
    outcome = ReconcileOutcome(
        ok=False,
        stage=ReconcileStage.FAILED,
        code=ReconcileErrorCode.WORKSPACE_RESOLUTION_FAILED,
        entry_id=entry_id,
    )
    with (
        patch("reconciler.api.v1.billing.stripe_service") as mock_stripe,
        patch(ORCHESTRATOR) as mock_orchestrator,
        patch("reconciler.main.logger") as mock_logger,
    ):
        mock_stripe.construct_webhook_event = MagicMock(return_value=event)
        mock_orchestrator.reconcile_webhook_event = AsyncMock(return_value=outcome)
        resp = await api_client.post(
            "/api/v1/billing/webhooks/stripe",
            content=b"{}",
            headers={"stripe-signature": "t=1,v1=ok"},
        )

    assert resp.status_code == 200
    line = mock_logger.warning.call_args[0][0]
    assert "-> 200" in line
    assert "outcome=WORKSPACE_RESOLUTION_FAILED" in line
    assert f"entry={entry_id}" in line


@pytest.mark.asyncio
async def test_deduped_reconcile_is_logged_with_outcome(
    api_client: AsyncClient, stripe_enabled, test_workspace_id
):
    outcome = _ok_outcome(test_workspace_id, stage=ReconcileStage.DEDUPED, deduped=True)
    with patch(ORCHESTRATOR) as mock_orchestrator, patch("reconciler.main.logger") as mock_logger:
        mock_orchestrator.reconcile_manual = AsyncMock(return_value=outcome)
        resp = await api_client.post("/api/v1/billing/reconcile", json={"subscription_id": "sub_1"})

    assert resp.status_code == 200
    line = mock_logger.info.call_args[0][0]
    assert line.endswith("[outcome=deduped]")
    mock_logger.warning.assert_not_called()


@pytest.mark.asyncio
async def test_webhook_transient_error_rolls_back(api_client: AsyncClient, db_session):
    event = {"id": "evt_3", "type": "invoice.paid", "data": {"object": {}}}
    with (
        patch("reconciler.api.v1.billing.stripe_service") as mock_stripe,
        patch(ORCHESTRATOR) as mock_orchestrator,
    ):
        mock_stripe.construct_webhook_event = MagicMock(return_value=event)
        mock_orchestrator.reconcile_webhook_event = AsyncMock(
            side_effect=OperationalError("INSERT", {}, Exception("connection reset"))
        )
        resp = await api_client.post(
            "/api/v1/billing/webhooks/stripe",
            content=b"{}",
            headers={"stripe-signature": "t=1,v1=ok"},
        )

    assert resp.status_code == 500
    db_session.rollback.assert_awaited()

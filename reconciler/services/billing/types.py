"""Value types shared by the reconciliation pipeline."""

import uuid as uuid_pkg
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any


class SignalSource(str, Enum):
    WEBHOOK = "webhook"
    MANUAL = "manual"


class ReconcileErrorCode(str, Enum):
    """Structured failure codes surfaced to callers."""

    SESSION_NOT_PAID_SUBSCRIPTION = "SESSION_NOT_PAID_SUBSCRIPTION"
    SUBSCRIPTION_NOT_FOUND = "SUBSCRIPTION_NOT_FOUND"
    WORKSPACE_RESOLUTION_FAILED = "WORKSPACE_RESOLUTION_FAILED"
    PLAN_RESOLUTION_FAILED = "PLAN_RESOLUTION_FAILED"
    PLAN_SYNC_NO_EFFECT = "PLAN_SYNC_NO_EFFECT"


class ReconcileStage(str, Enum):
    """
    Per-event pipeline stages.

    RECEIVED through DUNNING_UPDATED mark progress (an outcome's `reached`);
    DONE, IGNORED, DEDUPED and FAILED are terminal (an outcome's `stage`).
    """

    RECEIVED = "received"
    DEDUPED = "deduped"
    WORKSPACE_RESOLVED = "workspace_resolved"
    PLAN_RESOLVED = "plan_resolved"
    SYNCED = "synced"
    DUNNING_UPDATED = "dunning_updated"
    DONE = "done"
    IGNORED = "ignored"
    FAILED = "failed"


@dataclass
class BillingSignal:
    """
    A provider payload normalized into the hints the pipeline consumes.

    Built from webhook events, checkout sessions or subscriptions by the
    functions in `signals`. Every hint is optional; resolvers abstain on
    missing ones.
    """

    dedupe_key: str
    event_type: str
    source: SignalSource = SignalSource.WEBHOOK
    object_id: str | None = None
    status: str | None = None

    # Resolution hints
    workspace_id_hint: str | None = None
    user_id_hint: str | None = None
    # Workspace the signed-in caller is acting in (manual reconcile only)
    context_workspace_hint: str | None = None
    plan_hint: str | None = None
    interval_hint: str | None = None
    price_id: str | None = None
    price_lookup_key: str | None = None
    product_id: str | None = None
    product_metadata_plan: str | None = None
    recurring_interval: str | None = None

    # Provider references
    customer_id: str | None = None
    subscription_id: str | None = None
    latest_invoice_id: str | None = None
    livemode: bool | None = None

    actor_email: str | None = None

    # Dunning inputs
    payment_failed: bool = False
    payment_succeeded: bool = False
    subscription_deleted: bool = False

    # Whether this event type drives plan/dunning state at all
    actionable: bool = True

    def to_meta(self) -> dict[str, Any]:
        """The ledger's structured metadata blob (non-empty hints only)."""
        data = asdict(self)
        data["source"] = self.source.value
        for key in ("dedupe_key", "event_type", "object_id", "status", "actor_email"):
            data.pop(key)
        return {k: v for k, v in data.items() if v not in (None, False)}


@dataclass(frozen=True)
class Unresolved:
    """A resolver's "no answer": every strategy abstained."""

    reason: str
    tried: tuple[str, ...] = ()


@dataclass(frozen=True)
class WorkspaceResolution:
    workspace_id: uuid_pkg.UUID
    strategy: str


@dataclass(frozen=True)
class PlanResolution:
    plan: str
    interval: str | None
    strategy: str


@dataclass
class PlanUpdate:
    """What the plan sync writer applies to every sink."""

    workspace_id: uuid_pkg.UUID
    plan: str
    interval: str | None = None
    status: str | None = None
    provider_customer_id: str | None = None
    provider_subscription_id: str | None = None
    latest_invoice_id: str | None = None
    livemode: bool | None = None
    sync_source: str | None = None
    sync_key: str | None = None


@dataclass
class SyncResult:
    """Per-target write results, per-target readback and the effectiveness verdict."""

    wrote: dict[str, bool] = field(default_factory=dict)
    readback: dict[str, str | None] = field(default_factory=dict)
    effective: bool = False


@dataclass
class ReconcileOutcome:
    """
    Result of running one event through the orchestrator.

    Also serialized onto the ledger row (`to_annotation`) so a duplicate
    delivery can echo the original result.
    """

    ok: bool
    stage: ReconcileStage
    deduped: bool = False
    code: ReconcileErrorCode | None = None
    entry_id: uuid_pkg.UUID | None = None
    workspace_id: uuid_pkg.UUID | None = None
    workspace_strategy: str | None = None
    plan: str | None = None
    interval: str | None = None
    plan_strategy: str | None = None
    wrote: dict[str, bool] = field(default_factory=dict)
    readback: dict[str, str | None] = field(default_factory=dict)
    effective: bool | None = None
    dunning_phase: str | None = None
    # Furthest pipeline stage the event got to
    reached: ReconcileStage | None = None
    detail: str | None = None

    def to_annotation(self) -> dict[str, Any]:
        return {
            "ok": self.ok,
            "stage": self.stage.value,
            "code": self.code.value if self.code else None,
            "workspace_id": str(self.workspace_id) if self.workspace_id else None,
            "workspace_strategy": self.workspace_strategy,
            "plan": self.plan,
            "interval": self.interval,
            "plan_strategy": self.plan_strategy,
            "wrote": self.wrote,
            "readback": self.readback,
            "effective": self.effective,
            "dunning_phase": self.dunning_phase,
            "reached": self.reached.value if self.reached else None,
            "detail": self.detail,
        }

    @classmethod
    def deduplicated(
        cls,
        entry_id: uuid_pkg.UUID | None,
        prior: dict[str, Any] | None,
    ) -> "ReconcileOutcome":
        """Outcome for a duplicate delivery, echoing the original annotation when present."""
        prior = prior or {}
        code = prior.get("code")
        reached = prior.get("reached")
        workspace_id = prior.get("workspace_id")
        return cls(
            ok=bool(prior.get("ok", True)),
            stage=ReconcileStage.DEDUPED,
            deduped=True,
            code=ReconcileErrorCode(code) if code else None,
            entry_id=entry_id,
            workspace_id=uuid_pkg.UUID(workspace_id) if workspace_id else None,
            plan=prior.get("plan"),
            interval=prior.get("interval"),
            wrote=prior.get("wrote") or {},
            readback=prior.get("readback") or {},
            effective=prior.get("effective"),
            dunning_phase=prior.get("dunning_phase"),
            reached=ReconcileStage(reached) if reached else None,
        )

"""
Billing reconciliation services.

- ReconciliationOrchestrator: drives one billing event through the pipeline
- WorkspaceResolver / PlanResolver: ordered strategy chains, first match wins
- PlanSyncWriter: writes every plan sink and verifies by readback
- DunningStateMachine: payment recovery state and throttled recovery emails
"""

from reconciler.services.billing.dunning import (
    DunningStateMachine,
    dunning_machine,
    normalize_billing_status,
    should_show_banner,
)
from reconciler.services.billing.orchestrator import (
    ReconciliationOrchestrator,
    reconciliation_orchestrator,
)
from reconciler.services.billing.plan_resolver import PlanResolver, plan_resolver
from reconciler.services.billing.plan_sync import PlanSyncWriter, plan_sync_writer
from reconciler.services.billing.types import (
    BillingSignal,
    ReconcileErrorCode,
    ReconcileOutcome,
    ReconcileStage,
    SignalSource,
    SyncResult,
    Unresolved,
)
from reconciler.services.billing.workspace_resolver import WorkspaceResolver, workspace_resolver

__all__ = [
    "BillingSignal",
    "DunningStateMachine",
    "PlanResolver",
    "PlanSyncWriter",
    "ReconcileErrorCode",
    "ReconcileOutcome",
    "ReconcileStage",
    "ReconciliationOrchestrator",
    "SignalSource",
    "SyncResult",
    "Unresolved",
    "WorkspaceResolver",
    "dunning_machine",
    "normalize_billing_status",
    "plan_resolver",
    "plan_sync_writer",
    "reconciliation_orchestrator",
    "should_show_banner",
    "workspace_resolver",
]

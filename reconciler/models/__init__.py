from reconciler.models.billing import (
    BillingEvent,
    BillingInterval,
    LedgerEventType,
    PlanId,
    SubscriptionStatus,
    WorkspaceBilling,
)
from reconciler.models.dunning import DunningPhase, DunningState
from reconciler.models.user import User
from reconciler.models.workspace import MemberRole, Workspace, WorkspaceMember

__all__ = [
    # User
    "User",
    # Workspace
    "Workspace",
    "WorkspaceMember",
    "MemberRole",
    # Billing
    "WorkspaceBilling",
    "BillingEvent",
    "PlanId",
    "BillingInterval",
    "SubscriptionStatus",
    "LedgerEventType",
    # Dunning
    "DunningState",
    "DunningPhase",
]

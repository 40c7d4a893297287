from reconciler.domain.billing_record_operations import billing_record_ops
from reconciler.domain.dunning_operations import dunning_ops
from reconciler.domain.ledger_operations import ledger_ops
from reconciler.domain.workspace_operations import workspace_ops

__all__ = [
    "billing_record_ops",
    "dunning_ops",
    "ledger_ops",
    "workspace_ops",
]

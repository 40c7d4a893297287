from reconciler.api.v1 import billing

__all__ = [
    "billing",
]

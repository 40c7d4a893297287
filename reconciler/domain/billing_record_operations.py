"""Domain operations for the canonical workspace billing record (reads only)."""

import uuid as uuid_pkg

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from reconciler.models.billing import WorkspaceBilling


class BillingRecordOperations:
    """
    Lookups on the canonical billing record.

    Writes go exclusively through the plan sync writer's canonical sink.
    """

    def __init__(self) -> None:
        self.model = WorkspaceBilling

    async def get_by_provider_subscription(
        self,
        db: AsyncSession,
        provider_subscription_id: str,
    ) -> WorkspaceBilling | None:
        statement = select(self.model).where(
            self.model.provider_subscription_id == provider_subscription_id  # type: ignore[arg-type]
        )
        result = await db.execute(statement)
        return result.scalars().first()

    async def get_by_provider_customer(
        self,
        db: AsyncSession,
        provider_customer_id: str,
    ) -> list[WorkspaceBilling]:
        """All canonical records for a Stripe customer (several means ambiguous)."""
        statement = select(self.model).where(
            self.model.provider_customer_id == provider_customer_id  # type: ignore[arg-type]
        )
        result = await db.execute(statement)
        return list(result.scalars().all())


billing_record_ops = BillingRecordOperations()

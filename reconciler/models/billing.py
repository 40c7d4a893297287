"""Billing models - canonical per-workspace billing record and the event ledger."""

import uuid as uuid_pkg
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, String, text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.dialects.postgresql import UUID as PG_UUID
from sqlmodel import Field, SQLModel


class PlanId(str, Enum):
    """Plan identifiers."""

    FREE = "free"
    SOLO = "solo"
    PRO = "pro"
    STUDIO = "studio"


class BillingInterval(str, Enum):
    MONTHLY = "monthly"
    ANNUAL = "annual"


class SubscriptionStatus(str, Enum):
    """Normalized subscription lifecycle states."""

    ACTIVE = "active"
    TRIALING = "trialing"
    PAST_DUE = "past_due"
    UNPAID = "unpaid"
    CANCELED = "canceled"
    INCOMPLETE = "incomplete"
    UNKNOWN = "unknown"


class LedgerEventType(str, Enum):
    """Event types synthesized by this service (provider events keep their own type)."""

    MANUAL_RECONCILE = "manual.reconcile"
    RECOVERY_EMAIL_SENT = "recovery_email_sent"
    RECOVERY_EMAIL_FAILED = "recovery_email_failed"


class WorkspaceBilling(SQLModel, table=True):
    """
    Canonical billing record - one per workspace.

    The single source of truth for plan and subscription state. Only the
    plan sync writer mutates it; legacy mirrors are derived copies.
    """

    __tablename__ = "workspace_billing"

    id: uuid_pkg.UUID = Field(
        default_factory=uuid_pkg.uuid4,
        primary_key=True,
        nullable=False,
        sa_column_kwargs={"server_default": text("gen_random_uuid()")},
    )
    workspace_id: uuid_pkg.UUID = Field(
        sa_column=Column(
            PG_UUID(as_uuid=True),
            ForeignKey("workspaces.id", ondelete="CASCADE"),
            nullable=False,
            unique=True,
        ),
    )

    plan: str = Field(
        default=PlanId.FREE.value,
        sa_column=Column(String(20), nullable=False, server_default=PlanId.FREE.value),
    )
    interval: str | None = Field(default=None, max_length=20, nullable=True)
    status: str | None = Field(default=None, max_length=50, nullable=True)

    # Stripe references - written with coalesce semantics, a null never erases a known id
    provider_customer_id: str | None = Field(
        default=None, max_length=255, nullable=True, index=True
    )
    provider_subscription_id: str | None = Field(
        default=None, max_length=255, nullable=True, index=True
    )
    latest_invoice_id: str | None = Field(default=None, max_length=255, nullable=True)
    livemode: bool | None = Field(
        default=None,
        sa_column=Column(Boolean, nullable=True),
    )

    # Provenance of the last write
    sync_source: str | None = Field(
        default=None,
        max_length=50,
        nullable=True,
        sa_column_kwargs={"comment": "webhook | manual"},
    )
    sync_key: str | None = Field(
        default=None,
        max_length=255,
        nullable=True,
        sa_column_kwargs={"comment": "Ledger dedupe key that produced the last write"},
    )

    created_at: datetime = Field(  # type: ignore[call-overload]
        default_factory=lambda: datetime.now(UTC),
        nullable=False,
        sa_type=DateTime(timezone=True),
        sa_column_kwargs={"server_default": text("now()")},
    )
    updated_at: datetime | None = Field(  # type: ignore[call-overload]
        default=None,
        sa_type=DateTime(timezone=True),
        sa_column_kwargs={"onupdate": text("now()")},
    )


class BillingEvent(SQLModel, table=True):
    """
    Billing event ledger.

    Append-only record of every inbound billing event. `dedupe_key` is
    unique: a second insert with the same key is a no-op. Only `outcome`
    (and a null `workspace_id`) may be filled in after the insert.
    """

    __tablename__ = "billing_events"

    id: uuid_pkg.UUID = Field(
        default_factory=uuid_pkg.uuid4,
        primary_key=True,
        nullable=False,
        sa_column_kwargs={"server_default": text("gen_random_uuid()")},
    )
    dedupe_key: str = Field(
        sa_column=Column(String(255), nullable=False, unique=True),
    )
    workspace_id: uuid_pkg.UUID | None = Field(
        default=None,
        sa_column=Column(
            PG_UUID(as_uuid=True),
            ForeignKey("workspaces.id", ondelete="SET NULL"),
            nullable=True,
            index=True,
        ),
    )
    actor_email: str | None = Field(default=None, max_length=255, nullable=True)

    event_type: str = Field(
        sa_column=Column(String(100), nullable=False, index=True),
    )
    object_id: str | None = Field(default=None, max_length=255, nullable=True)
    status: str | None = Field(default=None, max_length=50, nullable=True)

    meta: dict[str, Any] | None = Field(
        default=None,
        sa_column=Column(JSONB, nullable=True),
    )
    outcome: dict[str, Any] | None = Field(
        default=None,
        sa_column=Column(JSONB, nullable=True),
    )

    created_at: datetime = Field(  # type: ignore[call-overload]
        default_factory=lambda: datetime.now(UTC),
        nullable=False,
        sa_type=DateTime(timezone=True),
        sa_column_kwargs={"server_default": text("now()")},
    )
    annotated_at: datetime | None = Field(  # type: ignore[call-overload]
        default=None, nullable=True, sa_type=DateTime(timezone=True)
    )

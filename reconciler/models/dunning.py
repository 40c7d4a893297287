"""Dunning model - per-workspace payment recovery state."""

import uuid as uuid_pkg
from datetime import UTC, datetime
from enum import Enum

from sqlalchemy import Column, DateTime, ForeignKey, text
from sqlalchemy.dialects.postgresql import UUID as PG_UUID
from sqlmodel import Field, SQLModel


class DunningPhase(str, Enum):
    """User-facing payment recovery phases."""

    HEALTHY = "healthy"
    RECOVERY_REQUIRED = "recovery_required"
    RECOVERY_REQUIRED_BANNER_DISMISSED = "recovery_required_banner_dismissed"


class DunningState(SQLModel, table=True):
    """
    Dunning state - one row per workspace.

    Written by the dunning state machine on subscription status changes and
    by user actions (dismiss banner, request recovery email). The recovery
    email cool-down lives here so it holds across process instances.
    """

    __tablename__ = "workspace_dunning"

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

    subscription_status: str | None = Field(default=None, max_length=50, nullable=True)
    recovery_required: bool = Field(
        default=False,
        nullable=False,
        sa_column_kwargs={"server_default": text("false")},
    )

    last_payment_failure_at: datetime | None = Field(  # type: ignore[call-overload]
        default=None, nullable=True, sa_type=DateTime(timezone=True)
    )
    banner_dismissed_at: datetime | None = Field(  # type: ignore[call-overload]
        default=None, nullable=True, sa_type=DateTime(timezone=True)
    )
    last_recovery_email_at: datetime | None = Field(  # type: ignore[call-overload]
        default=None, nullable=True, sa_type=DateTime(timezone=True)
    )

    updated_at: datetime | None = Field(  # type: ignore[call-overload]
        default=None,
        sa_type=DateTime(timezone=True),
        sa_column_kwargs={"onupdate": text("now()")},
    )

    @property
    def phase(self) -> DunningPhase:
        if not self.recovery_required:
            return DunningPhase.HEALTHY
        if self.banner_dismissed_at is not None:
            return DunningPhase.RECOVERY_REQUIRED_BANNER_DISMISSED
        return DunningPhase.RECOVERY_REQUIRED

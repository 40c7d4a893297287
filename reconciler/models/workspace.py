"""Workspace model - the tenant that owns billing state."""

import uuid as uuid_pkg
from datetime import UTC, datetime
from enum import Enum

from sqlalchemy import Column, DateTime, ForeignKey, String, UniqueConstraint, text
from sqlalchemy.dialects.postgresql import UUID as PG_UUID
from sqlmodel import Field, SQLModel


class Workspace(SQLModel, table=True):
    """
    Workspace model - the billing and team unit.

    Created by user actions outside the billing core; read-only to it.
    """

    __tablename__ = "workspaces"

    id: uuid_pkg.UUID = Field(
        default_factory=uuid_pkg.uuid4,
        primary_key=True,
        nullable=False,
        sa_column_kwargs={"server_default": text("gen_random_uuid()")},
    )
    name: str = Field(max_length=100, nullable=False)

    # Ownership - primary billing contact
    owner_id: uuid_pkg.UUID = Field(foreign_key="users.id", nullable=False, index=True)

    created_at: datetime = Field(  # type: ignore[call-overload]
        default_factory=lambda: datetime.now(UTC),
        nullable=False,
        sa_type=DateTime(timezone=True),
        sa_column_kwargs={"server_default": text("now()")},
    )


class MemberRole(str, Enum):
    """Role levels for workspace members."""

    OWNER = "owner"  # Full access, billing control
    ADMIN = "admin"  # Full access, can trigger billing recovery actions
    MEMBER = "member"


class WorkspaceMember(SQLModel, table=True):
    """
    Workspace membership - join table between users and workspaces.

    Each row also carries a legacy copy of the workspace plan (`plan`,
    `subscription_status`) for membership-scoped read paths.
    """

    __tablename__ = "workspace_members"
    __table_args__ = (
        UniqueConstraint("workspace_id", "user_id", name="uq_workspace_member"),
    )

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
            index=True,
        ),
    )
    user_id: uuid_pkg.UUID = Field(
        sa_column=Column(
            PG_UUID(as_uuid=True),
            ForeignKey("users.id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    role: str = Field(
        default=MemberRole.MEMBER.value,
        sa_column=Column(String(20), nullable=False, server_default="member"),
    )

    # Legacy plan mirror
    plan: str = Field(
        default="free",
        sa_column=Column(String(20), nullable=False, server_default="free"),
    )
    subscription_status: str | None = Field(default=None, max_length=50, nullable=True)

    joined_at: datetime = Field(  # type: ignore[call-overload]
        default_factory=lambda: datetime.now(UTC),
        nullable=False,
        sa_type=DateTime(timezone=True),
        sa_column_kwargs={"server_default": text("now()")},
    )

import uuid as uuid_pkg
from datetime import UTC, datetime

from sqlalchemy import Column, DateTime, ForeignKey, String, text
from sqlalchemy.dialects.postgresql import UUID as PG_UUID
from sqlmodel import Field, SQLModel


class User(SQLModel, table=True):
    """
    User model - mirrors the identity provider's users.

    `plan` and `subscription_status` are a legacy mirror of the owned
    workspace's billing state; older read paths still consult them.
    """

    __tablename__ = "users"

    id: uuid_pkg.UUID = Field(
        primary_key=True,
        index=True,
        nullable=False,
        description="UUID from the identity provider",
    )
    email: str | None = Field(default=None, max_length=255)
    display_name: str | None = Field(default=None, max_length=100)

    # Workspace the user last switched to
    active_workspace_id: uuid_pkg.UUID | None = Field(
        default=None,
        sa_column=Column(
            PG_UUID(as_uuid=True),
            ForeignKey(
                "workspaces.id",
                ondelete="SET NULL",
                use_alter=True,
                name="fk_users_active_workspace_id",
            ),
            nullable=True,
        ),
    )

    # Legacy plan mirror
    plan: str = Field(
        default="free",
        sa_column=Column(String(20), nullable=False, server_default="free"),
    )
    subscription_status: str | None = Field(default=None, max_length=50, nullable=True)

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

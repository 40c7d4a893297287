"""Workspace context dependencies.

Supplies `{user_id, user_email, workspace_id, user_role}` to billing
endpoints. The billing core itself never authenticates.
"""

import uuid as uuid_pkg
from dataclasses import dataclass

from fastapi import Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from reconciler.core.database import get_db
from reconciler.domain.workspace_operations import workspace_ops
from reconciler.models.user import User
from reconciler.models.workspace import MemberRole

from .auth import get_current_user


@dataclass
class WorkspaceContext:
    """Identity of the caller within one workspace."""

    user_id: uuid_pkg.UUID
    user_email: str | None
    workspace_id: uuid_pkg.UUID
    user_role: str

    @property
    def is_billing_admin(self) -> bool:
        return self.user_role in (MemberRole.OWNER.value, MemberRole.ADMIN.value)


async def get_workspace_context(
    workspace_id: uuid_pkg.UUID | None = None,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> WorkspaceContext:
    """
    Get the caller's workspace context.

    Resolution order:
    1. If workspace_id is provided (query param), use that workspace (must be a member)
    2. Otherwise the user's active workspace, if they're still a member
    3. Otherwise the user's first workspace (owned workspaces first)

    Raises 403 if the user is not a member of the requested workspace.
    Raises 404 if no workspace is found.
    """
    if workspace_id:
        role = await workspace_ops.get_member_role(db, workspace_id, current_user.id)
        if role is None:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Not a member of this workspace",
            )
        return WorkspaceContext(current_user.id, current_user.email, workspace_id, role)

    if current_user.active_workspace_id:
        role = await workspace_ops.get_member_role(
            db, current_user.active_workspace_id, current_user.id
        )
        if role is not None:
            return WorkspaceContext(
                current_user.id, current_user.email, current_user.active_workspace_id, role
            )

    workspaces = await workspace_ops.get_for_user(db, current_user.id)
    if not workspaces:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="No workspace found for user",
        )

    workspace = workspaces[0]
    role = await workspace_ops.get_member_role(db, workspace.id, current_user.id)
    return WorkspaceContext(
        current_user.id, current_user.email, workspace.id, role or MemberRole.MEMBER.value
    )


async def require_billing_admin(
    context: WorkspaceContext = Depends(get_workspace_context),
) -> WorkspaceContext:
    """
    Require the caller to be an owner or admin of the current workspace.

    Returns the context if authorized, raises 403 otherwise.
    """
    if not context.is_billing_admin:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin or owner access required",
        )
    return context

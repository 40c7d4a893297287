"""Domain operations for Workspace and membership (read-only to the billing core)."""

import uuid as uuid_pkg

from sqlalchemy import case, select
from sqlalchemy.ext.asyncio import AsyncSession

from reconciler.models.user import User
from reconciler.models.workspace import MemberRole, Workspace, WorkspaceMember


class WorkspaceOperations:
    """Read operations for workspaces, members and their users."""

    async def get(
        self,
        db: AsyncSession,
        id: uuid_pkg.UUID,
    ) -> Workspace | None:
        """Get a workspace by ID."""
        statement = select(Workspace).where(Workspace.id == id)  # type: ignore[arg-type]
        result = await db.execute(statement)
        return result.scalar_one_or_none()

    async def get_by_owner(
        self,
        db: AsyncSession,
        owner_id: uuid_pkg.UUID,
    ) -> list[Workspace]:
        """Get all workspaces owned by a user, oldest first."""
        statement = (
            select(Workspace)
            .where(Workspace.owner_id == owner_id)  # type: ignore[arg-type]
            .order_by(Workspace.created_at.asc(), Workspace.id.asc())  # type: ignore[attr-defined]
        )
        result = await db.execute(statement)
        return list(result.scalars().all())

    async def get_for_user(
        self,
        db: AsyncSession,
        user_id: uuid_pkg.UUID,
    ) -> list[Workspace]:
        """Get all workspaces a user belongs to, owned workspaces first."""
        owner_first = case((WorkspaceMember.role == MemberRole.OWNER.value, 0), else_=1)
        statement = (
            select(Workspace)
            .join(WorkspaceMember, WorkspaceMember.workspace_id == Workspace.id)  # type: ignore[arg-type]
            .where(WorkspaceMember.user_id == user_id)  # type: ignore[arg-type]
            .order_by(owner_first, Workspace.created_at.asc())  # type: ignore[attr-defined]
        )
        result = await db.execute(statement)
        return list(result.scalars().all())

    async def is_member(
        self,
        db: AsyncSession,
        workspace_id: uuid_pkg.UUID,
        user_id: uuid_pkg.UUID,
    ) -> bool:
        return await self.get_member_role(db, workspace_id, user_id) is not None

    async def get_member_role(
        self,
        db: AsyncSession,
        workspace_id: uuid_pkg.UUID,
        user_id: uuid_pkg.UUID,
    ) -> str | None:
        """Get a user's role in a workspace, or None if not a member."""
        statement = select(WorkspaceMember.role).where(
            WorkspaceMember.workspace_id == workspace_id,  # type: ignore[arg-type]
            WorkspaceMember.user_id == user_id,  # type: ignore[arg-type]
        )
        result = await db.execute(statement)
        return result.scalar_one_or_none()

    async def get_user(
        self,
        db: AsyncSession,
        user_id: uuid_pkg.UUID,
    ) -> User | None:
        statement = select(User).where(User.id == user_id)  # type: ignore[arg-type]
        result = await db.execute(statement)
        return result.scalar_one_or_none()

    async def get_owner(
        self,
        db: AsyncSession,
        workspace_id: uuid_pkg.UUID,
    ) -> User | None:
        """Get the owning user of a workspace."""
        statement = (
            select(User)
            .join(Workspace, Workspace.owner_id == User.id)  # type: ignore[arg-type]
            .where(Workspace.id == workspace_id)  # type: ignore[arg-type]
        )
        result = await db.execute(statement)
        return result.scalar_one_or_none()


workspace_ops = WorkspaceOperations()

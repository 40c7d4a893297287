"""Integration test conftest - real PostgreSQL fixtures.

Overrides the root conftest's mocked `db_session` with one bound to
`database_url_direct`, and adds committed-row fixtures for tests that need
two transactions racing on separate connections.

Two patterns:
- `db_session`: transaction-rollback. Real SQL executes, nothing persists.
- `session_factory` + `committed_workspace`: rows are really committed so a
  second connection can see (and block on) them; cleanup deletes them.

Opt in with RECONCILER_DB_TESTS=1. Run `alembic upgrade head` first.
"""

from __future__ import annotations

import os
import uuid
from datetime import UTC, datetime

import pytest
from sqlalchemy import delete, event, or_
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from reconciler.config import settings
from reconciler.models.billing import BillingEvent, WorkspaceBilling
from reconciler.models.dunning import DunningState
from reconciler.models.user import User
from reconciler.models.workspace import MemberRole, Workspace, WorkspaceMember

# ─────────────────────────────────────────────────────────────────────────────
# Engine (DIRECT connection, not the pooler)
# ─────────────────────────────────────────────────────────────────────────────

# PgBouncer transaction pooling breaks SAVEPOINTs and row locks held across
# statements. Use the direct port.
TEST_ENGINE = create_async_engine(
    settings.database_url_direct,
    echo=False,
    pool_pre_ping=True,
    pool_size=4,
    max_overflow=2,
    connect_args={
        "command_timeout": 30,
    },
)

# Dedupe keys and names written by these tests start with this
TEST_PREFIX = "__test_"


@pytest.fixture(autouse=True)
def _mark_integration(request):
    """Auto-mark all tests in this directory as integration; skip unless opted in."""
    request.node.add_marker(pytest.mark.integration)
    if not os.getenv("RECONCILER_DB_TESTS"):
        pytest.skip("Set RECONCILER_DB_TESTS=1 to run database integration tests")


# ─────────────────────────────────────────────────────────────────────────────
# Transaction-Rollback Fixtures
# ─────────────────────────────────────────────────────────────────────────────


@pytest.fixture
async def db_session():
    """Database session wrapped in a transaction that is ALWAYS rolled back.

    Uses SAVEPOINT so code under test can commit() or open its own nested
    transactions; the outer transaction absorbs everything.
    """
    async with TEST_ENGINE.connect() as conn:
        trans = await conn.begin()
        session = AsyncSession(bind=conn, expire_on_commit=False)
        await conn.begin_nested()

        @event.listens_for(session.sync_session, "after_transaction_end")
        def restart_savepoint(session_sync, transaction):
            """Restart the outer SAVEPOINT after each nested transaction ends."""
            if transaction.nested and not transaction._parent.nested:
                session_sync.begin_nested()

        try:
            yield session
        finally:
            await session.close()
            await trans.rollback()


async def _add_owner_and_workspace(db: AsyncSession) -> tuple[User, Workspace]:
    suffix = uuid.uuid4().hex[:8]
    owner = User(
        id=uuid.uuid4(),
        email=f"{TEST_PREFIX}{suffix}@example.com",
        display_name="Test Owner",
        created_at=datetime.now(UTC),
    )
    db.add(owner)
    await db.flush()

    workspace = Workspace(name=f"{TEST_PREFIX}workspace_{suffix}", owner_id=owner.id)
    db.add(workspace)
    await db.flush()

    db.add(
        WorkspaceMember(
            workspace_id=workspace.id, user_id=owner.id, role=MemberRole.OWNER.value
        )
    )
    await db.flush()
    return owner, workspace


@pytest.fixture
async def test_workspace(db_session: AsyncSession) -> Workspace:
    """A workspace (and owning member) inside the rolled-back transaction."""
    _owner, workspace = await _add_owner_and_workspace(db_session)
    return workspace


# ─────────────────────────────────────────────────────────────────────────────
# Committed Fixtures (true concurrency)
# ─────────────────────────────────────────────────────────────────────────────


@pytest.fixture
def session_factory():
    """Independent sessions, one connection each. Callers commit for real."""
    return async_sessionmaker(TEST_ENGINE, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def cleanup_keys():
    """Dedupe keys to delete from the ledger after the test."""
    keys: list[str] = []
    yield keys
    if keys:
        async with TEST_ENGINE.begin() as conn:
            await conn.execute(delete(BillingEvent).where(BillingEvent.dedupe_key.in_(keys)))  # type: ignore[attr-defined]


@pytest.fixture
async def committed_workspace(session_factory):
    """A committed owner + workspace, deleted (with its billing rows) afterwards."""
    async with session_factory() as session:
        owner, workspace = await _add_owner_and_workspace(session)
        await session.commit()

    try:
        yield workspace
    finally:
        async with TEST_ENGINE.begin() as conn:
            await conn.execute(
                delete(BillingEvent).where(
                    or_(
                        BillingEvent.workspace_id == workspace.id,  # type: ignore[arg-type]
                        BillingEvent.actor_email == owner.email,  # type: ignore[arg-type]
                    )
                )
            )
            await conn.execute(delete(DunningState).where(DunningState.workspace_id == workspace.id))  # type: ignore[arg-type]
            await conn.execute(
                delete(WorkspaceBilling).where(WorkspaceBilling.workspace_id == workspace.id)  # type: ignore[arg-type]
            )
            await conn.execute(
                delete(WorkspaceMember).where(WorkspaceMember.workspace_id == workspace.id)  # type: ignore[arg-type]
            )
            await conn.execute(delete(Workspace).where(Workspace.id == workspace.id))  # type: ignore[arg-type]
            await conn.execute(delete(User).where(User.id == owner.id))  # type: ignore[arg-type]

"""Unit tests for DunningOperations - row access and locking."""

import uuid
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from reconciler.domain.dunning_operations import DunningOperations

from tests.helpers.mock_factories import make_dunning_state, mock_scalar_result


class TestGet:
    def setup_method(self):
        self.ops = DunningOperations()
        self.db = AsyncMock()

    @pytest.mark.asyncio
    async def test_plain_get_does_not_lock(self):
        self.db.execute.return_value = mock_scalar_result(None)

        await self.ops.get(self.db, uuid.uuid4())

        compiled = str(self.db.execute.call_args[0][0].compile())
        assert "FOR UPDATE" not in compiled

    @pytest.mark.asyncio
    async def test_for_update_locks_row(self):
        state = make_dunning_state()
        self.db.execute.return_value = mock_scalar_result(state)

        result = await self.ops.get(self.db, state.workspace_id, for_update=True)

        assert result is state
        compiled = str(self.db.execute.call_args[0][0].compile())
        assert "FOR UPDATE" in compiled


class TestGetOrCreateLocked:
    def setup_method(self):
        self.ops = DunningOperations()
        self.db = AsyncMock()

    @pytest.mark.asyncio
    @patch.object(DunningOperations, "get")
    async def test_upserts_then_locks(self, mock_get):
        state = make_dunning_state()
        mock_get.return_value = state

        result = await self.ops.get_or_create_locked(self.db, state.workspace_id)

        assert result is state
        insert_stmt = self.db.execute.call_args[0][0]
        assert "ON CONFLICT (workspace_id) DO NOTHING" in str(insert_stmt.compile())
        mock_get.assert_awaited_once_with(self.db, state.workspace_id, for_update=True)

    @pytest.mark.asyncio
    @patch.object(DunningOperations, "get")
    async def test_raises_if_row_missing_after_upsert(self, mock_get):
        mock_get.return_value = None

        with pytest.raises(RuntimeError):
            await self.ops.get_or_create_locked(self.db, uuid.uuid4())


class TestSave:
    @pytest.mark.asyncio
    async def test_adds_and_flushes(self):
        ops = DunningOperations()
        db = AsyncMock()
        db.add = MagicMock()
        state = make_dunning_state()

        result = await ops.save(db, state)

        assert result is state
        db.add.assert_called_once_with(state)
        db.flush.assert_awaited_once()

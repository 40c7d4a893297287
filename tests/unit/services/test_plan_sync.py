"""Unit tests for PlanSyncWriter - per-sink writes, readback and effectiveness."""

import uuid

import pytest

from reconciler.services.billing.plan_sync import PlanSyncWriter
from reconciler.services.billing.sinks import (
    CanonicalBillingSink,
    MembershipPlanMirror,
    UserPlanMirror,
    build_sinks,
)
from reconciler.services.billing.types import PlanUpdate

from tests.helpers.mock_factories import InMemoryPlanSink, make_mock_session


class TestApplyPlan:
    def setup_method(self):
        self.db = make_mock_session()
        self.workspace_id = uuid.uuid4()
        self.update = PlanUpdate(workspace_id=self.workspace_id, plan="pro", interval="monthly")

    @pytest.mark.asyncio
    async def test_all_sinks_written_is_effective(self):
        sinks = [InMemoryPlanSink("workspace"), InMemoryPlanSink("membership"), InMemoryPlanSink("user")]
        writer = PlanSyncWriter(sinks, authoritative=["workspace", "user"])

        result = await writer.apply_plan(self.db, self.update)

        assert result.wrote == {"workspace": True, "membership": True, "user": True}
        assert result.readback == {"workspace": "pro", "membership": "pro", "user": "pro"}
        assert result.effective is True

    @pytest.mark.asyncio
    async def test_failing_mirror_does_not_abort_others(self):
        sinks = [
            InMemoryPlanSink("workspace"),
            InMemoryPlanSink("membership", fail_write=True),
            InMemoryPlanSink("user"),
        ]
        writer = PlanSyncWriter(sinks, authoritative=["workspace"])

        result = await writer.apply_plan(self.db, self.update)

        assert result.wrote == {"workspace": True, "membership": False, "user": True}
        assert result.readback["membership"] is None
        assert result.readback["user"] == "pro"
        assert result.effective is True

    @pytest.mark.asyncio
    async def test_each_write_runs_in_a_savepoint(self):
        sinks = [InMemoryPlanSink("workspace"), InMemoryPlanSink("user")]
        writer = PlanSyncWriter(sinks, authoritative=["workspace"])

        await writer.apply_plan(self.db, self.update)

        # One SAVEPOINT per write plus one per readback
        assert self.db.begin_nested.call_count == 4

    @pytest.mark.asyncio
    async def test_only_non_authoritative_success_is_not_effective(self):
        sinks = [
            InMemoryPlanSink("workspace", fail_write=True),
            InMemoryPlanSink("membership"),
            InMemoryPlanSink("user", drop_write=True),
        ]
        writer = PlanSyncWriter(sinks, authoritative=["workspace", "user"])

        result = await writer.apply_plan(self.db, self.update)

        assert result.readback["membership"] == "pro"
        assert result.effective is False

    @pytest.mark.asyncio
    async def test_stale_readback_is_not_effective(self):
        canonical = InMemoryPlanSink("workspace", drop_write=True)
        canonical.plans[self.workspace_id] = "solo"
        writer = PlanSyncWriter([canonical], authoritative=["workspace"])

        result = await writer.apply_plan(self.db, self.update)

        assert result.wrote == {"workspace": False}
        assert result.readback == {"workspace": "solo"}
        assert result.effective is False

    @pytest.mark.asyncio
    async def test_effective_implies_authoritative_readback_matches(self):
        sinks = [InMemoryPlanSink("workspace", fail_write=True), InMemoryPlanSink("user")]
        writer = PlanSyncWriter(sinks, authoritative=["workspace", "user"])

        result = await writer.apply_plan(self.db, self.update)

        assert result.effective is True
        assert any(result.readback[name] == "pro" for name in ("workspace", "user"))

    @pytest.mark.asyncio
    async def test_writing_twice_is_idempotent(self):
        sinks = [InMemoryPlanSink("workspace"), InMemoryPlanSink("user")]
        writer = PlanSyncWriter(sinks, authoritative=["workspace"])

        first = await writer.apply_plan(self.db, self.update)
        second = await writer.apply_plan(self.db, self.update)

        assert first.readback == second.readback


class TestBuildSinks:
    def test_canonical_first_then_configured_mirrors(self):
        sinks = build_sinks(["user", "membership"])
        assert [type(s) for s in sinks] == [CanonicalBillingSink, UserPlanMirror, MembershipPlanMirror]

    def test_unknown_mirror_is_skipped(self):
        sinks = build_sinks(["membership", "legacy_table"])
        assert [s.name for s in sinks] == ["workspace", "membership"]

    def test_no_mirrors(self):
        assert [s.name for s in build_sinks([])] == ["workspace"]

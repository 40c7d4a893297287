"""Plan sync writer - apply a resolved plan to every sink, then verify by readback.

Each sink write runs in its own SAVEPOINT: a failing sink is rolled back on
its own and recorded as `wrote[name] = False` without aborting the others.
There is no cross-sink atomicity; the readback detects partial failure.

`effective` is True iff at least one authoritative location (one that read
paths still consult) reads back the intended plan. Callers that need full
consistency inspect `wrote` per target.
"""

import logging
import uuid as uuid_pkg
from collections.abc import Iterable

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from reconciler.config import settings
from reconciler.services.billing.sinks import PlanSink, build_sinks
from reconciler.services.billing.types import PlanUpdate, SyncResult

logger = logging.getLogger(__name__)


class PlanSyncWriter:
    """Writes a plan to the canonical record and every registered mirror."""

    def __init__(self, sinks: list[PlanSink], authoritative: Iterable[str]) -> None:
        self.sinks = sinks
        self.authoritative = set(authoritative)

    @classmethod
    def from_settings(cls) -> "PlanSyncWriter":
        return cls(
            sinks=build_sinks(settings.plan_mirror_sinks),
            authoritative=settings.authoritative_plan_sources,
        )

    async def apply_plan(self, db: AsyncSession, plan_update: PlanUpdate) -> SyncResult:
        result = SyncResult()

        for sink in self.sinks:
            result.wrote[sink.name] = await self._write(db, sink, plan_update)

        for sink in self.sinks:
            result.readback[sink.name] = await self._read(db, sink, plan_update.workspace_id)

        result.effective = any(
            result.readback.get(name) == plan_update.plan
            for name in self.authoritative
            if name in result.readback
        )

        failed = [name for name, ok in result.wrote.items() if not ok]
        if failed:
            logger.warning(
                f"[plan-sync] Workspace {plan_update.workspace_id}: partial write "
                f"(failed={failed}, readback={result.readback})"
            )
        if not result.effective:
            logger.warning(
                f"[plan-sync] Workspace {plan_update.workspace_id}: no authoritative source "
                f"reads back '{plan_update.plan}' (readback={result.readback})"
            )
        return result

    async def _write(self, db: AsyncSession, sink: PlanSink, plan_update: PlanUpdate) -> bool:
        try:
            async with db.begin_nested():
                return await sink.write(db, plan_update)
        except SQLAlchemyError as e:
            logger.warning(
                f"[plan-sync] Write to '{sink.name}' failed for workspace "
                f"{plan_update.workspace_id}: {e}"
            )
            return False

    async def _read(
        self, db: AsyncSession, sink: PlanSink, workspace_id: uuid_pkg.UUID
    ) -> str | None:
        try:
            async with db.begin_nested():
                return await sink.read(db, workspace_id)
        except SQLAlchemyError as e:
            logger.warning(f"[plan-sync] Readback from '{sink.name}' failed: {e}")
            return None


plan_sync_writer = PlanSyncWriter.from_settings()

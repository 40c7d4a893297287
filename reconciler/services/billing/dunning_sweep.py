"""Daily dunning sweep.

Offers a recovery email to every workspace that is still in payment
recovery. The per-workspace cool-down inside `maybe_send_recovery_email`
makes the sweep safe to run as often as needed.
"""

import logging
import time
from dataclasses import dataclass, field

from sqlalchemy.ext.asyncio import AsyncSession

from reconciler.config import settings
from reconciler.domain.dunning_operations import dunning_ops
from reconciler.services.billing.dunning import DunningStateMachine, dunning_machine
from reconciler.services.email.postmark import postmark_service

logger = logging.getLogger(__name__)


@dataclass
class DunningSweepReport:
    """Result summary for logging and the manual trigger."""

    workspaces_checked: int = 0
    emails_sent: int = 0
    errors: int = 0
    duration_seconds: float = 0.0
    skipped_reasons: dict[str, int] = field(default_factory=dict)


async def run_dunning_sweep(
    db: AsyncSession,
    machine: DunningStateMachine = dunning_machine,
) -> DunningSweepReport:
    """
    Send due recovery emails.

    Commits after each workspace so a sent email and its cool-down stamp are
    durable before the next workspace is locked.
    """
    report = DunningSweepReport()
    start = time.monotonic()

    if not settings.postmark_enabled:
        logger.warning("[dunning-sweep] Skipped - Postmark not configured")
        report.duration_seconds = round(time.monotonic() - start, 2)
        return report

    states = await dunning_ops.list_recovery_required(db)
    workspace_ids = [state.workspace_id for state in states]
    report.workspaces_checked = len(workspace_ids)
    logger.info(f"[dunning-sweep] {len(workspace_ids)} workspaces in recovery")

    async with postmark_service.batch():
        for workspace_id in workspace_ids:
            try:
                result = await machine.maybe_send_recovery_email(db, workspace_id)
                await db.commit()
            except Exception:
                await db.rollback()
                logger.exception(f"[dunning-sweep] Error processing workspace {workspace_id}")
                report.errors += 1
                continue

            if result.sent:
                report.emails_sent += 1
            elif result.reason:
                report.skipped_reasons[result.reason] = (
                    report.skipped_reasons.get(result.reason, 0) + 1
                )

    report.duration_seconds = round(time.monotonic() - start, 2)
    return report

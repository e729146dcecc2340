from __future__ import annotations

import logging
from typing import Any

from agentrelay.db.database import Database
from agentrelay.errors import NotFoundError
from agentrelay.models.audit import AuditEvent, AuditStatus
from agentrelay.models.run import Run, RunOutcome
from agentrelay.models.work_item import WorkItem
from agentrelay.services import event_bus as events
from agentrelay.services.audit import AuditLog
from agentrelay.services.event_bus import EventBus

logger = logging.getLogger(__name__)


class RunTracker:
    """Owns the lifecycle of runs and the terminal status of work items.

    Completion is first-writer-wins: whichever of the runner or a webhook
    finishes a run first decides its outcome, and later calls are no-ops.
    """

    def __init__(
        self,
        db: Database,
        event_bus: EventBus | None = None,
        audit: AuditLog | None = None,
    ):
        self.db = db
        self.event_bus = event_bus
        self.audit = audit

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    async def complete(
        self,
        run_id: int,
        outcome: RunOutcome | str,
        log: str | None = None,
        **fields: Any,
    ) -> bool:
        """Finish an active run and settle its work item.

        Returns False when the run had already finished.
        """
        outcome = RunOutcome(outcome)
        result = await self.db.complete_run(run_id, outcome.value, fields, log)
        if result is None:
            logger.debug("Run #%d already finished; ignoring %s", run_id, outcome.value)
            if fields:
                await self.attach_references(run_id, **fields)
            return False
        run_row, work_item_row = result
        await self._after_completion(Run.from_row(run_row), work_item_row)
        return True

    async def finalize_work_item(
        self, work_item_id: int, outcome: RunOutcome | str, log: str | None = None
    ) -> bool:
        """Drive a work item to its terminal status.

        Completes the active run when there is one. Returns False when the
        item was already completed or failed.
        """
        outcome = RunOutcome(outcome)
        run_row, work_item_row = await self.db.finalize_work_item(
            work_item_id, outcome.value, log
        )
        if run_row is not None:
            await self._after_completion(Run.from_row(run_row), work_item_row)
            return True
        if work_item_row is None:
            return False
        logger.info(
            "Work item #%d finalized without an active run: %s",
            work_item_id,
            work_item_row["status"],
        )
        return True

    async def attach_references(self, run_id: int, **fields: Any) -> Run:
        row = await self.db.update_run_references(run_id, fields)
        if row is None:
            raise NotFoundError(f"Run not found: {run_id}")
        return Run.from_row(row)

    async def append_log(self, run_id: int, line: str) -> None:
        await self.db.append_run_log(run_id, line)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def get(self, run_id: int) -> Run:
        row = await self.db.get_run(run_id)
        if row is None:
            raise NotFoundError(f"Run not found: {run_id}")
        return Run.from_row(row)

    async def active_run_for(self, work_item_id: int) -> Run | None:
        row = await self.db.get_active_run(work_item_id)
        return Run.from_row(row) if row else None

    async def list_for_work_item(self, work_item_id: int) -> list[Run]:
        return [Run.from_row(r) for r in await self.db.list_runs(work_item_id)]

    async def find_by_branch(self, branch_name: str) -> Run | None:
        return await self._find("branch_name", branch_name)

    async def find_by_pr_number(self, pr_number: int) -> Run | None:
        return await self._find("pr_number", pr_number)

    async def find_by_head_sha(self, head_sha: str) -> Run | None:
        return await self._find("head_sha", head_sha)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    async def _find(self, column: str, value: Any) -> Run | None:
        row = await self.db.find_run(column, value)
        return Run.from_row(row) if row else None

    async def _after_completion(self, run: Run, work_item_row: Any) -> None:
        assert run.outcome is not None
        work_item = WorkItem.from_row(work_item_row) if work_item_row else None
        logger.info(
            "Run #%d for work item #%d finished: %s",
            run.id,
            run.work_item_id,
            run.outcome.value,
        )
        if self.audit:
            await self.audit.record(
                AuditEvent.RUN_FINISHED
                if run.outcome is RunOutcome.SUCCESS
                else AuditEvent.RUN_FAILED,
                AuditStatus.SUCCESS if run.outcome is RunOutcome.SUCCESS else AuditStatus.FAILED,
                project_id=work_item.project_id if work_item else None,
                work_item_id=run.work_item_id,
                run_id=run.id,
            )
        if self.event_bus:
            await self.event_bus.publish(
                events.RUN_COMPLETED,
                {
                    "run_id": run.id,
                    "work_item_id": run.work_item_id,
                    "outcome": run.outcome.value,
                    "status": work_item.status.value if work_item else None,
                },
            )

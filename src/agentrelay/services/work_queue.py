from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any

from agentrelay.db.database import Database
from agentrelay.errors import NotFoundError, WorkItemStateError
from agentrelay.models.agent import Agent
from agentrelay.models.audit import AuditEvent, AuditStatus
from agentrelay.models.run import Run
from agentrelay.models.work_item import WorkItem
from agentrelay.services import event_bus as events
from agentrelay.services.audit import AuditLog
from agentrelay.services.event_bus import EventBus
from agentrelay.utils.clock import utc_now

logger = logging.getLogger(__name__)

DEFAULT_PRIORITY = 5


class WorkQueue:
    """Priority queue of work items with exclusive leasing.

    A lease moves one pending item to ``in_progress`` and opens its Run in a
    single write transaction. Concurrent callers, in this process or in
    others sharing the database file, never receive the same item: the
    claiming UPDATE only matches rows that are still pending and unlocked,
    so a row taken by someone else is skipped rather than waited on.
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
    # Producing
    # ------------------------------------------------------------------

    async def enqueue(
        self,
        project_id: int,
        work_type: str,
        priority: int = DEFAULT_PRIORITY,
        payload: dict[str, Any] | None = None,
        assigned_agent_id: int | None = None,
    ) -> WorkItem:
        row = await self.db.create_work_item(
            project_id,
            work_type,
            priority=priority,
            payload=payload,
            assigned_agent_id=assigned_agent_id,
        )
        work_item = WorkItem.from_row(row)
        logger.info(
            "Enqueued work item #%d (%s, priority %d)", work_item.id, work_type, priority
        )
        await self._publish(events.WORK_ITEM_ENQUEUED, work_item)
        return work_item

    # ------------------------------------------------------------------
    # Leasing
    # ------------------------------------------------------------------

    async def lease_next(self, agent: Agent) -> WorkItem | None:
        """Lease the highest-priority, oldest pending item to ``agent``.

        Returns None when the queue is empty, the agent is disabled, or the
        agent already holds ``max_concurrency`` items.
        """
        return await self._lease(agent, None)

    async def lease(self, work_item_id: int, agent: Agent) -> WorkItem | None:
        """Lease one specific item, if it is still pending and unlocked."""
        return await self._lease(agent, work_item_id)

    async def lease_with_run(
        self, agent: Agent, work_item_id: int | None = None
    ) -> tuple[WorkItem, Run] | None:
        assert agent.id is not None
        claimed = await self.db.claim_work_item(agent.id, work_item_id)
        if claimed is None:
            return None
        work_item = WorkItem.from_row(claimed[0])
        run = Run.from_row(claimed[1])
        logger.info(
            "Agent %s leased work item #%d (run #%d)", agent.key, work_item.id, run.id
        )
        if self.audit:
            await self.audit.record(
                AuditEvent.WORK_ITEM_CLAIMED,
                AuditStatus.SUCCESS,
                actor=agent.key,
                project_id=work_item.project_id,
                work_item_id=work_item.id,
                run_id=run.id,
            )
        await self._publish(events.WORK_ITEM_LEASED, work_item, agent_key=agent.key, run_id=run.id)
        return work_item, run

    async def _lease(self, agent: Agent, work_item_id: int | None) -> WorkItem | None:
        leased = await self.lease_with_run(agent, work_item_id)
        return leased[0] if leased else None

    async def release(self, work_item: WorkItem | int, reason: str) -> WorkItem:
        """Put an in-flight item back in the queue.

        The active Run is closed as a failure so the next lease can open a
        new one. Raises WorkItemStateError for completed or failed items.
        """
        work_item_id = _id_of(work_item)
        row, run_row = await self.db.release_work_item(work_item_id, reason)
        released = WorkItem.from_row(row)
        logger.info("Released work item #%d: %s", work_item_id, reason)
        if self.audit:
            await self.audit.record(
                AuditEvent.WORK_ITEM_RELEASED,
                AuditStatus.SUCCESS,
                payload={"reason": reason},
                project_id=released.project_id,
                work_item_id=work_item_id,
                run_id=run_row["id"] if run_row else None,
            )
        await self._publish(events.WORK_ITEM_RELEASED, released, reason=reason)
        return released

    async def retry(self, work_item: WorkItem | int, allow_completed: bool = False) -> WorkItem:
        """Manually return a failed item (or a completed one, if allowed) to pending."""
        work_item_id = _id_of(work_item)
        statuses = ("failed", "completed") if allow_completed else ("failed",)
        row = await self.db.reset_work_item(work_item_id, statuses)
        requeued = WorkItem.from_row(row)
        logger.info("Requeued work item #%d", work_item_id)
        if self.audit:
            await self.audit.record(
                AuditEvent.WORK_ITEM_REQUEUED,
                AuditStatus.SUCCESS,
                project_id=requeued.project_id,
                work_item_id=work_item_id,
            )
        await self._publish(events.WORK_ITEM_REQUEUED, requeued)
        return requeued

    async def sweep(self, older_than: timedelta | datetime) -> int:
        """Release in-progress items whose lease is older than the threshold.

        Recovers work held by executors that crashed or hung. Returns the
        number of items released.
        """
        cutoff = utc_now() - older_than if isinstance(older_than, timedelta) else older_than
        stale = await self.db.list_stale_work_items(cutoff)
        count = 0
        for row in stale:
            try:
                await self.release(row["id"], "stale lease swept")
            except (WorkItemStateError, NotFoundError):
                # Finished between the scan and the release.
                logger.debug("Skipped sweeping work item #%d", row["id"], exc_info=True)
                continue
            count += 1
        if count:
            logger.warning("Swept %d stale lease(s)", count)
        return count

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def get(self, work_item_id: int) -> WorkItem:
        row = await self.db.get_work_item(work_item_id)
        if row is None:
            raise NotFoundError(f"Work item not found: {work_item_id}")
        return WorkItem.from_row(row)

    async def get_active_work(self, agent_id: int | None = None) -> list[WorkItem]:
        rows = await self.db.list_work_items("in_progress", locked_by_agent_id=agent_id)
        return [WorkItem.from_row(r) for r in rows]

    async def list_items(self, status: str | None = None, limit: int = 100) -> list[WorkItem]:
        return [WorkItem.from_row(r) for r in await self.db.list_work_items(status, limit=limit)]

    async def find_by_issue(self, project_id: int, issue_number: int) -> WorkItem | None:
        row = await self.db.find_work_item_by_issue(project_id, issue_number)
        return WorkItem.from_row(row) if row else None

    async def update_payload(self, work_item_id: int, payload: dict[str, Any]) -> WorkItem:
        row = await self.db.update_work_item_payload(work_item_id, payload)
        if row is None:
            raise NotFoundError(f"Work item not found: {work_item_id}")
        return WorkItem.from_row(row)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    async def _publish(self, event_type: str, work_item: WorkItem, **extra: Any) -> None:
        if self.event_bus is None:
            return
        await self.event_bus.publish(
            event_type,
            {
                "work_item_id": work_item.id,
                "project_id": work_item.project_id,
                "status": work_item.status.value,
                **extra,
            },
        )


def _id_of(work_item: WorkItem | int) -> int:
    if isinstance(work_item, WorkItem):
        assert work_item.id is not None
        return work_item.id
    return work_item

from __future__ import annotations

import asyncio
import logging
import signal
from contextlib import nullcontext

from agentrelay.errors import SchemaViolation, WorkItemStateError
from agentrelay.models.agent import Agent
from agentrelay.models.run import Run, RunOutcome
from agentrelay.models.work_item import WorkItem
from agentrelay.services.agent_cache import AgentRegistry
from agentrelay.services.brain import Brain, parse_brain_response
from agentrelay.services.dispatcher import DispatchResult, ResponseDispatcher
from agentrelay.services.event_bus import WORK_AVAILABLE, EventBus
from agentrelay.services.run_tracker import RunTracker
from agentrelay.services.work_queue import WorkQueue

logger = logging.getLogger(__name__)


class Worker:
    """Executor loop for one agent: lease, ask the brain, act, repeat.

    Each item gets ``timeout`` seconds end to end. When it runs out the
    item is released back to the queue instead of being marked failed.
    """

    def __init__(
        self,
        agent_key: str,
        queue: WorkQueue,
        tracker: RunTracker,
        agents: AgentRegistry,
        brain: Brain,
        dispatcher: ResponseDispatcher,
        *,
        poll_interval: float = 5.0,
        timeout: float = 900.0,
        event_bus: EventBus | None = None,
    ):
        self.agent_key = agent_key
        self.queue = queue
        self.tracker = tracker
        self.agents = agents
        self.brain = brain
        self.dispatcher = dispatcher
        self.poll_interval = poll_interval
        self.timeout = timeout
        self.event_bus = event_bus

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def serve(self) -> None:
        """Run until SIGINT/SIGTERM."""
        stop_event = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, stop_event.set)
            except NotImplementedError:
                pass
        try:
            await self.run(stop_event)
        finally:
            for sig in (signal.SIGINT, signal.SIGTERM):
                try:
                    loop.remove_signal_handler(sig)
                except NotImplementedError:
                    pass

    async def run(self, stop_event: asyncio.Event) -> None:
        """Process items until ``stop_event`` is set.

        When idle, polls every ``poll_interval`` seconds, or sooner when the
        event bus reports that work became available in this process.
        """
        logger.info("Worker %s started", self.agent_key)
        wake = asyncio.Event()

        async def _on_work_available(event: dict) -> None:
            wake.set()

        subscription = (
            self.event_bus.listening(WORK_AVAILABLE, _on_work_available)
            if self.event_bus is not None
            else nullcontext()
        )
        with subscription:
            while not stop_event.is_set():
                wake.clear()
                if await self.run_once():
                    continue
                await self._idle(stop_event, wake)
        logger.info("Worker %s stopped", self.agent_key)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def run_once(self) -> bool:
        """Lease and process at most one item. Returns False when idle."""
        agent = await self.agents.get(self.agent_key)
        if agent is None or not agent.enabled:
            return False
        leased = await self.queue.lease_with_run(agent)
        if leased is None:
            return False
        work_item, run = leased
        await self.execute(work_item, run, agent)
        return True

    async def execute(
        self, work_item: WorkItem, run: Run, agent: Agent
    ) -> DispatchResult | None:
        try:
            return await asyncio.wait_for(
                self._process(work_item, run, agent), timeout=self.timeout
            )
        except asyncio.TimeoutError:
            logger.warning(
                "Work item #%d timed out after %.0fs; releasing", work_item.id, self.timeout
            )
            try:
                await self.queue.release(work_item, f"execution timed out after {self.timeout}s")
            except WorkItemStateError:
                logger.info("Work item #%d finished before it could be released", work_item.id)
            return None
        except Exception as exc:
            logger.exception("Work item #%d crashed", work_item.id)
            assert run.id is not None
            await self.tracker.complete(run.id, RunOutcome.FAILURE, log=f"unexpected error: {exc}")
            return None

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    async def _idle(self, stop_event: asyncio.Event, wake: asyncio.Event) -> None:
        waiters = [asyncio.create_task(stop_event.wait()), asyncio.create_task(wake.wait())]
        try:
            await asyncio.wait(
                waiters, timeout=self.poll_interval, return_when=asyncio.FIRST_COMPLETED
            )
        finally:
            for waiter in waiters:
                waiter.cancel()

    async def _process(self, work_item: WorkItem, run: Run, agent: Agent) -> DispatchResult:
        assert run.id is not None
        raw = await self.brain.propose(work_item, agent)
        try:
            response = parse_brain_response(raw)
        except SchemaViolation as exc:
            detail = f"schema violation: {exc}"
            await self.tracker.complete(run.id, RunOutcome.FAILURE, log=detail)
            return DispatchResult(RunOutcome.FAILURE, detail)
        await self.tracker.append_log(run.id, f"brain response: {response.type}")
        return await self.dispatcher.dispatch(work_item, agent, run, response)

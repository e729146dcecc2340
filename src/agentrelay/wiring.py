"""Builds the service graph shared by the CLI, the MCP server and workers."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from agentrelay.db.database import Database
from agentrelay.services.agent_cache import AgentRegistry
from agentrelay.services.audit import AuditLog
from agentrelay.services.brain import AnthropicBrain, Brain
from agentrelay.services.dispatcher import ResponseDispatcher
from agentrelay.services.event_bus import EventBus, RecentEvents
from agentrelay.services.hosting import GitHubClient, ReviewHost
from agentrelay.services.idempotency import IdempotencyGuard
from agentrelay.services.run_tracker import RunTracker
from agentrelay.services.secrets import EnvSecretResolver, SecretResolver
from agentrelay.services.work_queue import WorkQueue
from agentrelay.services.worker import Worker
from agentrelay.services.workspace_runner import WorkspaceRunner
from agentrelay.utils.config import Config
from agentrelay.webhooks.reconciler import Reconciler

logger = logging.getLogger(__name__)


@dataclass
class Services:
    config: Config
    db: Database
    event_bus: EventBus
    audit: AuditLog
    agents: AgentRegistry
    queue: WorkQueue
    tracker: RunTracker
    guard: IdempotencyGuard
    runner: WorkspaceRunner
    dispatcher: ResponseDispatcher
    reconciler: Reconciler
    host: ReviewHost
    secrets: SecretResolver
    brain: Brain
    recent_events: RecentEvents

    def worker(self, agent_key: str) -> Worker:
        return Worker(
            agent_key,
            self.queue,
            self.tracker,
            self.agents,
            self.brain,
            self.dispatcher,
            poll_interval=self.config.worker_poll_interval,
            timeout=self.config.execution_timeout_seconds,
            event_bus=self.event_bus,
        )

    async def close(self) -> None:
        aclose = getattr(self.host, "aclose", None)
        if aclose is not None:
            await aclose()
        await self.db.close()


async def build_services(
    config: Config,
    *,
    host: ReviewHost | None = None,
    secrets: SecretResolver | None = None,
    brain: Brain | None = None,
) -> Services:
    db = Database(config.db_path, busy_timeout_ms=config.busy_timeout_ms)
    await db.initialize()

    event_bus = EventBus()
    recent_events = RecentEvents(event_bus)
    audit = AuditLog(db)
    agents = AgentRegistry(db, ttl_seconds=config.agent_cache_ttl_seconds)
    queue = WorkQueue(db, event_bus, audit)
    tracker = RunTracker(db, event_bus, audit)
    guard = IdempotencyGuard(db)
    host = host or GitHubClient(config.hosting_api_url)
    secrets = secrets or EnvSecretResolver()
    runner = WorkspaceRunner(
        db,
        queue,
        tracker,
        guard,
        secrets,
        host,
        workspace_root=config.workspace_root,
        git_host_url=config.git_host_url,
        author_name=config.commit_author_name,
        author_email=config.commit_author_email,
    )
    dispatcher = ResponseDispatcher(db, queue, tracker, agents, runner, host, secrets)
    reconciler = Reconciler(db, queue, tracker, agents)

    logger.debug("Services ready (db=%s)", config.db_path)
    return Services(
        config=config,
        db=db,
        event_bus=event_bus,
        audit=audit,
        agents=agents,
        queue=queue,
        tracker=tracker,
        guard=guard,
        runner=runner,
        dispatcher=dispatcher,
        reconciler=reconciler,
        host=host,
        secrets=secrets,
        brain=brain or AnthropicBrain(config),
        recent_events=recent_events,
    )

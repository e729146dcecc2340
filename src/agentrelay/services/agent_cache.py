from __future__ import annotations

import logging
import time
from typing import Any, Callable

from agentrelay.db.database import Database
from agentrelay.errors import NotFoundError
from agentrelay.models.agent import Agent

logger = logging.getLogger(__name__)


class AgentRegistry:
    """Read-through cache of executor records.

    Entries expire after ``ttl_seconds``. Every write made through the
    registry invalidates the affected key, so callers that go through it
    never read a stale ``enabled`` or ``max_concurrency``.
    """

    def __init__(
        self,
        db: Database,
        ttl_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.db = db
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._by_key: dict[str, tuple[float, Agent]] = {}

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get(self, key: str) -> Agent | None:
        cached = self._by_key.get(key)
        if cached is not None:
            expires_at, agent = cached
            if self._clock() < expires_at:
                return agent
            del self._by_key[key]

        row = await self.db.get_agent_by_key(key)
        if row is None:
            return None
        agent = Agent.from_row(row)
        self._by_key[key] = (self._clock() + self.ttl_seconds, agent)
        return agent

    async def require(self, key: str) -> Agent:
        agent = await self.get(key)
        if agent is None:
            raise NotFoundError(f"Unknown agent: {key}")
        return agent

    async def get_by_id(self, agent_id: int) -> Agent | None:
        for _, agent in self._by_key.values():
            if agent.id == agent_id:
                return await self.get(agent.key)
        row = await self.db.get_agent(agent_id)
        if row is None:
            return None
        return await self.get(row["key"])

    async def list_agents(self, enabled_only: bool = False) -> list[Agent]:
        return [Agent.from_row(r) for r in await self.db.list_agents(enabled_only)]

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def register(self, key: str, name: str | None = None, **fields: Any) -> Agent:
        row = await self.db.create_agent(key, name, **fields)
        self.invalidate(key)
        logger.info("Registered agent %s (max_concurrency=%d)", key, row["max_concurrency"])
        return Agent.from_row(row)

    async def update(self, key: str, **fields: Any) -> Agent:
        row = await self.db.update_agent(key, **fields)
        self.invalidate(key)
        if row is None:
            raise NotFoundError(f"Unknown agent: {key}")
        return Agent.from_row(row)

    async def disable(self, key: str) -> Agent:
        return await self.update(key, enabled=False)

    async def enable(self, key: str) -> Agent:
        return await self.update(key, enabled=True)

    async def delete(self, key: str) -> bool:
        deleted = await self.db.delete_agent(key)
        self.invalidate(key)
        return deleted

    def invalidate(self, key: str | None = None) -> None:
        """Drop one cached agent, or all of them when ``key`` is None."""
        if key is None:
            self._by_key.clear()
        else:
            self._by_key.pop(key, None)

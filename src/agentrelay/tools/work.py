from __future__ import annotations

from typing import Any

from mcp.server.fastmcp import FastMCP

from agentrelay.errors import AgentRelayError, SchemaViolation
from agentrelay.models.run import RunOutcome
from agentrelay.services.brain import parse_brain_response
from agentrelay.wiring import Services


def register(mcp: FastMCP, services: Services, default_agent_key: str | None) -> None:
    """Register work-queue MCP tools."""

    async def _agent(agent_key: str | None):
        key = agent_key or default_agent_key
        if not key:
            raise AgentRelayError("agent_key is required (or set AGENTRELAY_AGENT_KEY)")
        return await services.agents.require(key)

    @mcp.tool()
    async def lease_work(agent_key: str | None = None) -> dict[str, Any]:
        """Lease the next work item for this agent.

        Returns the work item and its run, or ``{"work_item": null}`` when the
        queue is empty or the agent is at its concurrency limit. Work on the
        item, then call ``submit_response`` (or ``release_work`` to give it
        back).
        """
        agent = await _agent(agent_key)
        leased = await services.queue.lease_with_run(agent)
        if leased is None:
            return {"work_item": None}
        work_item, run = leased
        return {
            "work_item": work_item.model_dump(mode="json"),
            "run": run.model_dump(mode="json"),
        }

    @mcp.tool()
    async def release_work(work_item_id: int, reason: str = "released by agent") -> dict[str, Any]:
        """Give a leased work item back to the queue without failing it."""
        released = await services.queue.release(work_item_id, reason)
        return {"work_item": released.model_dump(mode="json")}

    @mcp.tool()
    async def submit_response(
        work_item_id: int, response: dict[str, Any], agent_key: str | None = None
    ) -> dict[str, Any]:
        """Submit a structured response for a leased work item.

        ``response`` must have a ``type`` of ``work_items``, ``file_writes``,
        ``github_operations`` or ``error``. Invalid responses fail the run.
        """
        agent = await _agent(agent_key)
        work_item = await services.queue.get(work_item_id)
        run = await services.tracker.active_run_for(work_item_id)
        if run is None or run.id is None or work_item.locked_by_agent_id != agent.id:
            return {"ok": False, "error": "work item is not leased by this agent"}
        try:
            parsed = parse_brain_response(response)
        except SchemaViolation as exc:
            await services.tracker.complete(
                run.id, RunOutcome.FAILURE, log=f"schema violation: {exc}"
            )
            return {"ok": False, "error": str(exc)}
        result = await services.dispatcher.dispatch(work_item, agent, run, parsed)
        return {
            "ok": result.outcome is RunOutcome.SUCCESS,
            "outcome": result.outcome.value,
            "detail": result.detail,
            "created_work_item_ids": result.created_work_item_ids,
        }

    @mcp.tool()
    async def get_active_work(agent_key: str | None = None) -> list[dict[str, Any]]:
        """List in-progress work items, optionally only those held by one agent."""
        agent_id = None
        if agent_key:
            agent_id = (await services.agents.require(agent_key)).id
        items = await services.queue.get_active_work(agent_id)
        return [item.model_dump(mode="json") for item in items]

    @mcp.tool()
    async def get_runs(work_item_id: int) -> list[dict[str, Any]]:
        """List every run (attempt) recorded for a work item, oldest first."""
        runs = await services.tracker.list_for_work_item(work_item_id)
        return [run.model_dump(mode="json") for run in runs]

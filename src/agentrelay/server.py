from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import timedelta
from typing import AsyncIterator

from mcp.server.fastmcp import FastMCP

from agentrelay.tools import work as work_tools
from agentrelay.utils.config import get_config
from agentrelay.utils.logger import setup_logging
from agentrelay.wiring import Services, build_services

logger = logging.getLogger(__name__)


async def _sweep_loop(services: Services, interval_seconds: float) -> None:
    """Return leases held by crashed executors to the queue."""
    threshold = timedelta(seconds=services.config.stale_lease_seconds)
    while True:
        await asyncio.sleep(interval_seconds)
        swept = await services.queue.sweep(threshold)
        if swept:
            logger.info("Released %d stale lease(s)", swept)


def format_stats(services: Services, pending: int, active: int, enabled_agents: int) -> str:
    recent = services.recent_events
    lines = [
        "agentrelay status:",
        f"- Pending Work Items: {pending}",
        f"- Active Work Items: {active}",
        f"- Enabled Agents: {enabled_agents}",
        "Recent activity:",
    ]
    latest = recent.latest(10)
    lines.extend(f"- {recent.describe(event)}" for event in latest)
    if not latest:
        lines.append("- (none since startup)")
    return "\n".join(lines) + "\n"


@asynccontextmanager
async def lifespan(server: FastMCP) -> AsyncIterator[None]:
    """Startup / shutdown lifecycle for agentrelay."""
    config = get_config()

    services = await build_services(config)
    sweep_task = asyncio.create_task(
        _sweep_loop(services, max(30.0, config.stale_lease_seconds / 4))
    )

    # --- Register MCP tools ---
    work_tools.register(server, services, config.agent_key)

    # --- Register MCP resource ---
    @server.resource("agentrelay://stats")
    async def get_stats() -> str:
        pending = len(await services.queue.list_items("pending"))
        active = len(await services.queue.get_active_work())
        agents = await services.agents.list_agents(enabled_only=True)
        return format_stats(services, pending, active, len(agents))

    logger.info("agentrelay MCP server ready")

    try:
        yield
    finally:
        sweep_task.cancel()
        try:
            await sweep_task
        except asyncio.CancelledError:
            pass
        await services.close()
        logger.info("agentrelay MCP server stopped")


def create_server() -> FastMCP:
    """Build and return the configured FastMCP server."""
    config = get_config()
    setup_logging(config.log_level)
    return FastMCP("agentrelay", lifespan=lifespan)


# Module-level instance used by the CLI and ``python -m``
mcp = create_server()

if __name__ == "__main__":
    mcp.run()

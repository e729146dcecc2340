from __future__ import annotations

import asyncio
import dataclasses
import json
from datetime import timedelta
from pathlib import Path
from typing import Any, Awaitable, Callable, TypeVar

import click

from agentrelay import __version__
from agentrelay.errors import AgentRelayError
from agentrelay.utils.config import Config, get_config
from agentrelay.utils.logger import setup_logging

T = TypeVar("T")

db_path_option = click.option(
    "--db-path",
    default=None,
    type=click.Path(dir_okay=False, path_type=Path),
    help="SQLite database file (defaults to AGENTRELAY_DB_PATH).",
)


def _config(db_path: Path | None) -> Config:
    config = get_config()
    if db_path is not None:
        config = dataclasses.replace(config, db_path=db_path)
    return config


def _run(db_path: Path | None, action: Callable[[Any], Awaitable[T]]) -> T:
    """Build services, run ``action(services)``, and always close them."""
    from agentrelay.wiring import build_services

    async def _go() -> T:
        services = await build_services(_config(db_path))
        try:
            return await action(services)
        finally:
            await services.close()

    try:
        return asyncio.run(_go())
    except AgentRelayError as exc:
        raise click.ClickException(str(exc)) from exc


@click.group()
@click.version_option(version=__version__, prog_name="agentrelay")
def main() -> None:
    """agentrelay: priority work queue, run tracking and webhook reconciliation for agents."""
    setup_logging(get_config().log_level)


@main.command()
@db_path_option
def init(db_path: Path | None) -> None:
    """Initialize the agentrelay database."""
    from agentrelay.db.database import Database

    config = _config(db_path)

    async def _init() -> None:
        db = Database(config.db_path)
        await db.initialize()
        await db.close()
        click.echo(f"Database initialized at {config.db_path}")

    asyncio.run(_init())


@main.command()
def start() -> None:
    """Start the MCP server executors use to lease work."""
    from agentrelay.server import mcp

    click.echo("Starting agentrelay MCP server...", err=True)
    mcp.run()


@main.command("serve-webhooks")
@db_path_option
@click.option("--host", default=None, help="Bind address (defaults to AGENTRELAY_WEBHOOK_HOST).")
@click.option("--port", default=None, type=int, help="Port (defaults to AGENTRELAY_WEBHOOK_PORT).")
def serve_webhooks(db_path: Path | None, host: str | None, port: int | None) -> None:
    """Serve the webhook endpoint until interrupted."""
    import signal

    from agentrelay.webhooks.app import WebhookApp
    from agentrelay.webhooks.rate_limit import FixedWindowRateLimiter

    async def _serve(services: Any) -> None:
        config = services.config
        stop_event = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, stop_event.set)
            except NotImplementedError:
                pass
        app = WebhookApp(
            services.db,
            services.reconciler,
            services.audit,
            path=config.webhook_path,
            limiter=FixedWindowRateLimiter(
                config.webhook_rate_limit, config.webhook_rate_window_seconds
            ),
        )
        await app.serve(host or config.webhook_host, port or config.webhook_port, stop_event)

    _run(db_path, _serve)


@main.command()
@db_path_option
@click.argument("agent_key")
@click.option("--once", is_flag=True, help="Process at most one work item and exit.")
def worker(db_path: Path | None, agent_key: str, once: bool) -> None:
    """Run the executor loop for AGENT_KEY."""

    async def _work(services: Any) -> None:
        await services.agents.require(agent_key)
        runner = services.worker(agent_key)
        if once:
            processed = await runner.run_once()
            click.echo("processed 1 work item" if processed else "nothing to do")
        else:
            await runner.serve()

    _run(db_path, _work)


@main.command()
@db_path_option
@click.argument("project_slug")
@click.argument("work_type")
@click.option("--priority", default=5, show_default=True, type=int)
@click.option("--payload", default="{}", help="JSON object stored on the work item.")
@click.option("--agent", "agent_key", default=None, help="Assign to this agent.")
def enqueue(
    db_path: Path | None,
    project_slug: str,
    work_type: str,
    priority: int,
    payload: str,
    agent_key: str | None,
) -> None:
    """Add a work item to the queue."""
    try:
        data = json.loads(payload)
    except ValueError as exc:
        raise click.BadParameter(f"not valid JSON: {exc}", param_hint="--payload") from exc

    async def _enqueue(services: Any) -> None:
        project = await services.db.get_project_by_slug(project_slug)
        if project is None:
            raise click.ClickException(f"Unknown project: {project_slug}")
        agent = await services.agents.require(agent_key) if agent_key else None
        item = await services.queue.enqueue(
            project["id"],
            work_type,
            priority=priority,
            payload=data,
            assigned_agent_id=agent.id if agent else None,
        )
        click.echo(f"Enqueued work item #{item.id}")

    _run(db_path, _enqueue)


@main.command("add-agent")
@db_path_option
@click.argument("key")
@click.option("--name", default=None)
@click.option("--description", default=None)
@click.option("--max-concurrency", default=1, show_default=True, type=click.IntRange(min=1))
@click.option("--disabled", is_flag=True, help="Register the agent disabled.")
def add_agent(
    db_path: Path | None,
    key: str,
    name: str | None,
    description: str | None,
    max_concurrency: int,
    disabled: bool,
) -> None:
    """Register (or update) an executor."""

    async def _add(services: Any) -> None:
        agent = await services.agents.register(
            key,
            name,
            description=description,
            max_concurrency=max_concurrency,
            enabled=not disabled,
        )
        click.echo(f"Agent {agent.key} (#{agent.id}) registered")

    _run(db_path, _add)


@main.command("add-project")
@db_path_option
@click.argument("slug")
@click.option("--repo", "repo_full_name", required=True, help="owner/name on the hosting service.")
@click.option("--default-branch", default="main", show_default=True)
@click.option("--token-secret", default=None, help="Name of the secret holding the API token.")
@click.option("--webhook-secret", default=None, help="Shared secret for webhook signatures.")
def add_project(
    db_path: Path | None,
    slug: str,
    repo_full_name: str,
    default_branch: str,
    token_secret: str | None,
    webhook_secret: str | None,
) -> None:
    """Register a project."""

    async def _add(services: Any) -> None:
        row = await services.db.create_project(
            slug,
            name=slug,
            repo_full_name=repo_full_name,
            repo_default_branch=default_branch,
            token_secret_name=token_secret,
            webhook_secret=webhook_secret,
        )
        click.echo(f"Project {slug} (#{row['id']}) registered")

    _run(db_path, _add)


@main.command()
@db_path_option
@click.argument("work_item_id", type=int)
@click.option("--allow-completed", is_flag=True, help="Also reopen completed items.")
def retry(db_path: Path | None, work_item_id: int, allow_completed: bool) -> None:
    """Return a failed work item to the queue."""

    async def _retry(services: Any) -> None:
        item = await services.queue.retry(work_item_id, allow_completed=allow_completed)
        click.echo(f"Work item #{item.id} is {item.status.value}")

    _run(db_path, _retry)


@main.command()
@db_path_option
@click.argument("work_item_id", type=int)
@click.option("--reason", default="released by operator", show_default=True)
def release(db_path: Path | None, work_item_id: int, reason: str) -> None:
    """Release a leased work item back to the queue."""

    async def _release(services: Any) -> None:
        item = await services.queue.release(work_item_id, reason)
        click.echo(f"Work item #{item.id} is {item.status.value}")

    _run(db_path, _release)


@main.command()
@db_path_option
@click.option(
    "--older-than",
    default=None,
    type=int,
    help="Lease age in seconds (defaults to AGENTRELAY_STALE_LEASE_SECONDS).",
)
def sweep(db_path: Path | None, older_than: int | None) -> None:
    """Release leases older than the stale threshold."""

    async def _sweep(services: Any) -> None:
        seconds = older_than if older_than is not None else services.config.stale_lease_seconds
        count = await services.queue.sweep(timedelta(seconds=seconds))
        click.echo(f"Released {count} stale lease(s)")

    _run(db_path, _sweep)


@main.command()
@db_path_option
@click.option(
    "--status",
    "status_filter",
    type=click.Choice(["pending", "in_progress", "completed", "failed"]),
    default=None,
)
@click.option("--limit", default=20, show_default=True, type=int)
def status(db_path: Path | None, status_filter: str | None, limit: int) -> None:
    """Show work items in queue order."""

    async def _status(services: Any) -> None:
        items = await services.queue.list_items(status_filter, limit=limit)
        if not items:
            click.echo("No work items")
            return
        for item in items:
            lock = f" locked by agent #{item.locked_by_agent_id}" if item.is_locked else ""
            click.echo(
                f"#{item.id:<5} p{item.priority:<3} {item.status.value:<12} {item.work_type}{lock}"
            )

    _run(db_path, _status)


@main.command()
def version() -> None:
    """Print the version and exit."""
    click.echo(f"agentrelay {__version__}")


if __name__ == "__main__":
    main()

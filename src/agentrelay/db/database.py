from __future__ import annotations

import asyncio
import json
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from importlib import resources
from pathlib import Path
from typing import Any, AsyncIterator

import aiosqlite

from agentrelay.errors import NotFoundError, WorkItemStateError
from agentrelay.models.run import REFERENCE_FIELDS
from agentrelay.utils.clock import to_db_timestamp, utc_now

logger = logging.getLogger(__name__)

_DEFAULT_DB_PATH = Path("data/agentrelay.db")
_TERMINAL_STATUSES = ("completed", "failed")

Row = aiosqlite.Row


def _now() -> str:
    return to_db_timestamp(utc_now())


class Database:
    """Async SQLite persistence for agentrelay.

    Holds a single persistent connection in autocommit mode with WAL enabled.
    Multi-statement writes go through :meth:`transaction`, which serialises
    coroutines on an asyncio lock and processes on SQLite's write lock
    (``BEGIN IMMEDIATE``).
    """

    def __init__(self, db_path: str | Path | None = None, busy_timeout_ms: int = 5000):
        self.db_path = Path(db_path) if db_path else _DEFAULT_DB_PATH
        self.busy_timeout_ms = busy_timeout_ms
        self._conn: aiosqlite.Connection | None = None
        self._mu = asyncio.Lock()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def initialize(self) -> None:
        """Create the database file, apply the schema, and open the persistent connection."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        schema_sql = (
            resources.files("agentrelay.db").joinpath("schema.sql").read_text()
        )

        self._conn = await aiosqlite.connect(self.db_path, isolation_level=None)
        self._conn.row_factory = aiosqlite.Row
        await self._conn.execute("PRAGMA journal_mode=WAL")
        await self._conn.execute("PRAGMA foreign_keys=ON")
        await self._conn.execute(f"PRAGMA busy_timeout={int(self.busy_timeout_ms)}")
        await self._conn.executescript(schema_sql)

        logger.info("Database initialized at %s", self.db_path)

    async def close(self) -> None:
        if self._conn:
            await self._conn.close()
            self._conn = None

    @property
    def conn(self) -> aiosqlite.Connection:
        assert self._conn is not None, "Database not initialized; call initialize() first"
        return self._conn

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[aiosqlite.Connection]:
        """Run a block of statements atomically."""
        async with self._mu:
            await self.conn.execute("BEGIN IMMEDIATE")
            try:
                yield self.conn
            except BaseException:
                await self.conn.execute("ROLLBACK")
                raise
            else:
                await self.conn.execute("COMMIT")

    async def _fetchone(self, sql: str, params: tuple[Any, ...] = ()) -> Row | None:
        async with self._mu:
            cursor = await self.conn.execute(sql, params)
            return await cursor.fetchone()

    async def _fetchall(self, sql: str, params: tuple[Any, ...] = ()) -> list[Row]:
        async with self._mu:
            cursor = await self.conn.execute(sql, params)
            return list(await cursor.fetchall())

    # ------------------------------------------------------------------
    # Agent operations
    # ------------------------------------------------------------------

    async def create_agent(
        self,
        key: str,
        name: str | None = None,
        *,
        max_concurrency: int = 1,
        enabled: bool = True,
        description: str | None = None,
    ) -> Row:
        now = _now()
        async with self.transaction() as conn:
            return await _one(
                conn,
                """
                INSERT INTO agents (key, name, description, enabled, max_concurrency,
                                    created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(key) DO UPDATE SET
                    name = excluded.name,
                    description = excluded.description,
                    enabled = excluded.enabled,
                    max_concurrency = excluded.max_concurrency,
                    updated_at = excluded.updated_at
                RETURNING *
                """,
                (key, name or key, description, int(enabled), max_concurrency, now, now),
            )

    async def get_agent(self, agent_id: int) -> Row | None:
        return await self._fetchone("SELECT * FROM agents WHERE id = ?", (agent_id,))

    async def get_agent_by_key(self, key: str) -> Row | None:
        return await self._fetchone("SELECT * FROM agents WHERE key = ?", (key,))

    async def list_agents(self, enabled_only: bool = False) -> list[Row]:
        if enabled_only:
            return await self._fetchall("SELECT * FROM agents WHERE enabled = 1 ORDER BY key")
        return await self._fetchall("SELECT * FROM agents ORDER BY key")

    async def update_agent(self, key: str, **fields: Any) -> Row | None:
        allowed = {"name", "description", "enabled", "max_concurrency"}
        unknown = set(fields) - allowed
        if unknown:
            raise ValueError(f"Unknown agent fields: {sorted(unknown)}")
        if not fields:
            return await self.get_agent_by_key(key)
        assignments = ", ".join(f"{name} = ?" for name in fields)
        values = [int(v) if isinstance(v, bool) else v for v in fields.values()]
        async with self.transaction() as conn:
            return await _one(
                conn,
                f"UPDATE agents SET {assignments}, updated_at = ? WHERE key = ? RETURNING *",
                (*values, _now(), key),
            )

    async def delete_agent(self, key: str) -> bool:
        async with self.transaction() as conn:
            cursor = await conn.execute("DELETE FROM agents WHERE key = ?", (key,))
            return cursor.rowcount > 0

    # ------------------------------------------------------------------
    # Project operations
    # ------------------------------------------------------------------

    async def create_project(
        self,
        slug: str,
        *,
        name: str | None = None,
        repo_full_name: str | None = None,
        repo_default_branch: str = "main",
        token_secret_name: str | None = None,
        webhook_secret: str | None = None,
    ) -> Row:
        async with self.transaction() as conn:
            return await _one(
                conn,
                """
                INSERT INTO projects (slug, name, repo_full_name, repo_default_branch,
                                      token_secret_name, webhook_secret, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                RETURNING *
                """,
                (
                    slug,
                    name,
                    repo_full_name,
                    repo_default_branch,
                    token_secret_name,
                    webhook_secret,
                    _now(),
                ),
            )

    async def get_project(self, project_id: int) -> Row | None:
        return await self._fetchone("SELECT * FROM projects WHERE id = ?", (project_id,))

    async def get_project_by_slug(self, slug: str) -> Row | None:
        return await self._fetchone("SELECT * FROM projects WHERE slug = ?", (slug,))

    async def list_projects_with_webhook_secret(self) -> list[Row]:
        return await self._fetchall(
            "SELECT * FROM projects WHERE webhook_secret IS NOT NULL ORDER BY id"
        )

    # ------------------------------------------------------------------
    # Work item operations
    # ------------------------------------------------------------------

    async def create_work_item(
        self,
        project_id: int,
        work_type: str,
        *,
        priority: int = 0,
        payload: dict[str, Any] | None = None,
        assigned_agent_id: int | None = None,
    ) -> Row:
        now = _now()
        async with self.transaction() as conn:
            return await _one(
                conn,
                """
                INSERT INTO work_items (project_id, work_type, priority, status, payload,
                                        assigned_agent_id, created_at, updated_at)
                VALUES (?, ?, ?, 'pending', ?, ?, ?, ?)
                RETURNING *
                """,
                (
                    project_id,
                    work_type,
                    priority,
                    json.dumps(payload or {}, sort_keys=True),
                    assigned_agent_id,
                    now,
                    now,
                ),
            )

    async def get_work_item(self, work_item_id: int) -> Row | None:
        return await self._fetchone("SELECT * FROM work_items WHERE id = ?", (work_item_id,))

    async def list_work_items(
        self,
        status: str | None = None,
        locked_by_agent_id: int | None = None,
        limit: int = 100,
    ) -> list[Row]:
        clauses: list[str] = []
        params: list[Any] = []
        if status:
            clauses.append("status = ?")
            params.append(status)
        if locked_by_agent_id is not None:
            clauses.append("locked_by_agent_id = ?")
            params.append(locked_by_agent_id)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        return await self._fetchall(
            f"""
            SELECT * FROM work_items {where}
            ORDER BY priority DESC, created_at ASC, id ASC
            LIMIT ?
            """,
            (*params, limit),
        )

    async def find_work_item_by_issue(
        self, project_id: int, issue_number: int, work_type: str = "issue"
    ) -> Row | None:
        return await self._fetchone(
            """
            SELECT * FROM work_items
            WHERE project_id = ? AND work_type = ?
              AND json_extract(payload, '$.issue_number') = ?
            ORDER BY id DESC LIMIT 1
            """,
            (project_id, work_type, issue_number),
        )

    async def update_work_item_payload(
        self, work_item_id: int, payload: dict[str, Any]
    ) -> Row | None:
        async with self.transaction() as conn:
            return await _one(
                conn,
                "UPDATE work_items SET payload = ?, updated_at = ? WHERE id = ? RETURNING *",
                (json.dumps(payload, sort_keys=True), _now(), work_item_id),
            )

    async def claim_work_item(
        self, agent_id: int, work_item_id: int | None = None
    ) -> tuple[Row, Row] | None:
        """Atomically lease the best pending item (or one given item) to an agent.

        Returns ``(work_item, run)`` or None when nothing is claimable or the
        agent is disabled or at its concurrency cap.
        """
        now = _now()
        target = "AND id = ?" if work_item_id is not None else ""
        target_params: tuple[Any, ...] = (work_item_id,) if work_item_id is not None else ()

        async with self.transaction() as conn:
            agent = await _one(
                conn,
                """
                SELECT a.enabled, a.max_concurrency,
                       (SELECT COUNT(*) FROM work_items w
                        WHERE w.locked_by_agent_id = a.id AND w.status = 'in_progress')
                       AS held
                FROM agents a WHERE a.id = ?
                """,
                (agent_id,),
            )
            if agent is None:
                raise NotFoundError(f"Agent not found: {agent_id}")
            if not agent["enabled"] or agent["held"] >= agent["max_concurrency"]:
                return None

            work_item = await _one(
                conn,
                f"""
                UPDATE work_items
                SET status = 'in_progress',
                    locked_by_agent_id = ?,
                    locked_at = ?,
                    assigned_agent_id = COALESCE(assigned_agent_id, ?),
                    updated_at = ?
                WHERE id = (
                    SELECT id FROM work_items
                    WHERE status = 'pending' AND locked_at IS NULL {target}
                    ORDER BY priority DESC, created_at ASC, id ASC
                    LIMIT 1
                )
                  AND status = 'pending' AND locked_at IS NULL
                RETURNING *
                """,
                (agent_id, now, agent_id, now, *target_params),
            )
            if work_item is None:
                return None

            run = await _one(
                conn,
                """
                INSERT INTO runs (agent_id, work_item_id, started_at)
                VALUES (?, ?, ?)
                RETURNING *
                """,
                (agent_id, work_item["id"], now),
            )
            return work_item, run

    async def release_work_item(self, work_item_id: int, reason: str) -> tuple[Row, Row | None]:
        """Return an in-flight item to the queue and close its active run.

        Raises WorkItemStateError for completed/failed items.
        """
        now = _now()
        async with self.transaction() as conn:
            current = await _one(
                conn, "SELECT status FROM work_items WHERE id = ?", (work_item_id,)
            )
            if current is None:
                raise NotFoundError(f"Work item not found: {work_item_id}")
            if current["status"] in _TERMINAL_STATUSES:
                raise WorkItemStateError(
                    f"Work item {work_item_id} is {current['status']} and cannot be released"
                )

            run = await _one(
                conn,
                """
                UPDATE runs
                SET outcome = 'failure', finished_at = ?, logs = logs || ?
                WHERE work_item_id = ? AND outcome IS NULL
                RETURNING *
                """,
                (now, _log_line(f"lease released: {reason}"), work_item_id),
            )
            work_item = await _one(
                conn,
                """
                UPDATE work_items
                SET status = 'pending', locked_by_agent_id = NULL, locked_at = NULL,
                    updated_at = ?
                WHERE id = ?
                RETURNING *
                """,
                (now, work_item_id),
            )
            assert work_item is not None
            return work_item, run

    async def reset_work_item(self, work_item_id: int, from_statuses: tuple[str, ...]) -> Row:
        """Move a terminal item back to pending (manual retry)."""
        async with self.transaction() as conn:
            current = await _one(
                conn, "SELECT status FROM work_items WHERE id = ?", (work_item_id,)
            )
            if current is None:
                raise NotFoundError(f"Work item not found: {work_item_id}")
            if current["status"] not in from_statuses:
                raise WorkItemStateError(
                    f"Work item {work_item_id} is {current['status']}; "
                    f"only {', '.join(from_statuses)} items can be retried"
                )
            row = await _one(
                conn,
                """
                UPDATE work_items
                SET status = 'pending', locked_by_agent_id = NULL, locked_at = NULL,
                    updated_at = ?
                WHERE id = ?
                RETURNING *
                """,
                (_now(), work_item_id),
            )
            assert row is not None
            return row

    async def list_stale_work_items(self, locked_before: datetime) -> list[Row]:
        return await self._fetchall(
            """
            SELECT * FROM work_items
            WHERE status = 'in_progress' AND locked_at < ?
            ORDER BY locked_at ASC
            """,
            (to_db_timestamp(locked_before),),
        )

    # ------------------------------------------------------------------
    # Run operations
    # ------------------------------------------------------------------

    async def get_run(self, run_id: int) -> Row | None:
        return await self._fetchone("SELECT * FROM runs WHERE id = ?", (run_id,))

    async def get_active_run(self, work_item_id: int) -> Row | None:
        return await self._fetchone(
            "SELECT * FROM runs WHERE work_item_id = ? AND outcome IS NULL",
            (work_item_id,),
        )

    async def list_runs(self, work_item_id: int) -> list[Row]:
        return await self._fetchall(
            "SELECT * FROM runs WHERE work_item_id = ? ORDER BY started_at ASC, id ASC",
            (work_item_id,),
        )

    async def find_run(self, column: str, value: Any) -> Row | None:
        """Most recent run whose reference column matches ``value``."""
        if column not in REFERENCE_FIELDS or column == "costs":
            raise ValueError(f"Not a searchable run column: {column}")
        return await self._fetchone(
            f"SELECT * FROM runs WHERE {column} = ? ORDER BY id DESC LIMIT 1",
            (value,),
        )

    async def run_exists(self, idempotency_key: str, outcome: str) -> bool:
        row = await self._fetchone(
            "SELECT 1 FROM runs WHERE idempotency_key = ? AND outcome = ?",
            (idempotency_key, outcome),
        )
        return row is not None

    async def update_run_references(self, run_id: int, fields: dict[str, Any]) -> Row | None:
        assignments, values = _reference_assignments(fields)
        if not assignments:
            return await self.get_run(run_id)
        async with self.transaction() as conn:
            return await _one(
                conn,
                f"UPDATE runs SET {', '.join(assignments)} WHERE id = ? RETURNING *",
                (*values, run_id),
            )

    async def append_run_log(self, run_id: int, text: str) -> None:
        async with self.transaction() as conn:
            await conn.execute(
                "UPDATE runs SET logs = logs || ? WHERE id = ?", (_log_line(text), run_id)
            )

    async def complete_run(
        self,
        run_id: int,
        outcome: str,
        fields: dict[str, Any] | None = None,
        log: str | None = None,
    ) -> tuple[Row, Row | None] | None:
        """Finish an active run and settle its work item in one transaction.

        Returns ``(run, work_item)``, or None when the run had already finished.
        """
        async with self.transaction() as conn:
            return await _complete_run(conn, run_id, outcome, fields or {}, log)

    async def finalize_work_item(
        self, work_item_id: int, outcome: str, log: str | None = None
    ) -> tuple[Row | None, Row | None]:
        """Settle a work item, completing its active run when it has one.

        Returns ``(run, work_item)``; both None when the item was already terminal.
        """
        async with self.transaction() as conn:
            active = await _one(
                conn,
                "SELECT id FROM runs WHERE work_item_id = ? AND outcome IS NULL",
                (work_item_id,),
            )
            if active is not None:
                result = await _complete_run(conn, active["id"], outcome, {}, log)
                if result is not None:
                    return result
            work_item = await _settle_work_item(conn, work_item_id, outcome)
            return None, work_item

    async def claim_idempotency_key(self, run_id: int, key: str) -> tuple[str, Row | None]:
        """Attach ``key`` to an active run.

        Returns one of ``claimed``, ``resumed``, ``succeeded``, ``in_flight``
        or ``inactive`` with the relevant run row.
        """
        async with self.transaction() as conn:
            own = await _one(conn, "SELECT * FROM runs WHERE id = ?", (run_id,))
            if own is None:
                raise NotFoundError(f"Run not found: {run_id}")
            if own["outcome"] is not None:
                return "inactive", own

            holder = await _one(conn, "SELECT * FROM runs WHERE idempotency_key = ?", (key,))
            if holder is not None and holder["id"] != run_id:
                if holder["outcome"] == "success":
                    return "succeeded", holder
                if holder["outcome"] is None:
                    return "in_flight", holder
                # A failed attempt holds the key: hand it over and inherit its branch.
                await conn.execute(
                    "UPDATE runs SET idempotency_key = NULL WHERE id = ?", (holder["id"],)
                )
                run = await _one(
                    conn,
                    """
                    UPDATE runs
                    SET idempotency_key = ?,
                        branch_name = COALESCE(branch_name, ?),
                        pr_number = COALESCE(pr_number, ?),
                        pr_url = COALESCE(pr_url, ?)
                    WHERE id = ?
                    RETURNING *
                    """,
                    (key, holder["branch_name"], holder["pr_number"], holder["pr_url"], run_id),
                )
                return "resumed", run

            run = await _one(
                conn,
                "UPDATE runs SET idempotency_key = ? WHERE id = ? RETURNING *",
                (key, run_id),
            )
            return "claimed", run

    # ------------------------------------------------------------------
    # Webhook events
    # ------------------------------------------------------------------

    async def insert_webhook_event(
        self,
        delivery_id: str,
        event_type: str,
        payload: dict[str, Any],
        project_id: int | None = None,
    ) -> bool:
        """Store a delivery. Returns False when the delivery id was already seen."""
        async with self.transaction() as conn:
            cursor = await conn.execute(
                """
                INSERT INTO webhook_events (project_id, event_type, delivery_id, payload,
                                            received_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(delivery_id) DO NOTHING
                """,
                (project_id, event_type, delivery_id, json.dumps(payload), _now()),
            )
            return cursor.rowcount == 1

    async def delete_webhook_event(self, delivery_id: str) -> None:
        async with self.transaction() as conn:
            await conn.execute("DELETE FROM webhook_events WHERE delivery_id = ?", (delivery_id,))

    async def get_webhook_event(self, delivery_id: str) -> Row | None:
        return await self._fetchone(
            "SELECT * FROM webhook_events WHERE delivery_id = ?", (delivery_id,)
        )

    async def count_webhook_events(self) -> int:
        row = await self._fetchone("SELECT COUNT(*) AS n FROM webhook_events")
        return int(row["n"]) if row else 0

    # ------------------------------------------------------------------
    # Audit log
    # ------------------------------------------------------------------

    async def insert_audit_log(
        self,
        event_type: str,
        status: str,
        *,
        actor: str | None = None,
        ip_address: str | None = None,
        request_id: str | None = None,
        payload_excerpt: str | None = None,
        project_id: int | None = None,
        work_item_id: int | None = None,
        run_id: int | None = None,
    ) -> int:
        async with self.transaction() as conn:
            cursor = await conn.execute(
                """
                INSERT INTO audit_logs (event_type, status, actor, ip_address, request_id,
                                        payload_excerpt, project_id, work_item_id, run_id,
                                        created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    event_type,
                    status,
                    actor,
                    ip_address,
                    request_id,
                    payload_excerpt,
                    project_id,
                    work_item_id,
                    run_id,
                    _now(),
                ),
            )
            return cursor.lastrowid  # type: ignore[return-value]

    async def list_audit_logs(
        self, event_type: str | None = None, limit: int = 100
    ) -> list[Row]:
        if event_type:
            return await self._fetchall(
                "SELECT * FROM audit_logs WHERE event_type = ? ORDER BY id DESC LIMIT ?",
                (event_type, limit),
            )
        return await self._fetchall(
            "SELECT * FROM audit_logs ORDER BY id DESC LIMIT ?", (limit,)
        )


async def _one(
    conn: aiosqlite.Connection, sql: str, params: tuple[Any, ...] = ()
) -> Row | None:
    cursor = await conn.execute(sql, params)
    row = await cursor.fetchone()
    await cursor.close()
    return row


def _log_line(text: str) -> str:
    return f"[{_now()}] {text}\n"


def _reference_assignments(fields: dict[str, Any]) -> tuple[list[str], list[Any]]:
    unknown = set(fields) - REFERENCE_FIELDS
    if unknown:
        raise ValueError(f"Unknown run fields: {sorted(unknown)}")
    assignments: list[str] = []
    values: list[Any] = []
    for name, value in fields.items():
        if value is None:
            continue
        assignments.append(f"{name} = ?")
        values.append(json.dumps(value) if name == "costs" else value)
    return assignments, values


async def _settle_work_item(
    conn: aiosqlite.Connection, work_item_id: int, outcome: str
) -> Row | None:
    status = "completed" if outcome == "success" else "failed"
    return await _one(
        conn,
        """
        UPDATE work_items
        SET status = ?, locked_by_agent_id = NULL, locked_at = NULL, updated_at = ?
        WHERE id = ? AND status IN ('pending', 'in_progress')
        RETURNING *
        """,
        (status, _now(), work_item_id),
    )


async def _complete_run(
    conn: aiosqlite.Connection,
    run_id: int,
    outcome: str,
    fields: dict[str, Any],
    log: str | None,
) -> tuple[Row, Row | None] | None:
    if outcome not in ("success", "failure"):
        raise ValueError(f"Unsupported run outcome: {outcome}")
    assignments, values = _reference_assignments(fields)
    extra = "".join(f", {a}" for a in assignments)
    now = _now()
    run = await _one(
        conn,
        f"""
        UPDATE runs
        SET outcome = ?, finished_at = ?, logs = logs || ?{extra}
        WHERE id = ? AND outcome IS NULL
        RETURNING *
        """,
        (outcome, now, _log_line(log) if log else "", *values, run_id),
    )
    if run is None:
        return None
    work_item = await _settle_work_item(conn, run["work_item_id"], outcome)
    return run, work_item

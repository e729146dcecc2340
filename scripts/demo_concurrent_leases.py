#!/usr/bin/env python3
"""Demo: two executors leasing from one queue through separate connections.

This simulates two worker processes sharing the same SQLite file. Each
item goes to exactly one of them, highest priority first, and a released
item comes back for the other to pick up.

Run after ``pip install -e .``.
"""

import asyncio
import shutil
from pathlib import Path

from agentrelay.db.database import Database
from agentrelay.services.agent_cache import AgentRegistry
from agentrelay.services.run_tracker import RunTracker
from agentrelay.services.work_queue import WorkQueue

DB_PATH = Path(__file__).parent.parent / "data" / "demo" / "agentrelay.db"


async def drain(name: str, db: Database) -> list[int]:
    """Lease until the queue is empty (or the agent is at its cap)."""
    queue = WorkQueue(db)
    agent = await AgentRegistry(db).require(name)
    leased = []
    while True:
        item = await queue.lease_next(agent)
        if item is None:
            break
        leased.append(item.id)
        print(f"[{name}] leased #{item.id} (priority {item.priority}, {item.payload['title']})")
        await asyncio.sleep(0)
    return leased


async def main():
    shutil.rmtree(DB_PATH.parent, ignore_errors=True)
    alice_db = Database(DB_PATH)
    bob_db = Database(DB_PATH)
    await alice_db.initialize()
    await bob_db.initialize()

    print("=" * 60)
    print("agentrelay concurrent lease demo")
    print("=" * 60)

    project = await alice_db.create_project("demo", repo_full_name="acme/demo")
    registry = AgentRegistry(alice_db)
    await registry.register("alice", "Alice", max_concurrency=3)
    await registry.register("bob", "Bob", max_concurrency=3)

    queue = WorkQueue(alice_db)
    for priority, title in [(2, "tidy README"), (9, "fix login"), (5, "add CI"), (7, "docs")]:
        await queue.enqueue(project["id"], "docs", priority=priority, payload={"title": title})

    alice, bob = await asyncio.gather(drain("alice", alice_db), drain("bob", bob_db))
    overlap = set(alice) & set(bob)
    print(f"\nalice holds {alice}, bob holds {bob}")
    print("No item leased twice." if not overlap else f"Overlap: {sorted(overlap)}")

    # --- Alice gives one back; Bob picks it up ---
    if alice:
        given_back = alice[0]
        await queue.release(given_back, "alice is shutting down")
        print(f"\n[alice] released #{given_back}")
        again = await drain("bob", bob_db)
        print(f"[bob] picked up {again}")

        runs = await RunTracker(alice_db).list_for_work_item(given_back)
        for run in runs:
            outcome = run.outcome.value if run.outcome else "active"
            print(f"  run #{run.id} by agent {run.agent_id}: {outcome}")

    print("=" * 60)
    await alice_db.close()
    await bob_db.close()


if __name__ == "__main__":
    asyncio.run(main())

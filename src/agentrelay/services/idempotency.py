from __future__ import annotations

import hashlib
import json
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any

from agentrelay.db.database import Database
from agentrelay.models.agent import Agent
from agentrelay.models.run import Run
from agentrelay.models.work_item import WorkItem

logger = logging.getLogger(__name__)


def fingerprint(
    work_item: WorkItem, agent: Agent, payload: dict[str, Any] | None = None
) -> str:
    """Deterministic key for "this agent doing this work with these inputs".

    ``payload`` defaults to the work item's payload; pass the change set
    when the same item can legitimately be attempted with different inputs.
    """
    body = json.dumps(
        payload if payload is not None else work_item.payload,
        sort_keys=True,
        separators=(",", ":"),
        default=str,
    )
    digest = hashlib.sha256(
        "\x1f".join([str(work_item.id), work_item.work_type, body, agent.key]).encode()
    ).hexdigest()
    return f"run:{work_item.id}:{agent.key}:{digest}"


class ClaimStatus(str, Enum):
    CLAIMED = "claimed"
    RESUMED = "resumed"
    SUCCEEDED = "succeeded"
    IN_FLIGHT = "in_flight"
    INACTIVE = "inactive"


@dataclass(frozen=True)
class ClaimResult:
    status: ClaimStatus
    run: Run | None

    @property
    def proceed(self) -> bool:
        return self.status in (ClaimStatus.CLAIMED, ClaimStatus.RESUMED)


class IdempotencyGuard:
    """Prevents an externally side-effecting workflow from running twice.

    Keys live on ``runs.idempotency_key`` under a UNIQUE index, so the
    database decides races between concurrent claimants.
    """

    def __init__(self, db: Database):
        self.db = db

    async def already_succeeded(self, key: str) -> bool:
        return await self.db.run_exists(key, "success")

    async def claim(self, run: Run, key: str) -> ClaimResult:
        assert run.id is not None
        status, row = await self.db.claim_idempotency_key(run.id, key)
        result = ClaimResult(ClaimStatus(status), Run.from_row(row) if row else None)
        if result.status is ClaimStatus.RESUMED:
            logger.info(
                "Run #%d resumes %s on branch %s",
                run.id,
                key,
                result.run.branch_name if result.run else None,
            )
        elif not result.proceed:
            logger.info("Run #%d did not claim %s: %s", run.id, key, status)
        return result

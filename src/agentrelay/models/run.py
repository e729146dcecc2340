from __future__ import annotations

import json
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field

from agentrelay.utils.clock import utc_now

# Columns that external systems (hosting, CI) report back onto a run.
REFERENCE_FIELDS = frozenset(
    {
        "branch_name",
        "pr_number",
        "pr_url",
        "head_sha",
        "check_suite_id",
        "build_status",
        "costs",
    }
)


class RunOutcome(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"


class Run(BaseModel):
    """One attempt at a work item by one agent. ``outcome`` is None while active."""

    id: int | None = None
    agent_id: int
    work_item_id: int
    started_at: datetime = Field(default_factory=utc_now)
    finished_at: Optional[datetime] = None
    outcome: Optional[RunOutcome] = None
    idempotency_key: Optional[str] = None
    branch_name: Optional[str] = None
    pr_number: Optional[int] = None
    pr_url: Optional[str] = None
    head_sha: Optional[str] = None
    check_suite_id: Optional[int] = None
    build_status: Optional[str] = None
    logs: str = ""
    costs: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_row(cls, row: Any) -> Run:
        data = dict(row)
        data["costs"] = json.loads(data["costs"]) if data.get("costs") else {}
        return cls(**data)

    @property
    def is_active(self) -> bool:
        return self.outcome is None

from __future__ import annotations

import json
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field

from agentrelay.utils.clock import utc_now


class WorkItemStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (WorkItemStatus.COMPLETED, WorkItemStatus.FAILED)


class WorkItem(BaseModel):
    """A schedulable unit of work.

    ``locked_by_agent_id``/``locked_at`` are set only while the item is
    ``in_progress``.
    """

    id: int | None = None
    project_id: int
    work_type: str  # free-form, e.g. issue, docs, ci_setup
    priority: int = 0
    status: WorkItemStatus = WorkItemStatus.PENDING
    payload: dict[str, Any] = Field(default_factory=dict)
    assigned_agent_id: Optional[int] = None
    locked_by_agent_id: Optional[int] = None
    locked_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    @classmethod
    def from_row(cls, row: Any) -> WorkItem:
        data = dict(row)
        data["payload"] = json.loads(data["payload"]) if data.get("payload") else {}
        return cls(**data)

    @property
    def is_locked(self) -> bool:
        return self.locked_by_agent_id is not None

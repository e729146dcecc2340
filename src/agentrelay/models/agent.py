from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, Field

from agentrelay.utils.clock import utc_now


class Agent(BaseModel):
    """A named, globally scoped executor identity."""

    id: int | None = None
    key: str
    name: str
    description: Optional[str] = None
    enabled: bool = True
    max_concurrency: int = Field(default=1, gt=0)
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    @classmethod
    def from_row(cls, row: Any) -> Agent:
        data = dict(row)
        data["enabled"] = bool(data["enabled"])
        return cls(**data)

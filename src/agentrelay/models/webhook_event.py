from __future__ import annotations

import json
from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, Field

from agentrelay.utils.clock import utc_now


class InboundEvent(BaseModel):
    """An externally delivered webhook, stored once per delivery id."""

    id: int | None = None
    project_id: Optional[int] = None
    event_type: str
    delivery_id: str
    payload: dict[str, Any] = Field(default_factory=dict)
    received_at: datetime = Field(default_factory=utc_now)

    model_config = {"frozen": True}

    @classmethod
    def from_row(cls, row: Any) -> InboundEvent:
        data = dict(row)
        data["payload"] = json.loads(data["payload"]) if data.get("payload") else {}
        return cls(**data)

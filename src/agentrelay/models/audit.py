from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field

from agentrelay.utils.clock import utc_now


class AuditStatus(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"
    BLOCKED = "blocked"


class AuditEvent:
    WEBHOOK_RECEIVED = "webhook.received"
    WEBHOOK_DUPLICATE = "webhook.duplicate"
    WEBHOOK_REJECTED = "webhook.rejected"
    WEBHOOK_INVALID_SIGNATURE = "webhook.invalid_signature"
    WEBHOOK_MISSING_SIGNATURE = "webhook.missing_signature"
    WEBHOOK_RATE_LIMITED = "webhook.rate_limited"
    WEBHOOK_ERROR = "webhook.error"
    WORK_ITEM_CLAIMED = "work_item.claimed"
    WORK_ITEM_RELEASED = "work_item.released"
    WORK_ITEM_REQUEUED = "work_item.requeued"
    RUN_FINISHED = "run.finished"
    RUN_FAILED = "run.failed"

    SECURITY = frozenset(
        {WEBHOOK_INVALID_SIGNATURE, WEBHOOK_MISSING_SIGNATURE, WEBHOOK_RATE_LIMITED}
    )


class AuditRecord(BaseModel):
    """One row of the audit trail. ``payload_excerpt`` is always redacted."""

    id: int | None = None
    event_type: str
    status: AuditStatus
    actor: Optional[str] = None
    ip_address: Optional[str] = None
    request_id: Optional[str] = None
    payload_excerpt: Optional[str] = None
    project_id: Optional[int] = None
    work_item_id: Optional[int] = None
    run_id: Optional[int] = None
    created_at: datetime = Field(default_factory=utc_now)

    @classmethod
    def from_row(cls, row: Any) -> AuditRecord:
        return cls(**dict(row))

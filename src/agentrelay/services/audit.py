from __future__ import annotations

import json
import logging
import re
from typing import Any

from agentrelay.db.database import Database
from agentrelay.models.audit import AuditEvent, AuditRecord, AuditStatus

logger = logging.getLogger(__name__)

EXCERPT_LIMIT = 500
REDACTED = "[REDACTED]"

_SECRET_PATTERNS: list[tuple[re.Pattern[str], str]] = [
    (re.compile(r"(?i)\bbearer\s+[A-Za-z0-9._~+/=-]+"), f"Bearer {REDACTED}"),
    (
        re.compile(
            r"(?i)([\"']?[\w-]*(?:token|secret|password|api_key|apikey|auth|credential)"
            r"[\w-]*[\"']?\s*[:=]\s*)([\"']?)[^\s\"',}&]+"
        ),
        rf"\1\2{REDACTED}",
    ),
    (re.compile(r"\b(?:ghp|gho|ghu|ghs|ghr)_[A-Za-z0-9]{20,}"), REDACTED),
    (re.compile(r"\bgithub_pat_[A-Za-z0-9_]{20,}"), REDACTED),
    (re.compile(r"\bsk-[A-Za-z0-9_-]{16,}"), REDACTED),
    (re.compile(r"\bAKIA[0-9A-Z]{16}\b"), REDACTED),
]


def redact_secrets(text: str) -> str:
    """Mask credentials that commonly leak into payloads and command output."""
    for pattern, replacement in _SECRET_PATTERNS:
        text = pattern.sub(replacement, text)
    return text


def excerpt(payload: Any, limit: int = EXCERPT_LIMIT) -> str:
    """Redacted, truncated text form of ``payload`` for the audit table."""
    if isinstance(payload, bytes):
        text = payload.decode("utf-8", errors="replace")
    elif isinstance(payload, str):
        text = payload
    else:
        text = json.dumps(payload, sort_keys=True, default=str)
    text = redact_secrets(text)
    if len(text) > limit:
        text = text[:limit] + "...(truncated)"
    return text


class AuditLog:
    """Writes audit records. Failures here are logged, never raised."""

    def __init__(self, db: Database):
        self.db = db

    async def record(
        self,
        event_type: str,
        status: AuditStatus | str,
        *,
        payload: Any = None,
        actor: str | None = None,
        ip_address: str | None = None,
        request_id: str | None = None,
        project_id: int | None = None,
        work_item_id: int | None = None,
        run_id: int | None = None,
    ) -> int | None:
        status = AuditStatus(status)
        if event_type in AuditEvent.SECURITY:
            logger.warning(
                "Security event %s from %s (request %s)", event_type, ip_address, request_id
            )
        try:
            return await self.db.insert_audit_log(
                event_type,
                status.value,
                actor=actor,
                ip_address=ip_address,
                request_id=request_id,
                payload_excerpt=excerpt(payload) if payload is not None else None,
                project_id=project_id,
                work_item_id=work_item_id,
                run_id=run_id,
            )
        except Exception:
            logger.exception("Failed to write audit record %s", event_type)
            return None

    async def recent(self, event_type: str | None = None, limit: int = 100) -> list[AuditRecord]:
        rows = await self.db.list_audit_logs(event_type, limit)
        return [AuditRecord.from_row(r) for r in rows]

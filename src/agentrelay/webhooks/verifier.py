from __future__ import annotations

import hashlib
import hmac
import logging

from agentrelay.db.database import Database
from agentrelay.models.project import Project

logger = logging.getLogger(__name__)

SIGNATURE_PREFIX = "sha256="


def sign(raw_body: bytes, shared_secret: str) -> str:
    """``sha256=<hex>`` signature of ``raw_body``, as sent by the hosting service."""
    digest = hmac.new(shared_secret.encode(), raw_body, hashlib.sha256).hexdigest()
    return f"{SIGNATURE_PREFIX}{digest}"


def verify(raw_body: bytes, signature_header: str | None, shared_secret: str | None) -> bool:
    """Constant-time check of an HMAC-SHA256 signature header."""
    if not signature_header or not shared_secret:
        return False
    if not signature_header.startswith(SIGNATURE_PREFIX):
        return False
    return hmac.compare_digest(sign(raw_body, shared_secret), signature_header)


async def find_project_by_signature(
    db: Database, raw_body: bytes, signature_header: str | None
) -> Project | None:
    """Identify the sending project by the secret its signature verifies under."""
    if not signature_header:
        return None
    for row in await db.list_projects_with_webhook_secret():
        if verify(raw_body, signature_header, row["webhook_secret"]):
            return Project.from_row(row)
    return None

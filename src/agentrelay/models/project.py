from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, Field

from agentrelay.utils.clock import utc_now


class Project(BaseModel):
    """A code repository that work items belong to.

    ``token_secret_name`` names the secret holding the hosting token; the
    token itself is never stored.
    """

    id: int | None = None
    slug: str
    name: Optional[str] = None
    repo_full_name: Optional[str] = None
    repo_default_branch: str = "main"
    token_secret_name: Optional[str] = None
    webhook_secret: Optional[str] = Field(default=None, repr=False)
    created_at: datetime = Field(default_factory=utc_now)

    @classmethod
    def from_row(cls, row: Any) -> Project:
        return cls(**dict(row))

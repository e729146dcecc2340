from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()


@dataclass(frozen=True)
class Config:
    """Central configuration loaded from environment variables."""

    # Database
    db_path: Path = field(
        default_factory=lambda: Path(
            os.environ.get("AGENTRELAY_DB_PATH", "data/agentrelay.db")
        )
    )
    busy_timeout_ms: int = field(
        default_factory=lambda: int(os.environ.get("AGENTRELAY_BUSY_TIMEOUT_MS", "5000"))
    )

    # Webhook endpoint
    webhook_host: str = field(
        default_factory=lambda: os.environ.get("AGENTRELAY_WEBHOOK_HOST", "0.0.0.0")
    )
    webhook_port: int = field(
        default_factory=lambda: int(os.environ.get("AGENTRELAY_WEBHOOK_PORT", "8080"))
    )
    webhook_path: str = field(
        default_factory=lambda: os.environ.get("AGENTRELAY_WEBHOOK_PATH", "/webhooks/github")
    )
    webhook_rate_limit: int = field(
        default_factory=lambda: int(os.environ.get("AGENTRELAY_WEBHOOK_RATE_LIMIT", "100"))
    )
    webhook_rate_window_seconds: int = field(
        default_factory=lambda: int(
            os.environ.get("AGENTRELAY_WEBHOOK_RATE_WINDOW_SECONDS", "60")
        )
    )

    # Workspace runner
    workspace_root: Path = field(
        default_factory=lambda: Path(
            os.environ.get("AGENTRELAY_WORKSPACE_ROOT", "data/workspaces")
        )
    )
    git_host_url: str = field(
        default_factory=lambda: os.environ.get("AGENTRELAY_GIT_HOST_URL", "https://github.com")
    )
    hosting_api_url: str = field(
        default_factory=lambda: os.environ.get(
            "AGENTRELAY_HOSTING_API_URL", "https://api.github.com"
        )
    )
    commit_author_name: str = field(
        default_factory=lambda: os.environ.get("AGENTRELAY_COMMIT_AUTHOR_NAME", "agentrelay")
    )
    commit_author_email: str = field(
        default_factory=lambda: os.environ.get(
            "AGENTRELAY_COMMIT_AUTHOR_EMAIL", "agentrelay@users.noreply.github.com"
        )
    )

    # Executors
    agent_key: str | None = field(
        default_factory=lambda: os.environ.get("AGENTRELAY_AGENT_KEY")
    )
    stale_lease_seconds: int = field(
        default_factory=lambda: int(os.environ.get("AGENTRELAY_STALE_LEASE_SECONDS", "1800"))
    )
    worker_poll_interval: float = field(
        default_factory=lambda: float(os.environ.get("AGENTRELAY_WORKER_POLL_INTERVAL", "5"))
    )
    execution_timeout_seconds: float = field(
        default_factory=lambda: float(
            os.environ.get("AGENTRELAY_EXECUTION_TIMEOUT_SECONDS", "900")
        )
    )
    agent_cache_ttl_seconds: float = field(
        default_factory=lambda: float(os.environ.get("AGENTRELAY_AGENT_CACHE_TTL", "60"))
    )

    # LLM (brain)
    anthropic_api_key: str | None = field(
        default_factory=lambda: os.environ.get("ANTHROPIC_API_KEY")
    )
    brain_model: str = field(
        default_factory=lambda: os.environ.get(
            "AGENTRELAY_BRAIN_MODEL", "claude-sonnet-4-20250514"
        )
    )

    # Logging
    log_level: str = field(
        default_factory=lambda: os.environ.get("AGENTRELAY_LOG_LEVEL", "INFO")
    )


def get_config() -> Config:
    """Return a Config instance built from the current environment."""
    return Config()

from __future__ import annotations

import logging
import sys


def setup_logging(level: str = "INFO") -> None:
    """Configure logging for agentrelay processes.

    Everything goes to stderr; the MCP stdio transport owns stdout.
    """
    numeric_level = getattr(logging, level.upper(), logging.INFO)

    root = logging.getLogger("agentrelay")
    root.setLevel(numeric_level)
    if any(getattr(h, "_agentrelay", False) for h in root.handlers):
        return

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(
        logging.Formatter(
            "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
    )
    handler._agentrelay = True  # type: ignore[attr-defined]
    root.addHandler(handler)

    # Suppress noisy third-party loggers
    for name in ("aiosqlite", "httpx", "aiohttp.access"):
        logging.getLogger(name).setLevel(logging.WARNING)

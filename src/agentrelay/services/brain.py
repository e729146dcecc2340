from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Protocol

import anthropic
from pydantic import ValidationError

from agentrelay.errors import SchemaViolation
from agentrelay.models.agent import Agent
from agentrelay.models.brain_response import BrainResponse, brain_response_adapter
from agentrelay.models.work_item import WorkItem
from agentrelay.utils.config import Config

logger = logging.getLogger(__name__)

RESPONSE_KINDS = ("work_items", "file_writes", "github_operations", "error")

# Default response kind per work type, used in the prompt.
_KIND_BY_WORK_TYPE = {
    "docs": "file_writes",
    "gtm": "file_writes",
    "product_manager": "work_items",
    "orchestrator": "work_items",
    "issue": "file_writes",
}


class Brain(Protocol):
    """Anything that can look at a work item and propose what to do."""

    async def propose(self, work_item: WorkItem, agent: Agent) -> Any: ...


def parse_brain_response(raw: Any) -> BrainResponse:
    """Validate a raw brain response (dict or JSON text).

    Raises SchemaViolation with the validation text on any mismatch.
    """
    if isinstance(raw, (str, bytes)):
        try:
            raw = json.loads(_strip_fences(raw if isinstance(raw, str) else raw.decode()))
        except ValueError as exc:
            raise SchemaViolation(f"Response is not valid JSON: {exc}") from exc
    if not isinstance(raw, dict):
        raise SchemaViolation("Response must be a JSON object")
    if raw.get("type") not in RESPONSE_KINDS:
        raise SchemaViolation(
            f"Unknown response type {raw.get('type')!r}; expected one of {', '.join(RESPONSE_KINDS)}"
        )
    try:
        return brain_response_adapter.validate_python(raw)
    except ValidationError as exc:
        raise SchemaViolation(str(exc)) from exc


def expected_kind(work_type: str) -> str:
    if work_type.endswith("_setup") or work_type == "repo_bootstrap":
        return "github_operations"
    return _KIND_BY_WORK_TYPE.get(work_type, "file_writes")


class AnthropicBrain:
    """Brain backed by the Anthropic Messages API.

    Disabled (every proposal is an ``error`` response) when no API key is
    configured.
    """

    def __init__(self, config: Config):
        self._model = config.brain_model
        self._client: Any | None = None

        if config.anthropic_api_key:
            self._client = anthropic.Anthropic(api_key=config.anthropic_api_key)
        else:
            logger.warning("ANTHROPIC_API_KEY not set - brain disabled")

    @property
    def enabled(self) -> bool:
        return self._client is not None

    async def propose(self, work_item: WorkItem, agent: Agent) -> Any:
        if not self._client:
            return {"type": "error", "error": "LLM not available - ANTHROPIC_API_KEY not set"}

        prompt = _build_prompt(work_item, agent)
        response = await asyncio.to_thread(
            self._client.messages.create,
            model=self._model,
            max_tokens=8000,
            messages=[{"role": "user", "content": prompt}],
        )
        text = response.content[0].text
        logger.info(
            "Brain proposal for work item #%d (%s): %d chars",
            work_item.id,
            work_item.work_type,
            len(text),
        )
        return text


def _build_prompt(work_item: WorkItem, agent: Agent) -> str:
    kind = expected_kind(work_item.work_type)
    return (
        f"You are the agent '{agent.name}' ({agent.description or 'no description'}).\n"
        f"Work item #{work_item.id} of type '{work_item.work_type}' with payload:\n"
        f"{json.dumps(work_item.payload, indent=2, sort_keys=True)}\n\n"
        f"Respond with JSON only, using a response of type '{kind}':\n"
        '  {"type": "work_items", "work_items": [{"work_type": str, "executor_key": str, '
        '"priority": 1-10, "payload": {}}]}\n'
        '  {"type": "file_writes", "files": [{"path": str, "content": str}], '
        '"message": str, "pr_title": str, "pr_body": str}\n'
        '  {"type": "github_operations", "operations": [{"operation": "create_issue" | '
        '"create_pr" | "create_files_and_pr", ...}]}\n'
        '  {"type": "error", "error": str}\n'
    )


def _strip_fences(text: str) -> str:
    text = text.strip()
    if text.startswith("```"):
        text = text.split("\n", 1)[1] if "\n" in text else ""
        if text.rstrip().endswith("```"):
            text = text.rstrip()[:-3]
    return text

"""Typed webhook payloads.

Only the fields the reconciler reads are modelled; everything else in the
delivery is ignored.
"""

from __future__ import annotations

from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter


class _Payload(BaseModel):
    model_config = ConfigDict(extra="ignore")


class Label(_Payload):
    name: str


class IssueInfo(_Payload):
    number: int
    title: str = ""
    body: Optional[str] = None
    state: str = "open"
    html_url: Optional[str] = None
    labels: list[Label] = Field(default_factory=list)


class IssuesEvent(_Payload):
    event: Literal["issues"]
    action: str
    issue: IssueInfo


class GitRef(_Payload):
    ref: str
    sha: Optional[str] = None


class PullRequestInfo(_Payload):
    number: int
    html_url: Optional[str] = None
    body: Optional[str] = None
    state: str = "open"
    merged: bool = False
    head: GitRef


class PullRequestEvent(_Payload):
    event: Literal["pull_request"]
    action: str
    pull_request: PullRequestInfo


class BuildInfo(_Payload):
    id: int
    head_sha: Optional[str] = None
    head_branch: Optional[str] = None
    status: Optional[str] = None
    conclusion: Optional[str] = None


class WorkflowRunEvent(_Payload):
    event: Literal["workflow_run"]
    action: str
    workflow_run: BuildInfo


class CheckSuiteEvent(_Payload):
    event: Literal["check_suite"]
    action: str
    check_suite: BuildInfo


class PushEvent(_Payload):
    event: Literal["push"]
    ref: str = ""
    after: Optional[str] = None


class PingEvent(_Payload):
    event: Literal["ping"]
    zen: Optional[str] = None
    hook_id: Optional[int] = None


WebhookEvent = Annotated[
    Union[
        IssuesEvent,
        PullRequestEvent,
        WorkflowRunEvent,
        CheckSuiteEvent,
        PushEvent,
        PingEvent,
    ],
    Field(discriminator="event"),
]

SUPPORTED_EVENTS = frozenset(
    {"issues", "pull_request", "workflow_run", "check_suite", "push", "ping"}
)

_adapter: TypeAdapter[WebhookEvent] = TypeAdapter(WebhookEvent)


def parse_event(event_type: str, payload: dict[str, Any]) -> WebhookEvent:
    """Build the typed variant for ``event_type``.

    Raises pydantic's ValidationError when the payload lacks required fields.
    """
    return _adapter.validate_python({**payload, "event": event_type})

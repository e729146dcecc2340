from __future__ import annotations


class AgentRelayError(Exception):
    """Base class for agentrelay errors."""


class NotFoundError(AgentRelayError):
    """A referenced record does not exist."""


class WorkItemStateError(AgentRelayError):
    """The requested transition is not allowed from the work item's current status."""


class SchemaViolation(AgentRelayError):
    """A brain response failed schema validation."""


class WorkspaceError(AgentRelayError):
    """A workspace step failed.

    ``step`` names the state the runner was in. ``retryable`` marks failures
    (merge conflicts) where the work item should go back to the queue instead
    of being marked failed.
    """

    def __init__(self, step: str, message: str, *, retryable: bool = False):
        super().__init__(message)
        self.step = step
        self.retryable = retryable


class HostingError(AgentRelayError):
    """A call to the code hosting API failed."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code

from agentrelay.models.agent import Agent
from agentrelay.models.audit import AuditEvent, AuditRecord, AuditStatus
from agentrelay.models.project import Project
from agentrelay.models.run import Run, RunOutcome
from agentrelay.models.webhook_event import InboundEvent
from agentrelay.models.work_item import WorkItem, WorkItemStatus

__all__ = [
    "Agent",
    "AuditEvent",
    "AuditRecord",
    "AuditStatus",
    "InboundEvent",
    "Project",
    "Run",
    "RunOutcome",
    "WorkItem",
    "WorkItemStatus",
]

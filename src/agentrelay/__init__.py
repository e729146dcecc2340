"""agentrelay: lease, execute and reconcile agent work items."""

__version__ = "0.3.0"

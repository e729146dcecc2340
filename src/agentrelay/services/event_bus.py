from __future__ import annotations

import asyncio
import logging
from collections import deque
from contextlib import contextmanager
from typing import Any, Callable, Coroutine, Iterable, Iterator

from agentrelay.utils.clock import utc_now

logger = logging.getLogger(__name__)

Listener = Callable[[dict[str, Any]], Coroutine[Any, Any, None]]

WORK_ITEM_ENQUEUED = "work_item_enqueued"
WORK_ITEM_LEASED = "work_item_leased"
WORK_ITEM_RELEASED = "work_item_released"
WORK_ITEM_REQUEUED = "work_item_requeued"
RUN_COMPLETED = "run_completed"

# Transitions after which a pending item may be waiting to be leased.
WORK_AVAILABLE = (WORK_ITEM_ENQUEUED, WORK_ITEM_RELEASED, WORK_ITEM_REQUEUED)


class EventBus:
    """In-process pub/sub for queue and run transitions.

    Services publish explicitly after their transaction commits, so a
    listener never observes a state that was rolled back. Subscribe to a
    specific event type or to ``"*"``.
    """

    def __init__(self) -> None:
        self._listeners: dict[str, list[Listener]] = {}

    def subscribe(self, event_type: str, listener: Listener) -> None:
        self._listeners.setdefault(event_type, []).append(listener)

    def unsubscribe(self, event_type: str, listener: Listener) -> None:
        listeners = self._listeners.get(event_type, [])
        if listener in listeners:
            listeners.remove(listener)

    @contextmanager
    def listening(self, event_types: Iterable[str], listener: Listener) -> Iterator[None]:
        """Subscribe ``listener`` to several event types for a block."""
        event_types = tuple(event_types)
        for event_type in event_types:
            self.subscribe(event_type, listener)
        try:
            yield
        finally:
            for event_type in event_types:
                self.unsubscribe(event_type, listener)

    async def publish(self, event_type: str, data: dict[str, Any]) -> None:
        event = {"type": event_type, "timestamp": utc_now().isoformat(), **data}

        targets = [*self._listeners.get(event_type, []), *self._listeners.get("*", [])]
        if not targets:
            return

        results = await asyncio.gather(
            *(listener(event) for listener in targets),
            return_exceptions=True,
        )
        for result in results:
            if isinstance(result, Exception):
                logger.error("Event listener error for %s: %s", event_type, result)


class RecentEvents:
    """Keeps the last ``maxlen`` events seen on a bus, newest last."""

    def __init__(self, bus: EventBus, maxlen: int = 50):
        self._events: deque[dict[str, Any]] = deque(maxlen=maxlen)
        bus.subscribe("*", self._record)

    async def _record(self, event: dict[str, Any]) -> None:
        self._events.append(event)

    def latest(self, limit: int = 10) -> list[dict[str, Any]]:
        return list(self._events)[-limit:] if limit > 0 else []

    def describe(self, event: dict[str, Any]) -> str:
        subject = (
            f"run #{event.get('run_id')}" if event["type"] == RUN_COMPLETED
            else f"work item #{event.get('work_item_id')}"
        )
        detail = event.get("outcome") or event.get("status") or ""
        return f"{event['timestamp']} {event['type']} {subject} {detail}".rstrip()

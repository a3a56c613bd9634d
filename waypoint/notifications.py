"""Notification sinks for workflow and escalation events."""

from __future__ import annotations

import logging
from typing import List, Protocol

from .contracts import WorkflowEvent

logger = logging.getLogger(__name__)


class NotificationSink(Protocol):
    async def notify(self, event: WorkflowEvent) -> None:
        ...


class LoggingNotificationSink:
    """Write every event to the ``waypoint.notifications`` logger."""

    def __init__(self, level: int = logging.INFO) -> None:
        self.level = level

    async def notify(self, event: WorkflowEvent) -> None:
        if event.new_status is not None:
            logger.log(
                self.level,
                f"[{event.kind}] run={event.run_id} "
                f"{event.old_status.value if event.old_status else '-'} -> {event.new_status.value}",
            )
        else:
            logger.log(
                self.level,
                f"[{event.kind}] run={event.run_id} step={event.step_id} data={event.data}",
            )


class CollectingNotificationSink:
    """Keep events in a list."""

    def __init__(self) -> None:
        self.events: List[WorkflowEvent] = []

    async def notify(self, event: WorkflowEvent) -> None:
        self.events.append(event)

    def kinds(self) -> List[str]:
        return [e.kind for e in self.events]


async def emit(sink: NotificationSink | None, event: WorkflowEvent) -> None:
    """Deliver ``event``; sink failures are logged, never raised."""
    if sink is None:
        return
    try:
        await sink.notify(event)
    except Exception as e:
        logger.warning(f"Notification sink failed for {event.kind} on run {event.run_id}: {e}")

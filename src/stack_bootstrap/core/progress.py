"""Progress reporting for concurrent stack deployments.

The engine emits ``ProgressEvent`` objects to a sink injected by the caller.
Rendering is left to whoever subscribes to the sink.
"""

import logging
import threading
from typing import Iterable, Protocol

from stack_bootstrap.core.contracts import BaseStackDeployment, ProgressEvent, ProgressStatus

logger = logging.getLogger(__name__)


class ProgressSink(Protocol):
    """Receives structured progress events."""

    def emit(self, event: ProgressEvent) -> None: ...


class NullProgressSink:
    """Discards every event."""

    def emit(self, event: ProgressEvent) -> None:
        pass


class LoggingProgressSink:
    """Logs status transitions at DEBUG level."""

    def emit(self, event: ProgressEvent) -> None:
        logger.debug(
            f"{event.stack_name} ({event.account_id}/{event.region}): {event.status.value} "
            f"{event.completed_resource_count}/{event.total_resource_count}"
            + (f" {event.latest_resource_id}" if event.latest_resource_id else "")
        )


class ProgressRegistry:
    """Latest progress per ``(stack_name, account_id, region)``.

    Each deployment task only writes its own key. The lock keeps the registry
    safe when events arrive from worker threads as well as the event loop.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._events: dict[tuple[str, str, str], ProgressEvent] = {}
        self._order: list[tuple[str, str, str]] = []

    def register(self, stacks: Iterable[BaseStackDeployment]) -> None:
        """Add stacks as pending so they show up before their first event."""
        for stack in stacks:
            self.emit(
                ProgressEvent(
                    stack_name=stack.stack_name,
                    account_id=stack.account_id,
                    region=stack.region,
                    status=ProgressStatus.PENDING,
                )
            )

    def emit(self, event: ProgressEvent) -> None:
        with self._lock:
            if event.key not in self._events:
                self._order.append(event.key)
            self._events[event.key] = event

    def get(self, stack_name: str, account_id: str, region: str) -> ProgressEvent | None:
        with self._lock:
            return self._events.get((stack_name, account_id, region))

    def snapshot(self) -> list[ProgressEvent]:
        """Events in registration order."""
        with self._lock:
            return [self._events[key] for key in self._order]


class FanOutProgressSink:
    """Forwards every event to several sinks."""

    def __init__(self, *sinks: ProgressSink):
        self.sinks = sinks

    def emit(self, event: ProgressEvent) -> None:
        for sink in self.sinks:
            sink.emit(event)

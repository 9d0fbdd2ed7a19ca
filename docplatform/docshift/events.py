"""
Typed status messages and the channel they travel on.

Long-running services (migration engine, monitoring, backup manager,
deployment orchestrator) publish Event messages to an EventChannel.
Callers subscribe to the kinds they care about and read from an
asyncio queue. Publishing never blocks: a full subscriber queue drops
its oldest message.

Invariants:
    - publish() never awaits and never raises because of a slow subscriber
    - Each subscription sees events in publish order
    - The channel keeps a bounded history for late inspection

How to change safely:
    - Add new EventKind members; never repurpose existing values
    - Keep payloads JSON-serializable
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

logger = logging.getLogger(__name__)


class Severity(Enum):
    """Severity of a status event."""

    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class EventKind(Enum):
    """What happened."""

    MIGRATION_STARTED = "migration.started"
    MIGRATION_PROGRESS = "migration.progress"
    MIGRATION_COMPLETED = "migration.completed"
    MIGRATION_FAILED = "migration.failed"
    BACKUP_CREATED = "backup.created"
    BACKUP_RESTORED = "backup.restored"
    ALERT_RAISED = "monitor.alert"
    MIGRATION_PAUSED = "monitor.paused"
    MIGRATION_RESUMED = "monitor.resumed"
    ROLLBACK_STARTED = "rollback.started"
    ROLLBACK_COMPLETED = "rollback.completed"
    DEPLOYMENT_STARTED = "deployment.started"
    DEPLOYMENT_PHASE = "deployment.phase"
    DEPLOYMENT_COMPLETED = "deployment.completed"
    DEPLOYMENT_FAILED = "deployment.failed"
    DEPLOYMENT_CANCELLED = "deployment.cancelled"


@dataclass(frozen=True)
class Event:
    """A single status message.

    Attributes:
        kind: Event kind
        source: Id of the run that emitted it (migration or deployment id)
        message: Human-readable summary
        severity: Severity level
        data: JSON-serializable payload
        timestamp: Unix seconds
    """

    kind: EventKind
    source: str
    message: str
    severity: Severity = Severity.INFO
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "kind": self.kind.value,
            "source": self.source,
            "message": self.message,
            "severity": self.severity.value,
            "data": self.data,
            "timestamp": self.timestamp,
        }


class Subscription:
    """A subscriber's view of the channel.

    Example:
        >>> sub = channel.subscribe({EventKind.ALERT_RAISED})
        >>> event = await sub.get()
    """

    def __init__(
        self,
        channel: EventChannel,
        kinds: frozenset[EventKind] | None,
        maxsize: int,
    ) -> None:
        self._channel = channel
        self.kinds = kinds
        self.queue: asyncio.Queue[Event] = asyncio.Queue(maxsize=maxsize)
        self.dropped = 0

    def wants(self, event: Event) -> bool:
        return self.kinds is None or event.kind in self.kinds

    def offer(self, event: Event) -> None:
        if self.queue.full():
            self.queue.get_nowait()
            self.dropped += 1
        self.queue.put_nowait(event)

    async def get(self, timeout: float | None = None) -> Event:
        """Wait for the next event."""
        if timeout is None:
            return await self.queue.get()
        return await asyncio.wait_for(self.queue.get(), timeout)

    def drain(self) -> list[Event]:
        """Return every queued event without waiting."""
        events = []
        while not self.queue.empty():
            events.append(self.queue.get_nowait())
        return events

    def close(self) -> None:
        self._channel.unsubscribe(self)


class EventChannel:
    """Fan-out channel for typed status events.

    Attributes:
        history_size: Number of recent events retained
    """

    def __init__(self, history_size: int = 1000) -> None:
        self._subscriptions: list[Subscription] = []
        self._history: deque[Event] = deque(maxlen=history_size)
        self._published = 0

    def subscribe(
        self,
        kinds: set[EventKind] | None = None,
        maxsize: int = 1000,
    ) -> Subscription:
        """Register a subscriber.

        Args:
            kinds: Event kinds to receive (all kinds if None)
            maxsize: Queue bound; oldest events are dropped beyond it
        """
        subscription = Subscription(self, frozenset(kinds) if kinds else None, maxsize)
        self._subscriptions.append(subscription)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        if subscription in self._subscriptions:
            self._subscriptions.remove(subscription)

    def publish(self, event: Event) -> None:
        """Deliver an event to every interested subscriber."""
        self._published += 1
        self._history.append(event)
        for subscription in list(self._subscriptions):
            if subscription.wants(event):
                subscription.offer(event)

        log_level = {
            Severity.INFO: logging.DEBUG,
            Severity.WARNING: logging.WARNING,
            Severity.ERROR: logging.ERROR,
            Severity.CRITICAL: logging.CRITICAL,
        }[event.severity]
        logger.log(
            log_level,
            event.message,
            extra={"event_kind": event.kind.value, "source": event.source},
        )

    def emit(
        self,
        kind: EventKind,
        source: str,
        message: str,
        severity: Severity = Severity.INFO,
        **data: Any,
    ) -> Event:
        """Build and publish an event in one call."""
        event = Event(kind=kind, source=source, message=message, severity=severity, data=data)
        self.publish(event)
        return event

    def recent(self, kind: EventKind | None = None, source: str | None = None) -> list[Event]:
        """Events still in history, optionally filtered."""
        return [
            e
            for e in self._history
            if (kind is None or e.kind == kind) and (source is None or e.source == source)
        ]

    @property
    def stats(self) -> dict[str, Any]:
        """Channel statistics."""
        return {
            "published": self._published,
            "subscribers": len(self._subscriptions),
            "history": len(self._history),
        }

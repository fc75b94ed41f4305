"""Event system for grantflow.

This module provides the event records, the in-process event emitter and the
notification dispatcher. Every accepted mutation of an application emits a
typed ApplicationEvent. Status changes additionally produce a Notification
addressed to the application owner, which the dispatcher hands to the
NotificationSink (email in the portal).

Delivery is best-effort: a failing listener or sink is logged and never
affects the mutation that produced the event.
"""

import json
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from dateutil.parser import isoparse

from grantflow.collaborators import NotificationSink, call_with_timeout
from grantflow.types import Actor, ApplicationStatus, EventType

logger = logging.getLogger(__name__)


def new_event_id() -> str:
    return f"evt_{uuid.uuid4().hex[:16]}"


@dataclass(frozen=True)
class ApplicationEvent:
    """A single event in an application's lifecycle.

    Attributes:
        event_id: Unique event identifier (e.g., "evt_01H8...")
        type: Event type
        application_id: Application the event relates to
        ts: UTC timestamp
        actor: Who caused the event
        status: Application status after the event
        payload: Optional event-specific data (changed fields, new status, remark)

    Examples:
        >>> from grantflow.types import Role
        >>> event = ApplicationEvent(
        ...     event_id="evt_001",
        ...     type=EventType.APPLICATION_CREATED,
        ...     application_id="app_001",
        ...     ts=datetime.now(timezone.utc),
        ...     actor=Actor(role=Role.STUDENT, id="s1"),
        ...     status=ApplicationStatus.PENDING,
        ... )
        >>> event.to_dict()["type"]
        'application.created'
    """
    event_id: str
    type: EventType
    application_id: str
    ts: datetime
    actor: Actor
    status: ApplicationStatus
    payload: Optional[Dict[str, Any]] = None

    def __post_init__(self):
        """Normalize string enums."""
        if isinstance(self.type, str) and not isinstance(self.type, EventType):
            object.__setattr__(self, "type", EventType(self.type))
        if isinstance(self.status, str) and not isinstance(self.status, ApplicationStatus):
            object.__setattr__(self, "status", ApplicationStatus(self.status))

    @classmethod
    def now(
        cls,
        type: EventType,
        application_id: str,
        actor: Actor,
        status: ApplicationStatus,
        payload: Optional[Dict[str, Any]] = None,
    ) -> "ApplicationEvent":
        return cls(
            event_id=new_event_id(),
            type=type,
            application_id=application_id,
            ts=datetime.now(timezone.utc),
            actor=actor,
            status=status,
            payload=payload,
        )

    def to_dict(self) -> Dict[str, Any]:
        """Convert event to dictionary for serialization.

        Returns:
            Dictionary with all event fields. Timestamp is ISO 8601.
        """
        result: Dict[str, Any] = {
            "eventId": self.event_id,
            "type": self.type.value,
            "applicationId": self.application_id,
            "ts": self.ts.isoformat(),
            "actor": self.actor.to_dict(),
            "status": self.status.value,
        }
        if self.payload is not None:
            result["payload"] = self.payload
        return result

    def to_jsonl(self) -> str:
        """Single-line JSON, suitable for an append-only audit log."""
        return json.dumps(self.to_dict(), separators=(',', ':'))

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ApplicationEvent":
        """Create ApplicationEvent from dictionary (camelCase keys)."""
        return cls(
            event_id=data["eventId"],
            type=EventType(data["type"]),
            application_id=data["applicationId"],
            ts=isoparse(data["ts"]),
            actor=Actor.from_dict(data["actor"]),
            status=ApplicationStatus(data["status"]),
            payload=data.get("payload"),
        )


@dataclass(frozen=True)
class Notification:
    """An event addressed to one recipient.

    Attributes:
        recipient_id: Who should be told (the application owner)
        event: The event to deliver
    """
    recipient_id: str
    event: ApplicationEvent


EventListener = Callable[[ApplicationEvent], None]
"""Type alias for event listener callbacks.

Listeners are called synchronously when events are emitted and should not
perform long-running work.
"""


class EventEmitter:
    """Dispatches events to subscribed listeners.

    Features:
    - Type-specific subscriptions
    - Wildcard subscriptions
    - Synchronous dispatch in registration order
    - Error isolation (a failing listener is logged and skipped)
    """

    def __init__(self):
        self._listeners: Dict[EventType, List[EventListener]] = {}
        self._any_listeners: List[EventListener] = []

    def on(self, event_type: EventType, listener: EventListener) -> None:
        """Subscribe to a specific event type."""
        self._listeners.setdefault(event_type, []).append(listener)

    def on_any(self, listener: EventListener) -> None:
        """Subscribe to all event types."""
        self._any_listeners.append(listener)

    def off(self, event_type: EventType, listener: EventListener) -> None:
        """Unsubscribe from a specific event type. Unknown listeners are ignored."""
        listeners = self._listeners.get(event_type, [])
        if listener in listeners:
            listeners.remove(listener)

    def off_any(self, listener: EventListener) -> None:
        """Unsubscribe from the wildcard subscription. Unknown listeners are ignored."""
        if listener in self._any_listeners:
            self._any_listeners.remove(listener)

    def emit(self, event: ApplicationEvent) -> None:
        """Dispatch an event: type-specific listeners first, then wildcard ones."""
        for listener in list(self._listeners.get(event.type, [])) + list(self._any_listeners):
            try:
                listener(event)
            except Exception:
                logger.exception(
                    "Event listener %r failed for %s (%s)",
                    listener, event.type.value, event.event_id,
                )

    def clear(self) -> None:
        """Remove all listeners."""
        self._listeners.clear()
        self._any_listeners.clear()

    def listener_count(self, event_type: Optional[EventType] = None) -> int:
        """Count listeners for one type, or all listeners including wildcard ones."""
        if event_type is not None:
            return len(self._listeners.get(event_type, []))
        return len(self._any_listeners) + sum(len(v) for v in self._listeners.values())


class NotificationDispatcher:
    """Hands notifications to the sink, fire-and-forget.

    Attributes:
        sink: Delivery collaborator
        enabled: When False notifications are dropped (logged at debug)
        timeout: Per-delivery timeout in seconds
    """

    def __init__(
        self,
        sink: Optional[NotificationSink],
        enabled: bool = True,
        timeout: Optional[float] = None,
    ):
        self.sink = sink
        self.enabled = enabled
        self.timeout = timeout

    def dispatch(self, notifications: List[Notification]) -> int:
        """Deliver notifications; never raises.

        Returns:
            Number of notifications the sink accepted
        """
        if not notifications:
            return 0
        if not self.enabled or self.sink is None:
            logger.debug("Notifications disabled; dropping %d", len(notifications))
            return 0

        delivered = 0
        for notification in notifications:
            try:
                call_with_timeout(
                    self.sink.notify,
                    self.timeout,
                    notification.recipient_id,
                    notification.event.to_dict(),
                )
            except Exception:
                logger.warning(
                    "Notification %s to %s failed",
                    notification.event.event_id,
                    notification.recipient_id,
                    exc_info=True,
                )
            else:
                delivered += 1
        return delivered


__all__ = [
    "ApplicationEvent",
    "Notification",
    "EventListener",
    "EventEmitter",
    "NotificationDispatcher",
]

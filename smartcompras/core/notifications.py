from __future__ import annotations

import logging
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Callable, Dict, List, Protocol, Sequence

from smartcompras.observability import observe_notification_delivered, observe_notification_failed


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True, kw_only=True)
class DomainEvent:
    event_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    occurred_at: datetime = field(default_factory=_utc_now)

    def __post_init__(self) -> None:
        normalized_event_id = str(self.event_id or "").strip() or uuid.uuid4().hex
        normalized_occurred_at = self.occurred_at if isinstance(self.occurred_at, datetime) else _utc_now()
        if normalized_occurred_at.tzinfo is None:
            normalized_occurred_at = normalized_occurred_at.replace(tzinfo=timezone.utc)
        normalized_occurred_at = normalized_occurred_at.astimezone(timezone.utc)

        object.__setattr__(self, "event_id", normalized_event_id)
        object.__setattr__(self, "occurred_at", normalized_occurred_at)


@dataclass(frozen=True, kw_only=True)
class RequisitionStatusChanged(DomainEvent):
    requisition_id: int
    kind: str
    from_status: str | None
    to_status: str
    actor_id: int
    status_event_id: int | None = None

    def to_payload(self) -> Dict[str, object]:
        raw = asdict(self)
        payload: Dict[str, object] = {}
        for key, value in raw.items():
            if isinstance(value, datetime):
                payload[key] = value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")
            else:
                payload[key] = value
        return payload


class NotificationSink(Protocol):
    def deliver(self, event: RequisitionStatusChanged) -> None: ...


NotificationHandler = Callable[[RequisitionStatusChanged], None]


class LoggingNotificationSink:
    """Default sink: hands the event to the log pipeline only."""

    def __init__(self, logger: logging.Logger | None = None) -> None:
        self._logger = logger or logging.getLogger("smartcompras.notifications")

    def deliver(self, event: RequisitionStatusChanged) -> None:
        self._logger.info("requisition_status_changed", extra={"event": event.to_payload()})


class ChannelNotificationSink:
    """Fans an event out to channel handlers in registration order.

    Handlers are fixed at construction; a failing handler aborts delivery so
    the event stays pending for redelivery.
    """

    def __init__(self, handlers: Sequence[NotificationHandler]) -> None:
        self._handlers: List[NotificationHandler] = list(handlers)

    def deliver(self, event: RequisitionStatusChanged) -> None:
        for handler in self._handlers:
            handler(event)


class Notifier:
    def __init__(self, sink: NotificationSink | None = None) -> None:
        self.sink = sink or LoggingNotificationSink()
        self._logger = logging.getLogger("smartcompras")

    def notify(self, event: RequisitionStatusChanged) -> bool:
        try:
            self.sink.deliver(event)
        except Exception:  # noqa: BLE001
            observe_notification_failed(event.to_status)
            self._logger.exception(
                "notification_delivery_failed",
                extra={
                    "requisition_id": event.requisition_id,
                    "status_event_id": event.status_event_id,
                    "to_status": event.to_status,
                },
            )
            return False
        observe_notification_delivered(event.to_status)
        return True

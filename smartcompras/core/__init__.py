from smartcompras.core.notifications import (
    ChannelNotificationSink,
    DomainEvent,
    LoggingNotificationSink,
    NotificationHandler,
    NotificationSink,
    Notifier,
    RequisitionStatusChanged,
)

__all__ = [
    "ChannelNotificationSink",
    "DomainEvent",
    "LoggingNotificationSink",
    "NotificationHandler",
    "NotificationSink",
    "Notifier",
    "RequisitionStatusChanged",
]

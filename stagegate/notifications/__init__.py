"""Run notifications."""

from ..core.registry import ComponentRegistry
from .notifier import (
    EmailNotificationSink,
    EventType,
    LogNotificationSink,
    NotificationEvent,
    NotificationManager,
    NotificationSink,
    SlackNotificationSink,
    TERMINAL_EVENTS,
    WebhookNotificationSink,
    render_event,
)

sink_registry: ComponentRegistry[NotificationSink] = ComponentRegistry(NotificationSink)
sink_registry.register_component("log", LogNotificationSink)
sink_registry.register_component("slack", SlackNotificationSink)
sink_registry.register_component("webhook", WebhookNotificationSink)
sink_registry.register_component("email", EmailNotificationSink)

__all__ = [
    "EmailNotificationSink",
    "EventType",
    "LogNotificationSink",
    "NotificationEvent",
    "NotificationManager",
    "NotificationSink",
    "SlackNotificationSink",
    "TERMINAL_EVENTS",
    "WebhookNotificationSink",
    "render_event",
    "sink_registry",
]

"""Notification services package."""

from .backend import ChatBackend, InMemoryChatBackend, WebhookChatBackend  # noqa: F401
from .service import NotificationEvent, NotificationService, Notifier, dispatch_loyalty_event  # noqa: F401
from .templates import EVENT_KINDS, RenderedMessage, render_loyalty_event  # noqa: F401

__all__ = [
    "ChatBackend",
    "EVENT_KINDS",
    "InMemoryChatBackend",
    "NotificationEvent",
    "NotificationService",
    "Notifier",
    "RenderedMessage",
    "WebhookChatBackend",
    "dispatch_loyalty_event",
    "render_loyalty_event",
]

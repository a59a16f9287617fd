"""Customer-facing loyalty notifications.

Delivery is a side effect of committed ledger changes: callers invoke
``notify`` after their unit of work commits, and failures are logged and
reported as ``False`` rather than raised.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping, Optional, Protocol
from uuid import UUID

from loguru import logger
from sqlalchemy.ext.asyncio import AsyncSession

from pointledger_api.core.settings import get_settings
from pointledger_api.models.customer import Customer
from pointledger_api.observability.loyalty import get_loyalty_store
from pointledger_api.services.tenants import TenantConfigProvider

from .backend import ChatBackend, WebhookChatBackend
from .templates import render_loyalty_event


@dataclass
class NotificationEvent:
    """Representation of a notification that was sent."""

    recipient: str
    title: str
    body_text: str
    event_type: str
    metadata: dict[str, Any]


class Notifier(Protocol):
    """Fire-and-forget notification boundary used by ledger workflows."""

    async def notify(self, customer_id: UUID, event_kind: str, payload: Mapping[str, Any]) -> bool:
        ...


class NotificationService:
    """Render loyalty events and hand them to the chat backend."""

    def __init__(
        self,
        db_session: AsyncSession,
        backend: Optional[ChatBackend] = None,
    ) -> None:
        self._db = db_session
        self._backend = backend or self._build_default_backend()
        self._events: list[NotificationEvent] = []

    @property
    def sent_events(self) -> list[NotificationEvent]:
        """Expose events (useful for tests when using in-memory backend)."""
        return self._events

    async def notify(self, customer_id: UUID, event_kind: str, payload: Mapping[str, Any]) -> bool:
        if self._backend is None:
            return False

        store = get_loyalty_store()
        try:
            customer = await self._db.get(Customer, customer_id)
            if customer is None or not customer.opted_in:
                return False
            message = render_loyalty_event(event_kind, payload, customer_name=customer.first_name)
            metadata = {"event": event_kind, "tenant_id": str(customer.tenant_id)}
            await self._backend.send_message(customer.phone_number, message.text_body, metadata=metadata)
        except Exception as exc:  # noqa: BLE001
            store.record_notification(event_kind, delivered=False)
            logger.warning(
                "Loyalty notification failed",
                customer_id=str(customer_id),
                event_kind=event_kind,
                error=str(exc),
            )
            return False

        store.record_notification(event_kind, delivered=True)
        self._events.append(
            NotificationEvent(
                recipient=customer.phone_number,
                title=message.title,
                body_text=message.text_body,
                event_type=event_kind,
                metadata={key: value for key, value in payload.items()},
            )
        )
        logger.info("Loyalty notification sent", customer_id=str(customer_id), event_kind=event_kind)
        return True

    def _build_default_backend(self) -> Optional[ChatBackend]:
        settings = get_settings()
        if not settings.notification_webhook_url:
            return None
        return WebhookChatBackend(
            url=settings.notification_webhook_url,
            token=settings.notification_webhook_token,
            timeout_seconds=settings.notification_timeout_seconds,
        )


async def dispatch_loyalty_event(
    notifier: Notifier,
    config: TenantConfigProvider,
    *,
    tenant_id: UUID,
    customer_id: UUID,
    event_kind: str,
    payload: Mapping[str, Any],
) -> bool:
    """Notify when the tenant's preferences allow it; never raises."""

    try:
        if not await config.notify_preferences_enabled(tenant_id, event_kind):
            return False
        return await notifier.notify(customer_id, event_kind, payload)
    except Exception as exc:  # noqa: BLE001
        logger.warning(
            "Loyalty notification dispatch failed",
            tenant_id=str(tenant_id),
            customer_id=str(customer_id),
            event_kind=event_kind,
            error=str(exc),
        )
        return False


__all__ = ["NotificationEvent", "NotificationService", "Notifier", "dispatch_loyalty_event"]

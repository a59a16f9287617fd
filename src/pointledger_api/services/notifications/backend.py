"""Outbound chat-message backends."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, List, Optional, Protocol

import httpx


class ChatBackend(Protocol):
    """Minimal protocol for delivering a message to a chat identity."""

    async def send_message(
        self,
        recipient: str,
        body_text: str,
        *,
        metadata: Optional[dict[str, Any]] = None,
    ) -> None:
        ...


class WebhookChatBackend:
    """Hand messages to the channel gateway over HTTP.

    The gateway owns templates, encryption and provider delivery; this backend
    only posts ``{"to", "text", "metadata"}`` and raises on non-2xx.
    """

    def __init__(
        self,
        *,
        url: str,
        token: str | None = None,
        timeout_seconds: float = 5.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._url = url
        self._token = token
        self._timeout = timeout_seconds
        self._client = client

    async def send_message(
        self,
        recipient: str,
        body_text: str,
        *,
        metadata: Optional[dict[str, Any]] = None,
    ) -> None:
        headers = {"Authorization": f"Bearer {self._token}"} if self._token else {}
        payload = {"to": recipient, "text": body_text, "metadata": metadata or {}}
        if self._client is not None:
            response = await self._client.post(self._url, json=payload, headers=headers, timeout=self._timeout)
            response.raise_for_status()
            return
        async with httpx.AsyncClient(timeout=self._timeout) as client:
            response = await client.post(self._url, json=payload, headers=headers)
            response.raise_for_status()


@dataclass
class InMemoryChatBackend:
    """Stores outbound messages for inspection in tests."""

    sent_messages: List[dict[str, Any]]

    def __init__(self) -> None:
        self.sent_messages = []

    async def send_message(
        self,
        recipient: str,
        body_text: str,
        *,
        metadata: Optional[dict[str, Any]] = None,
    ) -> None:
        self.sent_messages.append(
            {
                "recipient": recipient,
                "body": body_text,
                "metadata": metadata or {},
            }
        )


__all__ = ["ChatBackend", "InMemoryChatBackend", "WebhookChatBackend"]

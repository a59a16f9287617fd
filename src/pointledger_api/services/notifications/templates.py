"""Plain-text message bodies for loyalty events."""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Mapping


@dataclass
class RenderedMessage:
    title: str
    text_body: str


def _format_currency(amount: Any, currency: str | None) -> str:
    symbols = {
        "EUR": "€",
        "USD": "$",
        "GBP": "£",
        "NGN": "₦",
    }
    code = (currency or "").upper()
    try:
        numeric = f"{Decimal(str(amount)):,.2f}"
    except (InvalidOperation, ValueError):
        numeric = str(amount)
    symbol = symbols.get(code, "")
    return f"{symbol}{numeric}" if symbol else f"{numeric} {code}".strip()


def _greeting(name: str | None) -> str:
    return f"Hi {name}," if name else "Hi,"


def _purchase_recorded(payload: Mapping[str, Any], name: str | None) -> RenderedMessage:
    amount = _format_currency(payload.get("amount"), payload.get("currency"))
    points = int(payload.get("points", 0) or 0)
    lines = [_greeting(name), f"Your purchase of {amount} at {payload.get('tenant_name', 'the store')} was recorded."]
    if points:
        lines.append(f"You earned {points} points. New balance: {payload.get('balance', 0)} points.")
    return RenderedMessage(title="Purchase recorded", text_body="\n".join(lines))


def _claim_submitted(payload: Mapping[str, Any], name: str | None) -> RenderedMessage:
    amount = _format_currency(payload.get("amount"), payload.get("currency"))
    body = f"{_greeting(name)}\nWe received your purchase claim for {amount}. The store will review it within 48 hours."
    return RenderedMessage(title="Claim received", text_body=body)


def _claim_approved(payload: Mapping[str, Any], name: str | None) -> RenderedMessage:
    body = (
        f"{_greeting(name)}\nYour purchase claim was approved and {payload.get('points', 0)} points were added. "
        f"New balance: {payload.get('balance', 0)} points."
    )
    return RenderedMessage(title="Claim approved", text_body=body)


def _claim_rejected(payload: Mapping[str, Any], name: str | None) -> RenderedMessage:
    body = f"{_greeting(name)}\nYour purchase claim was not approved. Reason: {payload.get('reason', 'not provided')}."
    return RenderedMessage(title="Claim rejected", text_body=body)


def _redemption_created(payload: Mapping[str, Any], name: str | None) -> RenderedMessage:
    body = (
        f"{_greeting(name)}\nYou redeemed {payload.get('points', 0)} points for {payload.get('reward_name', 'a reward')}.\n"
        f"Show code {payload.get('code')} in store within 24 hours. Remaining balance: {payload.get('balance', 0)} points."
    )
    return RenderedMessage(title="Reward redeemed", text_body=body)


def _redemption_fulfilled(payload: Mapping[str, Any], name: str | None) -> RenderedMessage:
    body = f"{_greeting(name)}\nEnjoy your {payload.get('reward_name', 'reward')}! Redemption {payload.get('code')} is complete."
    return RenderedMessage(title="Reward collected", text_body=body)


def _redemption_cancelled(payload: Mapping[str, Any], name: str | None) -> RenderedMessage:
    body = (
        f"{_greeting(name)}\nRedemption {payload.get('code')} was cancelled and {payload.get('points', 0)} points "
        f"were returned to your balance."
    )
    return RenderedMessage(title="Redemption cancelled", text_body=body)


def _redemption_expired(payload: Mapping[str, Any], name: str | None) -> RenderedMessage:
    lines = [_greeting(name), f"Redemption {payload.get('code')} expired before it was collected."]
    if payload.get("refunded"):
        lines.append(f"{payload.get('points', 0)} points were returned to your balance.")
    return RenderedMessage(title="Redemption expired", text_body="\n".join(lines))


def _points_expired(payload: Mapping[str, Any], name: str | None) -> RenderedMessage:
    body = (
        f"{_greeting(name)}\n{payload.get('points', 0)} points expired. "
        f"Current balance: {payload.get('balance', 0)} points."
    )
    return RenderedMessage(title="Points expired", text_body=body)


def _points_expiring_soon(payload: Mapping[str, Any], name: str | None) -> RenderedMessage:
    days = int(payload.get("days_until_expiry", 0) or 0)
    when = "today" if days <= 0 else ("tomorrow" if days == 1 else f"in {days} days")
    body = f"{_greeting(name)}\n{payload.get('points', 0)} of your points expire {when}. Redeem them before they're gone!"
    return RenderedMessage(title="Points expiring soon", text_body=body)


def _welcome_bonus(payload: Mapping[str, Any], name: str | None) -> RenderedMessage:
    body = (
        f"{_greeting(name)}\nWelcome to {payload.get('tenant_name', 'our loyalty programme')}! "
        f"You've received {payload.get('points', 0)} bonus points."
    )
    return RenderedMessage(title="Welcome bonus", text_body=body)


_RENDERERS: dict[str, Callable[[Mapping[str, Any], str | None], RenderedMessage]] = {
    "purchase-recorded": _purchase_recorded,
    "claim-submitted": _claim_submitted,
    "claim-approved": _claim_approved,
    "claim-rejected": _claim_rejected,
    "redemption-created": _redemption_created,
    "redemption-fulfilled": _redemption_fulfilled,
    "redemption-cancelled": _redemption_cancelled,
    "redemption-expired": _redemption_expired,
    "points-expired": _points_expired,
    "points-expiring-soon": _points_expiring_soon,
    "welcome-bonus": _welcome_bonus,
}

EVENT_KINDS = frozenset(_RENDERERS)


def render_loyalty_event(event_kind: str, payload: Mapping[str, Any], *, customer_name: str | None = None) -> RenderedMessage:
    renderer = _RENDERERS.get(event_kind)
    if renderer is None:
        raise ValueError(f"Unsupported loyalty event: {event_kind}")
    return renderer(payload, customer_name)


__all__ = ["EVENT_KINDS", "RenderedMessage", "render_loyalty_event"]

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass
from threading import Lock
from typing import Dict


@dataclass
class LoyaltySnapshot:
    ledger: Dict[str, int]
    redemptions: Dict[str, int]
    claims: Dict[str, int]
    expiry: Dict[str, int]
    failures: Dict[str, int]
    notifications: Dict[str, Dict[str, int]]

    def as_dict(self) -> Dict[str, object]:
        return {
            "ledger": dict(self.ledger),
            "redemptions": dict(self.redemptions),
            "claims": dict(self.claims),
            "expiry": dict(self.expiry),
            "failures": dict(self.failures),
            "notifications": {key: dict(value) for key, value in self.notifications.items()},
        }


class LoyaltyObservabilityStore:
    """Collect ledger and workflow telemetry for dashboards and alerting."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._ledger: Dict[str, int] = defaultdict(int)
        self._redemptions: Dict[str, int] = defaultdict(int)
        self._claims: Dict[str, int] = defaultdict(int)
        self._expiry: Dict[str, int] = defaultdict(int)
        self._failures: Dict[str, int] = defaultdict(int)
        self._notifications_delivered: Dict[str, int] = defaultdict(int)
        self._notifications_failed: Dict[str, int] = defaultdict(int)

    def record_ledger_event(self, transaction_type: str, points: int) -> None:
        with self._lock:
            self._ledger[f"{transaction_type}:count"] += 1
            self._ledger[f"{transaction_type}:points"] += points

    def record_redemption_event(self, event: str) -> None:
        with self._lock:
            self._redemptions[event] += 1

    def record_claim_event(self, event: str) -> None:
        with self._lock:
            self._claims[event] += 1

    def record_expiry_sweep(self, *, processed: int, points: int) -> None:
        with self._lock:
            self._expiry["runs"] += 1
            self._expiry["transactions_expired"] += processed
            self._expiry["points_expired"] += points

    def record_expiry_warning(self, customers: int) -> None:
        with self._lock:
            self._expiry["warning_runs"] += 1
            self._expiry["customers_warned"] += customers

    def record_failure(self, operation: str, code: str) -> None:
        with self._lock:
            self._failures[f"{operation}:{code}"] += 1

    def record_notification(self, event_kind: str, *, delivered: bool) -> None:
        with self._lock:
            if delivered:
                self._notifications_delivered[event_kind] += 1
            else:
                self._notifications_failed[event_kind] += 1

    def snapshot(self) -> LoyaltySnapshot:
        with self._lock:
            return LoyaltySnapshot(
                ledger=dict(self._ledger),
                redemptions=dict(self._redemptions),
                claims=dict(self._claims),
                expiry=dict(self._expiry),
                failures=dict(self._failures),
                notifications={
                    "delivered": dict(self._notifications_delivered),
                    "failed": dict(self._notifications_failed),
                },
            )

    def reset(self) -> None:
        with self._lock:
            self._ledger.clear()
            self._redemptions.clear()
            self._claims.clear()
            self._expiry.clear()
            self._failures.clear()
            self._notifications_delivered.clear()
            self._notifications_failed.clear()


_STORE = LoyaltyObservabilityStore()


def get_loyalty_store() -> LoyaltyObservabilityStore:
    return _STORE


__all__ = ["get_loyalty_store", "LoyaltyObservabilityStore", "LoyaltySnapshot"]

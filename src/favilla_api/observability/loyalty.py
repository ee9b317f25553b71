from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from threading import Lock
from typing import Any, Dict, Iterable, List


@dataclass
class LoyaltySnapshot:
    ledger: Dict[str, Dict[str, int]]
    rejections: Dict[str, int]
    vouchers: Dict[str, int]
    reconciliation: Dict[str, Any] = field(default_factory=dict)

    def as_dict(self) -> Dict[str, object]:
        return {
            "ledger": {key: dict(value) for key, value in self.ledger.items()},
            "rejections": dict(self.rejections),
            "vouchers": dict(self.vouchers),
            "reconciliation": dict(self.reconciliation),
        }


class LoyaltyObservabilityStore:
    """Counters for ledger writes, rejected operations, vouchers and drift checks."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._entries: Dict[str, int] = defaultdict(int)
        self._replays: Dict[str, int] = defaultdict(int)
        self._rejections: Dict[str, int] = defaultdict(int)
        self._vouchers: Dict[str, int] = defaultdict(int)
        self._reconciliation: Dict[str, Any] = {}

    def record_entry(self, kind: str) -> None:
        with self._lock:
            self._entries[kind] += 1

    def record_replay(self, kind: str) -> None:
        with self._lock:
            self._replays[kind] += 1

    def record_rejection(self, code: str) -> None:
        with self._lock:
            self._rejections[code] += 1

    def record_voucher_event(self, event: str, count: int = 1) -> None:
        with self._lock:
            self._vouchers[event] += count

    def record_reconciliation(self, *, checked: int, drifting_accounts: Iterable[str]) -> None:
        drifting: List[str] = list(drifting_accounts)
        with self._lock:
            self._reconciliation = {
                "last_run_at": datetime.now(timezone.utc).isoformat(),
                "accounts_checked": checked,
                "drift_count": len(drifting),
                "drifting_accounts": drifting,
            }

    def snapshot(self) -> LoyaltySnapshot:
        with self._lock:
            ledger = {"entries": dict(self._entries), "replays": dict(self._replays)}
            rejections = dict(self._rejections)
            vouchers = dict(self._vouchers)
            reconciliation = dict(self._reconciliation)
        return LoyaltySnapshot(
            ledger=ledger,
            rejections=rejections,
            vouchers=vouchers,
            reconciliation=reconciliation,
        )

    def reset(self) -> None:
        with self._lock:
            self._entries.clear()
            self._replays.clear()
            self._rejections.clear()
            self._vouchers.clear()
            self._reconciliation = {}


_STORE = LoyaltyObservabilityStore()


def get_loyalty_store() -> LoyaltyObservabilityStore:
    return _STORE


__all__ = ["get_loyalty_store", "LoyaltyObservabilityStore", "LoyaltySnapshot"]

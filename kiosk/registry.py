import logging
import threading
import time
from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from typing import Callable, Optional

logger = logging.getLogger(__name__)


def _now_ms() -> int:
    return int(time.time() * 1000)


def to_minor_units(amount) -> int:
    """Decimal major units (R$ 25.50) to integer minor units (2550)."""
    return int((Decimal(str(amount)) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def reference_key(store_id: str, reference: str) -> str:
    return f"{store_id}:ref:{reference}"


def amount_key(store_id: str, amount_minor_units: int) -> str:
    return f"{store_id}:amount:{int(amount_minor_units)}"


@dataclass
class ConfirmedPayment:
    payment_id: str
    amount: Decimal
    status: str
    confirmed_at_ms: int


class PaymentIntentRegistry:
    """Confirmed payments pushed in by webhooks, keyed per store by reference or amount.

    Lives for the whole process: built at startup, swept by a scheduled job,
    cleared on shutdown. Entries are only visible to this process; several
    API instances would need a shared keyed store with expiry instead.
    """

    def __init__(self, clock: Callable[[], int] = _now_ms):
        self._clock = clock
        self._entries = {}
        self._lock = threading.Lock()

    def record_confirmed(self, key: str, payment_id, amount, status: str) -> ConfirmedPayment:
        entry = ConfirmedPayment(
            payment_id=str(payment_id),
            amount=Decimal(str(amount)),
            status=status,
            confirmed_at_ms=self._clock(),
        )
        with self._lock:
            self._entries[key] = entry
        logger.info("Registry: %s confirmed by payment %s", key, payment_id)
        return entry

    def lookup(self, key: str) -> Optional[ConfirmedPayment]:
        with self._lock:
            return self._entries.get(key)

    def discard(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def sweep_expired(self, retention_ms: int) -> int:
        """Drop entries confirmed more than ``retention_ms`` ago. Returns how many."""
        cutoff = self._clock() - retention_ms
        with self._lock:
            expired = [key for key, entry in self._entries.items() if entry.confirmed_at_ms < cutoff]
            for key in expired:
                del self._entries[key]
        if expired:
            logger.info("Registry: evicted %d expired entries", len(expired))
        return len(expired)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self):
        with self._lock:
            return len(self._entries)

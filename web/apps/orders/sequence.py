"""Human readable order numbers backed by an atomic per-day counter.

Order numbers look like ``BL250815023``: ``BL``, two-digit year, month
and day, then the daily sequence zero-padded to three digits. The
sequence lives in the cache under ``order_sequence:<YYYYMMDD>`` and is
incremented with the cache's atomic ``incr``.

When the cache is unavailable the generator falls back to a random
number between 1 and 999. That is best effort only: duplicates become
possible, so callers must stage with set-if-absent and rely on the
unique constraint on ``order_number`` to retry.
"""

import logging
import random
from dataclasses import dataclass
from datetime import date, datetime
from typing import Optional

from django.conf import settings
from django.core.cache import caches
from django.utils import timezone

logger = logging.getLogger("orders.sequence")

PREFIX = "BL"
SEQUENCE_KEY = "order_sequence:{date_key}"


@dataclass(frozen=True)
class IssuedOrderNumber:
    order_number: str
    sequence: int
    fallback: bool = False


def format_order_number(day: date, sequence: int) -> str:
    return f"{PREFIX}{day:%y%m%d}{sequence:03d}"


class OrderNumberGenerator:
    """Issues order numbers from a cache-backed daily counter.

    Args:
        cache: Django cache used for the counter. Defaults to the
            ``default`` cache.
        ttl: Counter expiry in seconds.
    """

    def __init__(self, cache=None, ttl: int | None = None, rng: Optional[random.Random] = None):
        self.cache = cache if cache is not None else caches["default"]
        self.ttl = ttl or getattr(settings, "ORDERS_SEQUENCE_TTL_SECS", 24 * 60 * 60)
        self._rng = rng or random.SystemRandom()

    def _increment(self, date_key: str) -> tuple[int, bool]:
        key = SEQUENCE_KEY.format(date_key=date_key)
        try:
            # add() is set-if-absent, so only the first caller of the day seeds the key
            self.cache.add(key, 0, timeout=self.ttl)
            return int(self.cache.incr(key)), False
        except Exception:
            seq = self._rng.randint(1, 999)
            logger.warning(
                "order sequence fallback",
                extra={"sequence_key": key, "fallback_sequence": seq},
                exc_info=True,
            )
            return seq, True

    def next_sequence(self, date_key: str) -> int:
        """Return the next sequence number for a day bucket (starts at 1)."""
        seq, _ = self._increment(date_key)
        return seq

    def issue(self, now: Optional[datetime] = None) -> IssuedOrderNumber:
        """Issue a new order number for the local day of ``now``."""
        day = timezone.localdate(now) if now is not None else timezone.localdate()
        seq, fallback = self._increment(f"{day:%Y%m%d}")
        return IssuedOrderNumber(format_order_number(day, seq), seq, fallback)

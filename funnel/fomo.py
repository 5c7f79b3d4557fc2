import random
import time
from typing import Callable, Optional

from loguru import logger

URGENT_MS = 60_000


def _now_ms() -> float:
    return time.time() * 1000


class FomoCounter:
    """Randomized "claimed recently" counter with an offer countdown window."""

    def __init__(
        self,
        min_count: int = 200,
        max_count: int = 400,
        duration_ms: int = 15 * 60_000,
        auto_reset: bool = False,
        label: str = "claimed in the last hour",
        on_expire: Optional[Callable[[], None]] = None,
        rng: Optional[random.Random] = None,
        clock: Optional[Callable[[], float]] = None,
    ):
        low, high = min(min_count, max_count), max(min_count, max_count)
        self.count = (rng or random.Random()).randint(low, high)
        self.duration_ms = duration_ms
        self.auto_reset = auto_reset
        self.label_text = label
        self.on_expire = on_expire
        self._clock = clock or _now_ms
        self._ends_at = self._clock() + duration_ms
        self._expired = False

    @property
    def expired(self) -> bool:
        return self._expired

    def remaining(self, now: Optional[float] = None) -> int:
        """Milliseconds left in the offer window; fires on_expire once per window."""
        now = self._clock() if now is None else now
        left = max(0, int(self._ends_at - now))
        if left == 0 and not self._expired:
            logger.info("Offer window expired")
            if self.on_expire:
                self.on_expire()
            if self.auto_reset:
                self._ends_at = now + self.duration_ms
                return self.duration_ms
            self._expired = True
        return left

    def urgent(self, now: Optional[float] = None) -> bool:
        return self.remaining(now) <= URGENT_MS

    def label(self, now: Optional[float] = None) -> str:
        left = self.remaining(now)
        minutes, seconds = divmod(left // 1000, 60)
        return f"{self.count} {self.label_text} • {minutes:02d}:{seconds:02d}"

import asyncio
import random
import time
from typing import Callable, List, Optional, Sequence

from loguru import logger

from funnel.state import DealItem, ScanState, ScanStep

DEFAULT_TOTAL_MS = 6000
MIN_STEP_MS = 800
MAX_LOCALITIES = 6
LOCALITY_SHARE = 0.6

TAIL_PHRASES = ("Items found near you ✅", "Preparing your results… 🔓")


def _monotonic_ms() -> float:
    return time.monotonic() * 1000


def locality_phrases(labels: Sequence[str], rng: Optional[random.Random] = None) -> List[str]:
    """Dedupe, shuffle and cap locality labels, then phrase them as status lines."""
    rng = rng or random.Random()
    unique = list(dict.fromkeys(label.strip() for label in labels or [] if label and label.strip()))
    rng.shuffle(unique)
    return [f"Checking {label}…" for label in unique[:MAX_LOCALITIES]]


def build_scan_steps(labels: Sequence[str], total_ms: int, rng: Optional[random.Random] = None) -> List[ScanStep]:
    """
    Build the ordered scan steps for a fixed-length scan.

    Locality checks share roughly 60% of the total and the two tail phrases
    split the rest. Every step gets at least the floor duration, where the
    floor shrinks when the total is too short to give each step MIN_STEP_MS.

    Args:
        labels: Locality labels (city names), possibly empty or repeated
        total_ms: Total scan duration in milliseconds
        rng: Random source used to order the labels

    Returns:
        Steps whose durations sum to total_ms exactly
    """
    if total_ms <= 0:
        raise ValueError(f"total_ms must be positive, got {total_ms}")

    cities = locality_phrases(labels, rng)
    phrases = cities + list(TAIL_PHRASES)
    floor = min(MIN_STEP_MS, total_ms // len(phrases))
    tail_floor = floor * len(TAIL_PHRASES)

    if cities:
        city_time = max(floor * len(cities), round(total_ms * LOCALITY_SHARE))
        city_time = min(city_time, total_ms - tail_floor)
        city_step = city_time // len(cities)
    else:
        city_time = 0
        city_step = 0
    tail_step = (total_ms - city_time) // len(TAIL_PHRASES)

    durations = [city_step] * len(cities) + [tail_step] * len(TAIL_PHRASES)
    # remainder from integer division goes to the last step
    durations[-1] += total_ms - sum(durations)

    steps = []
    elapsed = 0
    for label, duration in zip(phrases, durations):
        elapsed += duration
        steps.append(ScanStep(label=label, duration_ms=duration, cumulative_end_ms=elapsed))
    return steps


def ease_out_cubic(elapsed_ms: float, total_ms: int) -> float:
    t = min(1.0, max(0.0, elapsed_ms / total_ms))
    return 1 - (1 - t) ** 3


class ScanScheduler:
    """Frame-driven simulated inventory scan with a hard wall-clock budget."""

    def __init__(
        self,
        labels: Sequence[str],
        on_done: Callable[[], None],
        total_ms: int = DEFAULT_TOTAL_MS,
        item: Optional[DealItem] = None,
        rng: Optional[random.Random] = None,
        clock: Optional[Callable[[], float]] = None,
    ):
        self.total_ms = total_ms
        self.item = item
        self._steps = build_scan_steps(labels, total_ms, rng)
        self._on_done = on_done
        self._clock = clock or _monotonic_ms
        self._started_at: Optional[float] = None
        self._state = ScanState()
        self._done = False
        self._cancelled = False

    @property
    def steps(self) -> List[ScanStep]:
        return list(self._steps)

    @property
    def state(self) -> ScanState:
        return ScanState(self._state.progress, self._state.active_step_index, self._state.elapsed_ms)

    @property
    def done(self) -> bool:
        return self._done

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def current_label(self) -> str:
        return self._steps[self._state.active_step_index].label

    def start(self, now: Optional[float] = None) -> None:
        if self._cancelled or self._started_at is not None:
            return
        self._started_at = self._clock() if now is None else now
        logger.info(f"Scan started: {len(self._steps)} steps over {self.total_ms}ms")

    def tick(self, now: Optional[float] = None) -> Optional[ScanState]:
        """
        Advance the scan to `now` and return a snapshot of its state.

        Returns None once cancelled. The completion callback runs on the first
        tick at or past the total duration and never again.
        """
        if self._cancelled:
            return None
        now = self._clock() if now is None else now
        if self._started_at is None:
            self.start(now)

        elapsed = max(0, int(now - self._started_at))
        progress = ease_out_cubic(elapsed, self.total_ms)
        boundaries = sum(1 for step in self._steps if step.cumulative_end_ms <= elapsed)
        index = min(len(self._steps) - 1, boundaries)

        # out-of-order frames never move the scan backwards
        self._state = ScanState(
            progress=max(self._state.progress, progress),
            active_step_index=max(self._state.active_step_index, index),
            elapsed_ms=max(self._state.elapsed_ms, elapsed),
        )

        if elapsed >= self.total_ms and not self._done:
            self._done = True
            logger.info("Scan complete")
            self._on_done()
        return self.state

    def cancel(self) -> None:
        if not self._cancelled and not self._done:
            logger.info(f"Scan cancelled at {self._state.elapsed_ms}ms")
        self._cancelled = True

    async def run(self, frame_ms: int = 16) -> None:
        """Drive ticks from the event loop until the scan completes or is cancelled."""
        self.start()
        while not self._done and not self._cancelled:
            self.tick()
            if self._done:
                break
            await asyncio.sleep(frame_ms / 1000)

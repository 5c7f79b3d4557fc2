import asyncio
import os
import random
from concurrent.futures import Future, ThreadPoolExecutor, wait
from functools import partial
from typing import Any, Awaitable, Callable, Optional, Set

import httpx
from loguru import logger

from funnel import transitions
from funnel.errors import DataFetchError, ValidationError
from funnel.fomo import FomoCounter
from funnel.scheduler import DEFAULT_TOTAL_MS, ScanScheduler
from funnel.state import ContactLead, DealItem, FunnelStage, FunnelState, ScanState

DEFAULT_CONVERSION_URL = "https://welcome.example.com"

# Runs background coroutines for callers that have no event loop of their own
_detached = ThreadPoolExecutor(max_workers=4, thread_name_prefix="funnel-bg")

OnResult = Callable[[Optional[BaseException], Any], None]


def _run_detached(coro: Awaitable, on_result: OnResult) -> None:
    try:
        result = asyncio.run(coro)
    except Exception as e:
        on_result(e, None)
        return
    on_result(None, result)


def handoff_url(destination: str, postal_code: str, source: str) -> str:
    """Outbound conversion URL, tagged with postal code and traffic source."""
    return str(httpx.URL(destination).copy_merge_params({"zip": postal_code, "source": source}))


class FunnelController:
    """
    Owns one visitor's funnel run.

    State changes go through the pure functions in funnel.transitions; the
    controller adds the side effects: the single active ScanScheduler, the
    fire-and-forget lead relay and analytics events.
    """

    def __init__(
        self,
        relay=None,
        items_source=None,
        zip_source=None,
        analytics=None,
        total_ms: Optional[int] = None,
        conversion_url: Optional[str] = None,
        source: Optional[str] = None,
        rng: Optional[random.Random] = None,
        clock: Optional[Callable[[], float]] = None,
    ):
        if relay is None:
            from tools.webhook import webhook_relay as relay
        if items_source is None:
            from tools.items import items_client as items_source
        if zip_source is None:
            from tools.zipinfo import zip_client as zip_source
        if analytics is None:
            from tools.analytics import analytics

        self.relay = relay
        self.items_source = items_source
        self.zip_source = zip_source
        self.analytics = analytics
        self.total_ms = total_ms or int(os.getenv("SCAN_TOTAL_MS", DEFAULT_TOTAL_MS))
        self.conversion_url = conversion_url or os.getenv("CONVERSION_URL", DEFAULT_CONVERSION_URL)
        self.source = source or os.getenv("TRAFFIC_SOURCE", transitions.DEFAULT_SOURCE)
        self.rng = rng or random.Random()
        self.clock = clock

        self.state: FunnelState = transitions.initial_state()
        self.scheduler: Optional[ScanScheduler] = None
        self.offer: Optional[FomoCounter] = None
        self._tasks: Set[asyncio.Task] = set()
        self._futures: Set[Future] = set()
        self._torn_down = False

    @property
    def stage(self) -> FunnelStage:
        return self.state["stage"]

    @property
    def ready(self) -> bool:
        return self.state.get("ready", False)

    # -- input-pending -------------------------------------------------

    def set_postal_code(self, raw: Any) -> bool:
        """
        Normalize and store the postal code.

        Returns:
            True if the funnel may proceed to capture, False if the caller
            should collect the postal code again (e.g. redirect to input)
        """
        previous = self.state.get("postal_code")
        self.state = transitions.set_postal_code(self.state, raw)
        if self.state["postal_code"] != previous or not self.ready:
            self._cancel_scan()
            self.offer = None
        return self.ready

    async def refresh_inventory(self) -> FunnelState:
        """Load items and locality labels for the current postal code; failures become empty data."""
        if not self.ready:
            return self.state

        postal_code = self.state["postal_code"]
        items_result, labels_result = await asyncio.gather(
            self.items_source.fetch_items(postal_code),
            self.zip_source.locality_labels(postal_code),
            return_exceptions=True,
        )

        if self.state.get("postal_code") != postal_code:
            logger.info(f"Postal code changed during inventory load, discarding data for {postal_code}")
            return self.state

        errors = []
        items, count, labels = [], 0, []

        if isinstance(items_result, BaseException):
            errors.append(self._fetch_failed("items", postal_code, items_result))
        else:
            items = items_result.get("items", [])
            count = items_result.get("count", len(items))

        if isinstance(labels_result, BaseException):
            errors.append(self._fetch_failed("zip", postal_code, labels_result))
        else:
            labels = labels_result

        self.state = transitions.apply_inventory(self.state, items, count, labels, errors)
        logger.info(f"Inventory loaded for {postal_code}: {self.state['item_count']} items, {len(labels)} localities")
        return self.state

    def _fetch_failed(self, source: str, postal_code: str, exc: BaseException) -> str:
        if not isinstance(exc, DataFetchError):
            exc = DataFetchError(f"{source} fetch failed for {postal_code}: {exc}", source=source)
        logger.error(f"Data fetch failed, using empty {source} data: {exc}")
        return f"{source}_fetch_failed: {exc}"

    # -- capture -------------------------------------------------------

    def submit_contact(self, email: Any, source: Optional[str] = None) -> ContactLead:
        """
        Validate the email, start the scan and relay the lead in the background.

        Raises:
            ValidationError: malformed email; the funnel stays at capture
        """
        try:
            self.state = transitions.submit_contact(self.state, email, source or self.source)
        except ValidationError as e:
            self.state = transitions.capture_failed(self.state, e)
            logger.info(f"Contact capture rejected: {e.message}")
            raise

        lead = self.state["lead"]
        logger.info(f"Lead captured for {lead.email} ({lead.postal_code})")
        self._start_scan(None)
        self._dispatch_lead(lead)
        self._track("lead_captured", {"zip": lead.postal_code, "source": lead.source})
        return lead

    def _dispatch_lead(self, lead: ContactLead) -> None:
        self._spawn(self.relay.send(lead.to_payload()), partial(self._relay_done, lead))

    def _track(self, name: str, params: dict) -> None:
        self._spawn(self.analytics.track(name, params), partial(self._track_done, name))

    def _spawn(self, coro: Awaitable, on_result: OnResult) -> None:
        """
        Start a coroutine without waiting for it.

        Inside an event loop it becomes a task on that loop; without one it
        runs on the detached worker pool. Either way the outcome only reaches
        `on_result`.
        """
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            loop = None

        if loop is not None:
            task = loop.create_task(coro)
            self._tasks.add(task)
            task.add_done_callback(partial(self._task_done, on_result))
            return

        future = _detached.submit(_run_detached, coro, on_result)
        self._futures.add(future)
        future.add_done_callback(self._futures.discard)

    def _task_done(self, on_result: OnResult, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            on_result(asyncio.CancelledError(), None)
            return
        exc = task.exception()
        on_result(exc, None if exc is not None else task.result())

    def _relay_done(self, lead: ContactLead, exc: Optional[BaseException], delivered: Any) -> None:
        if isinstance(exc, asyncio.CancelledError):
            logger.warning(f"Lead relay cancelled for {lead.email}")
        elif exc is not None:
            logger.error(f"Lead relay failed for {lead.email}: {exc}")
        elif delivered:
            logger.info(f"Lead relayed for {lead.email}")
        else:
            logger.warning(f"Lead not relayed for {lead.email} (webhook not configured)")

    def _track_done(self, name: str, exc: Optional[BaseException], recorded: Any) -> None:
        if exc is not None:
            logger.error(f"Analytics event {name} failed: {exc}")

    async def drain(self) -> None:
        """Wait for in-flight relay and analytics calls; used on shutdown and in tests."""
        pending = list(self._tasks) + [asyncio.wrap_future(f) for f in list(self._futures)]
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    def flush(self, timeout: Optional[float] = None) -> None:
        """Blocking counterpart of drain() for callers without an event loop."""
        wait(list(self._futures), timeout=timeout)

    # -- scanning / results ----------------------------------------------

    def select_item(self, item: DealItem) -> None:
        self.state = transitions.select_item(self.state, item)
        logger.info(f"Item selected: {item.get('id')}")
        self._track("check_deal", {"item": item.get("id"), "zip": self.state["postal_code"]})
        self._start_scan(item)

    def on_scan_complete(self) -> None:
        self.state = transitions.complete_scan(self.state)
        if self.offer is None:
            self.offer = FomoCounter(rng=self.rng, clock=self.clock)
        logger.info(f"Scan finished, showing {self.state.get('item_count', 0)} items")

    def _start_scan(self, item: Optional[DealItem]) -> None:
        self._cancel_scan()
        self.scheduler = ScanScheduler(
            self.state.get("locality_labels", []),
            on_done=partial(self._scan_finished, self.state["scan_id"]),
            total_ms=self.total_ms,
            item=item,
            rng=self.rng,
            clock=self.clock,
        )

    def _scan_finished(self, scan_id: int) -> None:
        if self._torn_down or scan_id != self.state.get("scan_id") or self.stage != FunnelStage.SCANNING:
            logger.warning(f"Ignoring completion from stale scan {scan_id}")
            return
        self.on_scan_complete()

    def _cancel_scan(self) -> None:
        if self.scheduler is not None:
            self.scheduler.cancel()
            self.scheduler = None

    def tick(self, now: Optional[float] = None) -> Optional[ScanState]:
        """Forward an animation frame to the active scan."""
        if self._torn_down or self.scheduler is None:
            return None
        return self.scheduler.tick(now)

    async def run_scan(self, frame_ms: int = 16) -> None:
        if self.scheduler is not None and not self._torn_down:
            await self.scheduler.run(frame_ms)

    # -- converting ------------------------------------------------------

    def convert(self, source: Optional[str] = None) -> str:
        """Hand the visitor off to the external destination; returns the URL."""
        destination = handoff_url(self.conversion_url, self.state.get("postal_code", ""), source or self.source)
        self.state = transitions.convert(self.state, destination)
        self._track("modal_open", {"src": source or self.source, "zip": self.state["postal_code"]})
        logger.info(f"Converting visitor to {destination}")
        return destination

    def teardown(self) -> None:
        """Stop the scan; no ticks or completion callbacks after this."""
        self._torn_down = True
        self._cancel_scan()
        logger.info("Funnel torn down")

    def snapshot(self) -> dict:
        view = transitions.snapshot(self.state)
        if self.scheduler is not None and not self.scheduler.cancelled:
            scan = self.scheduler.state
            view["scan"] = {
                "progress": scan.progress,
                "step": self.scheduler.current_label,
                "elapsed_ms": scan.elapsed_ms,
            }
        if self.offer is not None:
            view["offer"] = {
                "count": self.offer.count,
                "label": self.offer.label(),
                "urgent": self.offer.urgent(),
            }
        return view

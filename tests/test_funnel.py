import pytest
import asyncio
import os
import random
import sys
import time
from unittest.mock import AsyncMock, patch

import httpx
from loguru import logger

# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from funnel import transitions
from funnel.controller import FunnelController, handoff_url
from funnel.errors import DataFetchError, FunnelError, RelayError, ValidationError
from funnel.state import FunnelStage
from funnel.validation import is_email, is_postal_code, normalize_postal_code, parse_postal_code
from tools.analytics import AnalyticsTracker

ITEMS = [
    {"id": "item-1", "name": "Cordless Drill Kit", "price": "$19.00"},
    {"id": "item-2", "name": "Air Fryer 6qt", "price": "$24.00"},
]


class FakeRelay:
    def __init__(self, error=None, gate=None, delay=0):
        self.error = error
        self.gate = gate
        self.delay = delay
        self.payloads = []

    async def send(self, payload):
        if self.gate is not None:
            await self.gate.wait()
        if self.delay:
            await asyncio.sleep(self.delay)
        self.payloads.append(payload)
        if self.error:
            raise self.error
        return True


class FakeItems:
    def __init__(self, error=None):
        self.error = error

    async def fetch_items(self, postal_code):
        if self.error:
            raise self.error
        return {"items": list(ITEMS), "count": len(ITEMS)}


class FakeClock:
    def __init__(self, now=0):
        self.now = now

    def __call__(self):
        return self.now


class FakeZip:
    def __init__(self, error=None):
        self.error = error

    async def locality_labels(self, postal_code):
        if self.error:
            raise self.error
        return ["Beverly Hills", "West Hollywood", "Century City"]


@pytest.fixture
def log_records():
    records = []
    handler_id = logger.add(lambda message: records.append(message.record), level="DEBUG")
    yield records
    logger.remove(handler_id)


class TestValidation:
    """Test postal code and email validation."""

    def test_valid_postal_codes(self):
        for raw in ["90210", " 90210 ", "90-210", "9 0 2 1 0"]:
            assert is_postal_code(raw)
            assert parse_postal_code(raw) == "90210"

    def test_invalid_postal_codes(self):
        for raw in ["", "1234", "123456", "abcde", "abc12", None, "٩٠٢١٠"]:
            assert not is_postal_code(raw)
            with pytest.raises(ValidationError):
                parse_postal_code(raw)

    def test_normalization_keeps_digits_only(self):
        assert normalize_postal_code("abc12") == "12"
        assert normalize_postal_code(None) == ""

    def test_email_shapes(self):
        assert is_email("jane@example.com")
        for bad in ["not-an-email", "jane@example", "jane doe@example.com", "@example.com",
                    "jane@.com", "jane@example.com ", "", None]:
            assert not is_email(bad)


class TestTransitions:
    """Test the pure transition functions."""

    def test_transitions_do_not_mutate_input(self):
        state = transitions.initial_state()
        new_state = transitions.set_postal_code(state, "90210")

        assert state["stage"] == FunnelStage.INPUT_PENDING
        assert state["postal_code"] == ""
        assert new_state["stage"] == FunnelStage.CAPTURE
        assert new_state is not state

    def test_submit_contact_requires_capture_stage(self):
        with pytest.raises(FunnelError):
            transitions.submit_contact(transitions.initial_state(), "jane@example.com")

    def test_submit_contact_builds_lead(self):
        state = transitions.set_postal_code(transitions.initial_state(), "90210")
        new_state = transitions.submit_contact(state, "jane@example.com", source="ads")

        lead = new_state["lead"]
        assert new_state["stage"] == FunnelStage.SCANNING
        assert lead.email == "jane@example.com"
        assert lead.postal_code == "90210"
        assert lead.source == "ads"
        assert lead.to_payload()["zip"] == "90210"
        assert new_state["scan_id"] == state["scan_id"] + 1

    def test_lead_payload_carries_null_contact_fields(self):
        state = transitions.set_postal_code(transitions.initial_state(), "90210")
        lead = transitions.submit_contact(state, "jane@example.com")["lead"]

        payload = lead.to_payload()
        assert set(payload) == {"email", "zip", "name", "phone", "source", "timestamp"}
        assert payload["name"] is None
        assert payload["phone"] is None
        assert payload["source"] == "dashboard"


class TestFunnelController:
    """Test a visitor's path through the funnel."""

    def setup_method(self):
        self.relay = FakeRelay()
        self.analytics = AsyncMock()
        self.controller = self._controller()

    def _controller(self, items=None, zip_source=None, relay=None, analytics=None, clock=None):
        return FunnelController(
            relay=relay or self.relay,
            items_source=items or FakeItems(),
            zip_source=zip_source or FakeZip(),
            analytics=analytics or self.analytics,
            total_ms=6000,
            conversion_url="https://welcome.example.com",
            source="dashboard",
            rng=random.Random(1),
            clock=clock,
        )

    def _finish_scan(self, controller=None):
        controller = controller or self.controller
        controller.tick(0)
        controller.tick(6000)

    def test_valid_postal_code_enables_capture(self):
        assert self.controller.set_postal_code("90210") is True
        assert self.controller.stage == FunnelStage.CAPTURE

    def test_invalid_postal_code_stays_pending(self):
        """abc12 normalizes to 12 and does not advance."""
        assert self.controller.set_postal_code("abc12") is False
        assert self.controller.stage == FunnelStage.INPUT_PENDING
        assert self.controller.state["postal_code"] == "12"

        for raw in ["", "1234", "123456", None]:
            assert self.controller.set_postal_code(raw) is False
            assert self.controller.stage == FunnelStage.INPUT_PENDING

    def test_malformed_email_stays_in_capture(self):
        self.controller.set_postal_code("90210")

        for bad in ["not-an-email", "jane@example", "jane doe@example.com"]:
            with pytest.raises(ValidationError):
                self.controller.submit_contact(bad)
            assert self.controller.stage == FunnelStage.CAPTURE
            assert self.controller.state["error"] == "Invalid email address"

        assert self.relay.payloads == []

        # retry is not blocked
        self.controller.submit_contact("jane@example.com")
        assert self.controller.stage == FunnelStage.SCANNING
        assert self.controller.state["error"] is None

    def test_submit_without_loop_relays_in_background(self):
        self.controller.set_postal_code("90210")
        lead = self.controller.submit_contact("jane@example.com")

        assert self.controller.stage == FunnelStage.SCANNING
        self.controller.flush(timeout=5)
        assert self.relay.payloads == [lead.to_payload()]
        self.analytics.track.assert_any_call("lead_captured", {"zip": "90210", "source": "dashboard"})

    def test_slow_relay_without_loop_does_not_block(self):
        """A caller with no event loop gets control back before the relay finishes."""
        relay = FakeRelay(delay=0.5)
        controller = self._controller(relay=relay)
        controller.set_postal_code("90210")

        started = time.monotonic()
        lead = controller.submit_contact("jane@example.com")
        elapsed = time.monotonic() - started

        assert elapsed < 0.25
        assert controller.stage == FunnelStage.SCANNING

        controller.flush(timeout=5)
        assert relay.payloads == [lead.to_payload()]

    def test_analytics_post_does_not_block_transition(self):
        """A configured tracker posts in the background while the stage advances."""
        posts = []

        async def scenario():
            gate = asyncio.Event()

            async def handler(request):
                await gate.wait()
                posts.append(request)
                return httpx.Response(204)

            transport = httpx.MockTransport(handler)
            real_client = httpx.AsyncClient
            with patch.dict(os.environ, {"GA_MEASUREMENT_ID": "G-TEST", "GA_API_SECRET": "secret"}):
                tracker = AnalyticsTracker()

            with patch("tools.analytics.httpx.AsyncClient",
                       side_effect=lambda **kwargs: real_client(transport=transport, **kwargs)):
                controller = self._controller(analytics=tracker)
                controller.set_postal_code("90210")
                controller.submit_contact("jane@example.com")

                assert controller.stage == FunnelStage.SCANNING
                await asyncio.sleep(0)
                assert posts == []

                gate.set()
                await controller.drain()

        asyncio.run(scenario())

        assert len(posts) == 1
        assert b"lead_captured" in posts[0].content

    def test_relay_does_not_block_transition(self):
        """The stage advances while the relay task is still pending."""
        async def scenario():
            gate = asyncio.Event()
            relay = FakeRelay(gate=gate)
            controller = self._controller(relay=relay)
            controller.set_postal_code("90210")
            controller.submit_contact("jane@example.com")

            assert controller.stage == FunnelStage.SCANNING
            assert relay.payloads == []

            gate.set()
            await controller.drain()
            return relay

        relay = asyncio.run(scenario())
        assert len(relay.payloads) == 1

    def test_relay_failure_is_logged_only(self, log_records):
        async def scenario():
            controller = self._controller(relay=FakeRelay(error=RelayError("Webhook failed with status 502", status=502)))
            controller.set_postal_code("90210")
            controller.submit_contact("jane@example.com")
            await controller.drain()
            return controller

        controller = asyncio.run(scenario())

        assert controller.stage == FunnelStage.SCANNING
        failures = [r for r in log_records if r["level"].name == "ERROR" and "Lead relay failed" in r["message"]]
        assert len(failures) == 1
        assert "jane@example.com" in failures[0]["message"]

    def test_relay_failure_without_loop_is_logged(self, log_records):
        controller = self._controller(relay=FakeRelay(error=RelayError("unreachable")))
        controller.set_postal_code("90210")
        controller.submit_contact("jane@example.com")

        assert controller.stage == FunnelStage.SCANNING
        controller.flush(timeout=5)
        assert any("Lead relay failed" in r["message"] for r in log_records)

    def test_complete_funnel(self):
        """Postal code to conversion hand-off."""
        self.controller.set_postal_code("90210")
        asyncio.run(self.controller.refresh_inventory())
        self.controller.submit_contact("jane@example.com")

        assert len(self.controller.scheduler.steps) == 5
        self._finish_scan()
        assert self.controller.stage == FunnelStage.RESULTS
        assert self.controller.state["item_count"] == 2

        self.controller.select_item(ITEMS[0])
        assert self.controller.stage == FunnelStage.SCANNING
        assert self.controller.scheduler.item == ITEMS[0]
        self.analytics.track.assert_any_call("check_deal", {"item": "item-1", "zip": "90210"})

        self._finish_scan()
        assert self.controller.stage == FunnelStage.RESULTS

        url = self.controller.convert()
        assert self.controller.stage == FunnelStage.CONVERTING
        assert self.controller.state["destination"] == url
        params = httpx.URL(url).params
        assert params["zip"] == "90210"
        assert params["source"] == "dashboard"

    def test_results_show_offer_countdown(self):
        clock = FakeClock(now=1_000)
        controller = self._controller(clock=clock)
        controller.set_postal_code("90210")
        controller.submit_contact("jane@example.com")

        assert "offer" not in controller.snapshot()
        self._finish_scan(controller)

        offer = controller.snapshot()["offer"]
        assert controller.stage == FunnelStage.RESULTS
        assert 200 <= offer["count"] <= 400
        assert offer["label"] == f"{offer['count']} claimed in the last hour • 15:00"
        assert offer["urgent"] is False

        # a re-scan keeps the same offer window
        controller.select_item(ITEMS[0])
        clock.now += 14 * 60_000 + 30_000
        self._finish_scan(controller)
        offer = controller.snapshot()["offer"]
        assert offer["label"].endswith("00:30")
        assert offer["urgent"] is True

        controller.set_postal_code("10001")
        assert "offer" not in controller.snapshot()

    def test_items_failure_degrades_to_empty_results(self):
        controller = self._controller(items=FakeItems(error=RuntimeError("items endpoint down")))
        controller.set_postal_code("90210")
        asyncio.run(controller.refresh_inventory())

        assert controller.state["item_count"] == 0
        assert controller.state["items"] == []
        assert controller.state["errors"][0].startswith("items_fetch_failed")
        # metadata failed independently, so labels are still present
        assert len(controller.state["locality_labels"]) == 3

        controller.submit_contact("jane@example.com")
        self._finish_scan(controller)
        assert controller.stage == FunnelStage.RESULTS
        assert controller.snapshot()["item_count"] == 0

    def test_zip_failure_still_scans(self):
        controller = self._controller(zip_source=FakeZip(error=DataFetchError("zip lookup failed", source="zip")))
        controller.set_postal_code("90210")
        asyncio.run(controller.refresh_inventory())

        assert controller.state["item_count"] == 2
        assert controller.state["locality_labels"] == []

        controller.submit_contact("jane@example.com")
        assert len(controller.scheduler.steps) == 2
        self._finish_scan(controller)
        assert controller.stage == FunnelStage.RESULTS

    def test_reselecting_item_cancels_previous_scan(self):
        self.controller.set_postal_code("90210")
        self.controller.submit_contact("jane@example.com")
        self._finish_scan()

        self.controller.select_item(ITEMS[0])
        first = self.controller.scheduler
        first.tick(0)

        self.controller.select_item(ITEMS[1])
        second = self.controller.scheduler

        assert first.cancelled
        assert first.tick(10000) is None
        assert second is not first
        assert self.controller.state["selected_item"] == ITEMS[1]

        self._finish_scan()
        assert self.controller.stage == FunnelStage.RESULTS
        assert self.controller.state["selected_item"] == ITEMS[1]

    def test_teardown_stops_scan(self):
        self.controller.set_postal_code("90210")
        self.controller.submit_contact("jane@example.com")
        scheduler = self.controller.scheduler
        self.controller.tick(0)

        self.controller.teardown()

        assert self.controller.tick(10000) is None
        assert scheduler.tick(10000) is None
        assert self.controller.stage == FunnelStage.SCANNING

    def test_postal_code_change_resets_funnel(self):
        self.controller.set_postal_code("90210")
        self.controller.submit_contact("jane@example.com")
        scheduler = self.controller.scheduler

        assert self.controller.set_postal_code("10001") is True

        assert self.controller.stage == FunnelStage.CAPTURE
        assert self.controller.state["lead"] is None
        assert scheduler.cancelled
        assert self.controller.scheduler is None

    def test_convert_requires_selected_item(self):
        self.controller.set_postal_code("90210")
        self.controller.submit_contact("jane@example.com")
        self._finish_scan()

        with pytest.raises(FunnelError):
            self.controller.convert()
        assert self.controller.stage == FunnelStage.RESULTS

    def test_scan_complete_outside_scanning(self):
        with pytest.raises(FunnelError):
            self.controller.on_scan_complete()


class TestHandoff:
    def test_handoff_url_params(self):
        url = httpx.URL(handoff_url("https://welcome.example.com/start?ref=1", "90210", "dashboard"))

        assert url.host == "welcome.example.com"
        assert url.params["ref"] == "1"
        assert url.params["zip"] == "90210"
        assert url.params["source"] == "dashboard"


if __name__ == "__main__":
    pytest.main([__file__, "-v"])

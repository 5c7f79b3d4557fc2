"""
Pure funnel transitions.

Every function takes a FunnelState and returns a new FunnelState; the input is
never mutated. Side effects (relay dispatch, timers, analytics) belong to the
controller that owns the state.
"""
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from loguru import logger

from funnel.errors import FunnelError, ValidationError
from funnel.state import ContactLead, DealItem, FunnelStage, FunnelState
from funnel.validation import POSTAL_CODE_LENGTH, normalize_postal_code, parse_email

DEFAULT_SOURCE = "dashboard"


def initial_state() -> FunnelState:
    return {
        "stage": FunnelStage.INPUT_PENDING,
        "postal_code": "",
        "ready": False,
        "lead": None,
        "error": None,
        "items": [],
        "item_count": 0,
        "locality_labels": [],
        "selected_item": None,
        "scan_id": 0,
        "destination": None,
        "errors": [],
    }


def _copy(state: FunnelState) -> FunnelState:
    new_state = dict(state)
    new_state["errors"] = list(state.get("errors", []))
    return new_state


def _require(state: FunnelState, *stages: FunnelStage) -> None:
    if state.get("stage") not in stages:
        allowed = ", ".join(stage.value for stage in stages)
        raise FunnelError(f"Expected stage in ({allowed}), funnel is at {state.get('stage')}")


def set_postal_code(state: FunnelState, raw: Any) -> FunnelState:
    """Store the normalized postal code and re-evaluate the capture guard."""
    new_state = _copy(state)
    code = normalize_postal_code(raw)
    changed = code != state.get("postal_code")

    new_state["postal_code"] = code
    new_state["ready"] = len(code) == POSTAL_CODE_LENGTH

    if not new_state["ready"]:
        new_state["stage"] = FunnelStage.INPUT_PENDING
        new_state["error"] = "Please enter a valid 5-digit ZIP code"
        new_state["lead"] = None
        logger.info(f"Postal code not ready: {raw!r} -> {code!r}")
    elif changed or state.get("stage") == FunnelStage.INPUT_PENDING:
        # a new postal code invalidates everything downstream of input
        new_state.update(
            stage=FunnelStage.CAPTURE,
            error=None,
            lead=None,
            items=[],
            item_count=0,
            locality_labels=[],
            selected_item=None,
            destination=None,
        )
    return new_state


def submit_contact(state: FunnelState, email: Any, source: Optional[str] = None,
                   captured_at: Optional[datetime] = None) -> FunnelState:
    """
    Validate the contact email and advance capture -> scanning.

    Raises:
        ValidationError: malformed email; the returned state is not produced
            and the caller keeps the funnel at capture
    """
    _require(state, FunnelStage.CAPTURE)
    address = parse_email(email)

    new_state = _copy(state)
    new_state["lead"] = ContactLead(
        email=address,
        postal_code=state["postal_code"],
        source=source or DEFAULT_SOURCE,
        captured_at=captured_at or datetime.now(timezone.utc),
    )
    new_state["error"] = None
    return start_scan(new_state, item=None)


def capture_failed(state: FunnelState, error: ValidationError) -> FunnelState:
    """Re-enter capture with a visitor-facing message."""
    new_state = _copy(state)
    new_state["stage"] = FunnelStage.CAPTURE
    new_state["error"] = error.message
    return new_state


def start_scan(state: FunnelState, item: Optional[DealItem]) -> FunnelState:
    new_state = _copy(state)
    new_state["stage"] = FunnelStage.SCANNING
    new_state["selected_item"] = item
    new_state["scan_id"] = state.get("scan_id", 0) + 1
    return new_state


def select_item(state: FunnelState, item: DealItem) -> FunnelState:
    _require(state, FunnelStage.RESULTS, FunnelStage.SCANNING)
    if not item:
        raise FunnelError("No item selected")
    return start_scan(state, item)


def complete_scan(state: FunnelState) -> FunnelState:
    _require(state, FunnelStage.SCANNING)
    new_state = _copy(state)
    new_state["stage"] = FunnelStage.RESULTS
    return new_state


def apply_inventory(state: FunnelState, items: List[DealItem], count: Optional[int],
                    labels: List[str], errors: Optional[List[str]] = None) -> FunnelState:
    """Store fetched items and locality labels. Failed sources arrive as empty lists."""
    new_state = _copy(state)
    new_state["items"] = list(items)
    new_state["item_count"] = count if count is not None else len(items)
    new_state["locality_labels"] = list(labels)
    new_state["errors"].extend(errors or [])
    return new_state


def convert(state: FunnelState, destination: str) -> FunnelState:
    _require(state, FunnelStage.RESULTS)
    if not state.get("selected_item"):
        raise FunnelError("Cannot convert without a selected item")
    new_state = _copy(state)
    new_state["stage"] = FunnelStage.CONVERTING
    new_state["destination"] = destination
    return new_state


def snapshot(state: FunnelState) -> Dict[str, Any]:
    """JSON-friendly view of the state."""
    lead = state.get("lead")
    return {
        "stage": state["stage"].value,
        "postal_code": state.get("postal_code"),
        "ready": state.get("ready", False),
        "lead": lead.to_payload() if lead else None,
        "error": state.get("error"),
        "item_count": state.get("item_count", 0),
        "selected_item": (state.get("selected_item") or {}).get("id"),
        "destination": state.get("destination"),
    }

from datetime import datetime, timezone

from funnel.errors import RelayError
from funnel.state import LeadState
from tools import webhook
from tools.idempotency import Idem
from loguru import logger

idem = Idem()


def lead_key(state: LeadState) -> str:
    raw = state.get("raw") or {}
    norm = state.get("normalized") or {}
    if raw.get("event_id"):
        return str(raw["event_id"])
    return f"{norm.get('email', '').lower()}:{norm.get('zip') or ''}"


def dedupe(state: LeadState) -> LeadState:
    """Mark repeat submissions of the same lead so they are not relayed twice."""
    key = lead_key(state)
    state["duplicate"] = not idem.check_and_set(key)
    if state["duplicate"]:
        logger.warning(f"Duplicate lead ignored: {key}")
    return state


async def relay(state: LeadState) -> LeadState:
    """Forward the lead to the marketing webhook. Failures are logged, never raised."""
    norm = state.get("normalized", {})
    logger.info(f"Starting relay for lead: {norm.get('email', 'unknown')}")

    payload = dict(norm)
    payload["timestamp"] = datetime.now(timezone.utc).isoformat()
    state["webhook_configured"] = webhook.webhook_relay.configured

    try:
        state["relayed"] = await webhook.relay_lead(payload)
    except RelayError as e:
        error_msg = f"Relay failed: {e}"
        logger.error(error_msg)
        state.setdefault("errors", []).append(error_msg)
        state["relayed"] = False

    return state

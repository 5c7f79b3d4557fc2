from funnel.state import LeadState
from funnel.validation import is_email, normalize_postal_code
from loguru import logger

OPTIONAL_FIELDS = ["zip", "name", "phone", "source"]


def capture(state: LeadState) -> LeadState:
    """Normalize and validate the incoming lead payload."""
    raw = state.get("raw") or {}
    logger.info(f"Starting capture for lead: {raw.get('email', 'unknown')}")

    email = raw.get("email")
    normalized = {"email": email}
    for field in OPTIONAL_FIELDS:
        value = raw.get(field)
        normalized[field] = value if value not in ("", None) else None

    # zip is passed through as digits only; relaying never depends on it
    if normalized["zip"] is not None:
        normalized["zip"] = normalize_postal_code(normalized["zip"]) or None

    state["normalized"] = normalized
    state["valid"] = is_email(normalized["email"])

    if not state["valid"]:
        state.setdefault("errors", []).append("Invalid email address")
        logger.warning(f"Rejected lead with invalid email: {email!r}")
    else:
        logger.info(f"Capture completed for {normalized['email']}")

    return state

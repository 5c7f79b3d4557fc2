from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import TypedDict, Optional, List, Dict, Any


class FunnelStage(str, Enum):
    """Stages a visitor moves through, in order."""
    INPUT_PENDING = "input-pending"
    CAPTURE = "capture"
    SCANNING = "scanning"
    RESULTS = "results"
    CONVERTING = "converting"


class DealItem(TypedDict, total=False):
    """Deal item as returned by the items data source."""
    id: str
    name: str
    brand: str
    price: str
    old_price: str
    image: str
    retailer: str
    stock_hint: str
    distance_hint: str
    updated_hint: str


@dataclass(frozen=True)
class ContactLead:
    """Captured contact plus the context it was captured in."""
    email: str
    postal_code: str
    source: str
    captured_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_payload(self) -> Dict[str, Any]:
        return {
            "email": self.email,
            "zip": self.postal_code,
            "name": None,
            "phone": None,
            "source": self.source,
            "timestamp": self.captured_at.isoformat(),
        }


@dataclass(frozen=True)
class ScanStep:
    label: str
    duration_ms: int
    cumulative_end_ms: int


@dataclass
class ScanState:
    progress: float = 0.0
    active_step_index: int = 0
    elapsed_ms: int = 0


class FunnelState(TypedDict, total=False):
    """State shape for one visitor's funnel run."""
    stage: FunnelStage
    postal_code: str                 # normalized digits, may be invalid
    ready: bool                      # postal code passed validation
    lead: Optional[ContactLead]
    error: Optional[str]             # user-facing message for the current stage
    items: List[DealItem]
    item_count: int
    locality_labels: List[str]       # seeds the scan phrases
    selected_item: Optional[DealItem]
    scan_id: int                     # bumped on every scan run
    destination: Optional[str]       # hand-off URL once converting
    errors: List[str]                # recovered failures, for debugging


class LeadState(TypedDict, total=False):
    """State shape for the lead relay workflow."""
    raw: Dict[str, Any]              # original request payload
    normalized: Dict[str, Any]       # email, zip, name, phone, source
    valid: bool
    duplicate: bool
    relayed: bool
    webhook_configured: bool
    errors: List[str]

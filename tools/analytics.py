import os
from typing import Dict, Any, Optional

import httpx
from loguru import logger

GA_COLLECT_URL = "https://www.google-analytics.com/mp/collect"


class AnalyticsTracker:
    """Funnel event tracking via the GA4 measurement protocol."""

    def __init__(self, timeout: float = 5):
        self.measurement_id = os.getenv("GA_MEASUREMENT_ID")
        self.api_secret = os.getenv("GA_API_SECRET")
        self.timeout = timeout

        if not self.configured:
            logger.warning("No GA credentials provided, analytics events are logged only")

    @property
    def configured(self) -> bool:
        return bool(self.measurement_id and self.api_secret)

    async def track(self, name: str, params: Optional[Dict[str, Any]] = None, client_id: str = "funnel") -> bool:
        """
        Record a funnel event.

        Args:
            name: Event name, e.g. "check_deal"
            params: Event parameters
            client_id: GA client id of the visitor

        Returns:
            True if recorded, False if the upstream call failed
        """
        params = params or {}
        logger.info(f"Analytics event {name}: {params}")

        if not self.configured:
            return True

        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(
                    GA_COLLECT_URL,
                    params={"measurement_id": self.measurement_id, "api_secret": self.api_secret},
                    json={"client_id": client_id, "events": [{"name": name, "params": params}]}
                )
                response.raise_for_status()
            return True
        except httpx.HTTPError as e:
            logger.error(f"Analytics event {name} failed: {e}")
            return False


# Global analytics tracker instance
analytics = AnalyticsTracker()


async def track_event(name: str, params: Optional[Dict[str, Any]] = None) -> bool:
    """Track an event using the global analytics tracker."""
    return await analytics.track(name, params)

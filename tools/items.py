import os
from typing import Dict, Any, List

import httpx
from loguru import logger

from funnel.errors import DataFetchError


class ItemsClient:
    """Deal items data source, keyed by postal code (with fallback to mock data)."""

    def __init__(self, base_url: str = None, timeout: float = 20):
        self.base_url = (base_url if base_url is not None else os.getenv("ITEMS_API_URL", "")).rstrip("/")
        self.timeout = timeout

        if not self.base_url:
            logger.warning("No ITEMS_API_URL provided, using mock items")

    async def fetch_items(self, postal_code: str) -> Dict[str, Any]:
        """
        Fetch deal items near a postal code.

        Returns:
            {"items": [...], "count": int}

        Raises:
            DataFetchError: on transport errors, non-2xx responses or malformed bodies
        """
        if not self.base_url:
            return self._mock_items(postal_code)

        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.get(
                    f"{self.base_url}/api/items",
                    params={"zip": postal_code},
                    headers={"Cache-Control": "no-store"}
                )
                response.raise_for_status()
                data = response.json()
        except (httpx.HTTPError, ValueError) as e:
            raise DataFetchError(f"Items fetch failed for {postal_code}: {e}", source="items") from e

        items = data.get("items") if isinstance(data, dict) else None
        if not isinstance(items, list):
            raise DataFetchError(f"Items response for {postal_code} has no item list", source="items")
        return {"items": items, "count": data.get("count", len(items))}

    def _mock_items(self, postal_code: str) -> Dict[str, Any]:
        """Generate mock deal items for testing/fallback."""
        items: List[Dict[str, Any]] = [
            {
                "id": f"mock-{postal_code}-1",
                "name": "Cordless Drill Kit",
                "brand": "Mock Tools",
                "price": "$19.00",
                "old_price": "$99.00",
                "image": "/logo.png",
                "retailer": "Home Depot",
                "stock_hint": "Limited stock",
                "distance_hint": "2.1 mi",
                "updated_hint": "Updated 5 min ago"
            },
            {
                "id": f"mock-{postal_code}-2",
                "name": "Air Fryer 6qt",
                "brand": "Mock Kitchen",
                "price": "$24.00",
                "old_price": "$89.00",
                "image": "/logo.png",
                "retailer": "Walmart",
                "stock_hint": "3 left",
                "distance_hint": "4.8 mi",
                "updated_hint": "Updated 12 min ago"
            }
        ]
        return {"items": items, "count": len(items)}


# Global items client instance
items_client = ItemsClient()

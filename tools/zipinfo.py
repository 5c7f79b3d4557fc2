import os
from typing import Dict, Any, List

import httpx
from loguru import logger

from funnel.errors import DataFetchError


class ZipInfoClient:
    """Postal-code metadata source; supplies locality labels for the scan."""

    def __init__(self, base_url: str = None, timeout: float = 20):
        self.base_url = (base_url if base_url is not None else os.getenv("ZIP_API_URL", "")).rstrip("/")
        self.timeout = timeout

        if not self.base_url:
            logger.warning("No ZIP_API_URL provided, using mock postal-code data")

    async def fetch_zip(self, postal_code: str) -> Dict[str, Any]:
        """Fetch metadata for a postal code. Raises DataFetchError on failure."""
        if not self.base_url:
            return self._mock_zip(postal_code)

        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.get(f"{self.base_url}/api/zip/{postal_code}")
                response.raise_for_status()
                data = response.json()
        except (httpx.HTTPError, ValueError) as e:
            raise DataFetchError(f"Zip lookup failed for {postal_code}: {e}", source="zip") from e

        if not isinstance(data, dict):
            raise DataFetchError(f"Zip response for {postal_code} is not an object", source="zip")
        return data

    async def locality_labels(self, postal_code: str) -> List[str]:
        data = await self.fetch_zip(postal_code)
        cities = data.get("cities") or data.get("uniqueCities") or []
        if not cities and data.get("city"):
            cities = [data["city"]]
        return [str(city) for city in cities if city]

    def _mock_zip(self, postal_code: str) -> Dict[str, Any]:
        """Generate mock postal-code metadata for testing/fallback."""
        return {
            "zip_code": postal_code,
            "city": "Springfield",
            "state": "IL",
            "county": "Sangamon",
            "cities": ["Springfield", "Chatham", "Rochester", "Sherman"]
        }


# Global zip client instance
zip_client = ZipInfoClient()

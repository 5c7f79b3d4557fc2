import os
from typing import Dict, Any

import httpx
from loguru import logger

from funnel.errors import RelayError


class WebhookRelay:
    """Relays captured leads to the downstream marketing webhook."""

    def __init__(self, url: str = None, timeout: float = None):
        self.url = url if url is not None else os.getenv("WEBHOOK_URL")
        self.timeout = timeout or float(os.getenv("WEBHOOK_TIMEOUT", "10"))

        if not self.url:
            logger.warning("WEBHOOK_URL not set, leads will not be relayed")

    @property
    def configured(self) -> bool:
        return bool(self.url)

    async def send(self, payload: Dict[str, Any]) -> bool:
        """
        POST the lead payload to the webhook.

        Args:
            payload: JSON-serializable lead data

        Returns:
            True if delivered, False if no webhook is configured

        Raises:
            RelayError: the webhook answered with a non-2xx status or was unreachable
        """
        if not self.url:
            logger.error(f"WEBHOOK_URL environment variable is not set, dropping lead {payload.get('email')}")
            return False

        logger.info(f"Sending webhook to {self.url} for email: {payload.get('email')}")
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(self.url, json=payload)
        except httpx.HTTPError as e:
            logger.error(f"Error sending webhook: {e}")
            raise RelayError(f"Webhook unreachable: {e}") from e

        if response.is_success:
            logger.info(f"Webhook sent successfully (status: {response.status_code})")
            return True

        logger.error(f"Webhook failed with status {response.status_code}: {response.text}")
        raise RelayError(f"Webhook failed with status {response.status_code}", status=response.status_code)


# Global relay instance
webhook_relay = WebhookRelay()


async def relay_lead(payload: Dict[str, Any]) -> bool:
    """Relay a lead using the global webhook relay."""
    return await webhook_relay.send(payload)

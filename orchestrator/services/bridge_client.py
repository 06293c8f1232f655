"""HTTP client for the SMS bridge (production transport)."""
import logging
from typing import Optional

import httpx

logger = logging.getLogger(__name__)


class BridgeClient:
    """Pushes outbound SMS to the bridge, which owns the carrier connection."""

    def __init__(self, api_url: str, api_key: str = "", transport: Optional[httpx.AsyncBaseTransport] = None):
        """Initialize bridge client."""
        self.api_url = api_url.rstrip("/")
        self.api_key = api_key
        self.headers = {"Content-Type": "application/json"}
        if api_key:
            self.headers["X-API-Key"] = api_key
        self._client = httpx.AsyncClient(
            headers=self.headers,
            timeout=httpx.Timeout(15.0),
            limits=httpx.Limits(max_connections=20, max_keepalive_connections=10),
            transport=transport,
        )

    async def close(self) -> None:
        """Close underlying HTTP resources."""
        await self._client.aclose()

    async def deliver(self, message_id: int, to_phone: str, content: str) -> str:
        """
        Hand one SMS to the bridge.

        Returns:
            "sent" once the bridge accepted the message; delivery receipts
            arrive later through the status webhook.

        Raises:
            httpx.HTTPError: the bridge is unreachable or rejected the message
        """
        url = f"{self.api_url}/send"
        payload = {"type": "send_sms", "message_id": message_id, "to": to_phone, "message": content}
        try:
            response = await self._client.post(url, json=payload)
            response.raise_for_status()
        except httpx.HTTPError as e:
            logger.error(f"Bridge rejected message {message_id} to {to_phone}: {e}")
            raise
        logger.debug(f"Bridge accepted message {message_id}")
        return "sent"

    async def health(self) -> bool:
        """Check whether the bridge answers its health endpoint."""
        try:
            response = await self._client.get(f"{self.api_url}/health", timeout=5.0)
            return response.status_code == 200
        except httpx.HTTPError as e:
            logger.warning(f"Bridge health check failed: {e}")
            return False

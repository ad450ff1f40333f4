"""
Hostify API client - reservation info and inbox threads.
"""

from typing import Optional

import httpx
import structlog

from config import settings
from utils import log_event

logger = structlog.get_logger(__name__)


class HostifyClient:
    """Client for interacting with Hostify API."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        self.api_key = settings.HOSTIFY_API_KEY if api_key is None else api_key
        self.base_url = (base_url or settings.HOSTIFY_BASE_URL).rstrip("/")
        self.timeout = timeout or settings.HTTP_TIMEOUT_SECONDS
        self.transport = transport
        self.headers = {
            "x-api-key": self.api_key,
            "Cache-Control": "no-cache",
            "Content-Type": "application/json"
        }

    def is_configured(self) -> bool:
        """Check if Hostify integration is configured."""
        return bool(self.api_key)

    async def _get(self, path: str, params: Optional[dict] = None) -> dict:
        async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
            try:
                response = await client.get(
                    f"{self.base_url}{path}",
                    headers=self.headers,
                    params=params
                )
                response.raise_for_status()
                return response.json() or {}
            except httpx.HTTPError as e:
                log_event("api_error", payload={
                    "service": "hostify",
                    "endpoint": path,
                    "error": str(e)
                })
                logger.error("hostify_request_failed", endpoint=path, error=str(e))
                raise

    async def get_reservation_info(self, reservation_id: int) -> dict:
        """
        Fetch a reservation with its related objects.

        The inbox thread for the reservation is referenced by reservation.message_id.
        """
        return await self._get(
            f"/reservations/{reservation_id}",
            params={"include_related_objects": 1}
        )

    async def get_inbox_thread(self, inbox_id: str) -> dict:
        """Fetch an inbox thread with its messages."""
        return await self._get(f"/inbox/{inbox_id}")

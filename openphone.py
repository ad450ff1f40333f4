"""
OpenPhone API client - phone numbers, SMS, calls, call summaries and transcripts.
"""

import asyncio
from typing import Any, Dict, List, Optional

import httpx
import structlog

from config import settings
from utils import log_event

logger = structlog.get_logger(__name__)


class OpenPhoneClient:
    """Client for interacting with OpenPhone API."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        page_delay: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        self.api_key = settings.OPENPHONE_API_KEY if api_key is None else api_key
        self.base_url = (base_url or settings.OPENPHONE_BASE_URL).rstrip("/")
        self.timeout = timeout or settings.HTTP_TIMEOUT_SECONDS
        self.page_delay = settings.PAGE_DELAY_SECONDS if page_delay is None else page_delay
        self.transport = transport
        self.headers = {
            "Authorization": self.api_key,
            "Content-Type": "application/json"
        }

    def is_configured(self) -> bool:
        """Check if OpenPhone integration is configured."""
        return bool(self.api_key)

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout, transport=self.transport)

    async def _get(self, path: str, params: Optional[dict] = None) -> dict:
        async with self._client() as client:
            try:
                response = await client.get(
                    f"{self.base_url}{path}",
                    headers=self.headers,
                    params=params
                )
                response.raise_for_status()
                return response.json()
            except httpx.HTTPError as e:
                log_event("api_error", payload={
                    "service": "openphone",
                    "endpoint": path,
                    "error": str(e)
                })
                logger.error("openphone_request_failed", endpoint=path, error=str(e))
                raise

    async def _get_all_pages(self, path: str, params: dict, max_results: int = 100) -> List[dict]:
        """Follow nextPageToken until the listing is exhausted."""
        items: List[dict] = []
        page_token = None

        while True:
            page_params = dict(params, maxResults=max_results)
            if page_token:
                page_params["pageToken"] = page_token

            data = await self._get(path, page_params)
            items.extend(data.get("data") or [])

            page_token = data.get("nextPageToken")
            if not page_token:
                break

            # Small delay to avoid rate limiting
            await asyncio.sleep(self.page_delay)

        return items

    async def list_phone_numbers(self) -> List[dict]:
        """List the phone numbers on the OpenPhone workspace."""
        data = await self._get("/phone-numbers")
        return data.get("data") or []

    async def list_messages(self, participants: List[str], phone_number_id: str) -> List[dict]:
        """
        List SMS messages between one of our phone numbers and the participants.

        OpenPhone only filters by a single phoneNumberId per request.
        """
        return await self._get_all_pages("/messages", {
            "participants": participants,
            "phoneNumberId": phone_number_id
        })

    async def list_calls(self, participants: List[str], phone_number_id: str) -> List[dict]:
        """List calls between one of our phone numbers and the participants."""
        return await self._get_all_pages("/calls", {
            "participants": participants,
            "phoneNumberId": phone_number_id
        })

    async def get_call_summary(self, call_id: str) -> Dict[str, Any]:
        """Get the AI-generated summary for a call."""
        data = await self._get(f"/call-summaries/{call_id}")
        return data.get("data") or {}

    async def get_call_transcript(self, call_id: str) -> Dict[str, Any]:
        """
        Get the transcript for a call.

        OpenPhone returns the transcript as dialogue segments; they are joined
        into a single "text" field when the response doesn't carry one.
        """
        data = await self._get(f"/call-transcripts/{call_id}")
        transcript = data.get("data") or {}

        if not transcript.get("text") and transcript.get("dialogue"):
            lines = []
            for segment in transcript["dialogue"]:
                content = (segment.get("content") or "").strip()
                if content:
                    speaker = segment.get("identifier") or "Speaker"
                    lines.append(f"{speaker}: {content}")
            transcript["text"] = "\n".join(lines)

        return transcript

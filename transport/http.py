"""
HTTP Transport — hands each notification to an email API as a JSON POST.

Request:
    POST {url}
    Authorization: Bearer {token}
    {"from": ..., "from_name": ..., "to": ..., "subject": ..., "html": ..., "text": ...}

Any 2xx response is a delivery; the provider's message id is read from
``id`` or ``message_id`` in the response body when present. Everything
else (non-2xx, network errors) is a failed attempt with a readable reason.
"""
from __future__ import annotations

import structlog
from typing import Any, Optional

import httpx

from models.schemas import DeliveryResult
from transport.base import Transport, TransportError, html_to_plain, looks_like_html

logger = structlog.get_logger()


class HttpTransport(Transport):
    name = "http"

    def __init__(
        self,
        url: str,
        token: str = "",
        from_email: str = "no-reply@example.com",
        from_name: str = "",
        client: Optional[httpx.AsyncClient] = None,
    ):
        super().__init__()
        if not url:
            raise TransportError("HTTP transport url is required", transport=self.name)
        self.url = url
        self.token = token
        self.from_email = from_email
        self.from_name = from_name
        self._client = client

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=httpx.Timeout(30.0, connect=10.0))
        return self._client

    def build_payload(self, recipient: str, subject: str, body: str) -> dict[str, Any]:
        payload = {
            "from": self.from_email,
            "from_name": self.from_name,
            "to": recipient,
            "subject": subject,
        }
        if looks_like_html(body):
            payload["html"] = body
            payload["text"] = html_to_plain(body)
        else:
            payload["text"] = body
        return payload

    async def deliver(self, recipient: str, subject: str, body: str) -> DeliveryResult:
        client = await self._get_client()
        try:
            resp = await client.post(
                self.url,
                json=self.build_payload(recipient, subject, body),
                headers=self._headers(),
            )
        except httpx.HTTPError as e:
            logger.warning("http_delivery_error", url=self.url, error=str(e) or type(e).__name__)
            return DeliveryResult.failure(f"HTTP error: {str(e) or type(e).__name__}")

        if not resp.is_success:
            logger.warning("http_delivery_rejected", url=self.url, status=resp.status_code)
            return DeliveryResult.failure(f"Provider returned {resp.status_code}: {resp.text[:200]}")

        message_id = ""
        try:
            data = resp.json() if resp.content else {}
        except ValueError:
            data = {}
        if isinstance(data, dict):
            message_id = str(data.get("id") or data.get("message_id") or "")
        return DeliveryResult.success(message_id)

    async def close(self) -> None:
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()

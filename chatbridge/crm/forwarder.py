"""Forwarding of inbound messages to the CRM conversation API."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

import httpx

from chatbridge.client.types import MessagePayload

if TYPE_CHECKING:
    from chatbridge.config import ForwardingConfig

logger = logging.getLogger(__name__)

TOKEN_HEADER = "X-Webhook-Token"


@runtime_checkable
class InboundForwarder(Protocol):
    """Receives inbound user messages on behalf of the CRM."""

    async def forward(
        self,
        session_id: str,
        location_id: str | None,
        message: MessagePayload,
    ) -> None: ...


class WebhookForwarder:
    """Posts inbound messages to a CRM webhook as JSON."""

    def __init__(
        self,
        url: str,
        token: str | None = None,
        timeout: float = 10.0,
        client: httpx.AsyncClient | None = None,
    ):
        """
        Initialize the forwarder.

        Args:
            url: Webhook endpoint
            token: Optional shared secret sent in the X-Webhook-Token header
            timeout: Request timeout in seconds
            client: HTTP client to use instead of a lazily created one
        """
        self.url = url
        self.token = token
        self.timeout = timeout
        self._http = client

    @classmethod
    def from_config(cls, config: ForwardingConfig) -> WebhookForwarder:
        return cls(
            url=config.webhook_url,
            token=config.get_token(),
            timeout=config.timeout_seconds,
        )

    async def _client(self) -> httpx.AsyncClient:
        if self._http is None or self._http.is_closed:
            self._http = httpx.AsyncClient(timeout=self.timeout)
        return self._http

    def build_body(
        self,
        session_id: str,
        location_id: str | None,
        message: MessagePayload,
    ) -> dict[str, Any]:
        return {
            "from": message.sender,
            "message": message.text,
            "timestamp": int(message.timestamp.timestamp()),
            "sessionId": session_id,
            "locationId": location_id,
        }

    async def forward(
        self,
        session_id: str,
        location_id: str | None,
        message: MessagePayload,
    ) -> None:
        """Post one message to the webhook.

        Raises:
            httpx.HTTPError: If the request fails or the webhook rejects it
        """
        headers = {TOKEN_HEADER: self.token} if self.token else {}
        client = await self._client()
        response = await client.post(
            self.url,
            json=self.build_body(session_id, location_id, message),
            headers=headers,
        )
        response.raise_for_status()
        logger.debug(
            "Forwarded message: session=%s, from=%s, status=%d",
            session_id,
            message.sender,
            response.status_code,
        )

    async def close(self) -> None:
        if self._http is not None and not self._http.is_closed:
            await self._http.aclose()
        self._http = None

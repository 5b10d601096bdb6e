"""
Webhook deliverer — posts outbound messages to the messaging gateway.

The gateway owns provider specifics (WhatsApp, Instagram, Telegram, ...).
This adapter only speaks one JSON shape:

    POST {outbound_url}
    {"conversation_id": "...", "content": "...", "buttons": [...], "metadata": {...}}

2xx → delivered; 5xx, timeouts and transport errors are retryable;
4xx is a definitive failure.
"""
from __future__ import annotations

import structlog
from typing import Any, Optional

import httpx

from channels.base import MessageDeliverer, RecordingDeliverer
from config.settings import DeliveryConfig, get_settings
from core.errors import DeliveryError

logger = structlog.get_logger()


class WebhookDeliverer(MessageDeliverer):

    def __init__(self, config: DeliveryConfig = None, client: httpx.AsyncClient = None):
        self.config = config or get_settings().delivery
        self.client: Optional[httpx.AsyncClient] = client

    async def _get_client(self) -> httpx.AsyncClient:
        if self.client is None or self.client.is_closed:
            headers = {}
            if self.config.auth_token:
                headers["Authorization"] = f"Bearer {self.config.auth_token}"
            self.client = httpx.AsyncClient(
                headers=headers,
                timeout=self.config.timeout_seconds,
            )
        return self.client

    async def deliver(self, conversation_id, content, buttons=None, metadata=None):
        client = await self._get_client()
        payload = {
            "conversation_id": conversation_id,
            "content": content,
            "buttons": list(buttons or []),
            "metadata": dict(metadata or {}),
        }
        try:
            response = await client.post(self.config.outbound_url, json=payload)
        except httpx.HTTPError as e:
            raise DeliveryError(f"transport error: {e}", retryable=True)

        if response.status_code >= 500:
            raise DeliveryError(f"gateway returned {response.status_code}", retryable=True)
        if response.status_code >= 400:
            raise DeliveryError(f"gateway rejected message: {response.status_code}", retryable=False)

        body: dict[str, Any] = {}
        if response.content:
            try:
                parsed = response.json()
                if isinstance(parsed, dict):
                    body = parsed
            except ValueError:
                pass
        body.setdefault("status", "sent")
        return body

    async def close(self):
        if self.client:
            await self.client.aclose()


def create_deliverer(config: DeliveryConfig = None) -> MessageDeliverer:
    """Factory: webhook deliverer when an outbound URL is configured, else recording."""
    config = config or get_settings().delivery
    if config.outbound_url:
        logger.info("deliverer_created", kind="webhook", url=config.outbound_url)
        return WebhookDeliverer(config)
    logger.warning("using_recording_deliverer", reason="no outbound_url configured")
    return RecordingDeliverer()

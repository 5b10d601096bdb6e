"""
Integration Connector — The capability behind apiCall nodes.

    call(endpoint, payload, timeout, method) → response dict | IntegrationError

The endpoint can be a named key from settings (integration.endpoints), a path
relative to integration.base_url, or an absolute URL. Retries are NOT done
here; the apiCall handler owns the retry policy so it can bound turn time.
"""
from __future__ import annotations

import abc
import json
import structlog
from typing import Any, Optional

import httpx

from config.settings import IntegrationConfig, get_settings
from core.errors import IntegrationError

logger = structlog.get_logger()


class IntegrationClient(abc.ABC):
    """Abstract base for all integration clients."""

    @abc.abstractmethod
    async def call(
        self,
        endpoint: str,
        payload: dict[str, Any] = None,
        timeout: float = None,
        method: str = "POST",
    ) -> Any:
        """
        Invoke an external endpoint and return its decoded JSON body.
        Raises IntegrationError; `retryable` is True for timeouts, transport
        errors and 5xx responses, False for 4xx.
        """
        ...

    async def close(self) -> None:
        return None


class RESTIntegrationClient(IntegrationClient):
    """REST client over httpx with per-call timeouts."""

    def __init__(self, config: IntegrationConfig = None, client: httpx.AsyncClient = None):
        self.config = config or get_settings().integration
        self.client: Optional[httpx.AsyncClient] = client

    async def _get_client(self) -> httpx.AsyncClient:
        if self.client is None or self.client.is_closed:
            headers = {}
            if self.config.auth_type == "bearer":
                token = self.config.auth_credentials.get("token", "")
                headers["Authorization"] = f"Bearer {token}"
            elif self.config.auth_type == "api_key":
                key_name = self.config.auth_credentials.get("header_name", "X-API-Key")
                headers[key_name] = self.config.auth_credentials.get("api_key", "")

            self.client = httpx.AsyncClient(
                base_url=self.config.base_url,
                headers=headers,
                timeout=self.config.timeout_seconds,
            )
        return self.client

    async def call(self, endpoint, payload=None, timeout=None, method="POST"):
        client = await self._get_client()
        url = self.config.endpoints.get(endpoint, endpoint)
        method = (method or "POST").upper()
        timeout = timeout or self.config.timeout_seconds

        kwargs: dict[str, Any] = {"timeout": timeout}
        if method in ("GET", "DELETE"):
            kwargs["params"] = {
                k: v for k, v in (payload or {}).items()
                if isinstance(v, (str, int, float, bool))
            }
        else:
            kwargs["json"] = payload or {}

        try:
            response = await client.request(method, url, **kwargs)
        except httpx.TimeoutException as e:
            raise IntegrationError(f"timeout calling {url}: {e}", retryable=True)
        except httpx.HTTPError as e:
            raise IntegrationError(f"transport error calling {url}: {e}", retryable=True)

        if response.status_code >= 500:
            raise IntegrationError(
                f"{url} returned {response.status_code}",
                retryable=True, status_code=response.status_code,
            )
        if response.status_code >= 400:
            raise IntegrationError(
                f"{url} rejected request: {response.status_code}",
                retryable=False, status_code=response.status_code,
            )

        if not response.content:
            return {}
        try:
            return response.json()
        except ValueError:
            return {"body": response.text}

    async def close(self):
        if self.client:
            await self.client.aclose()


class MockIntegrationClient(IntegrationClient):
    """
    Canned responses per endpoint for development and testing.
    Unknown endpoints echo the payload back.
    """

    def __init__(self, responses: dict[str, Any] = None):
        self._responses = dict(responses or {})
        self.calls: list[dict[str, Any]] = []

    async def call(self, endpoint, payload=None, timeout=None, method="POST"):
        self.calls.append({"endpoint": endpoint, "payload": payload, "method": method})
        logger.info("mock_integration_call",
                    endpoint=endpoint,
                    payload_keys=list((payload or {}).keys()))
        if endpoint in self._responses:
            return json.loads(json.dumps(self._responses[endpoint]))
        return {"status": "ok", "endpoint": endpoint, "echo": payload or {}}


def create_integration_client(config: IntegrationConfig = None) -> IntegrationClient:
    """Factory function to create the appropriate integration client."""
    config = config or get_settings().integration
    if config.type == "mock":
        logger.warning("using_mock_integration_client")
        return MockIntegrationClient()
    return RESTIntegrationClient(config)

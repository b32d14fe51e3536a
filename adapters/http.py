"""
HTTP adapters — AI responses and business actions served by the host backend.

Both adapters POST JSON to a named endpoint of the configured backend
(settings.yaml → backend.endpoints). Calls are retried with exponential
backoff on transient failures only.

Error mapping:
  network error / timeout / 5xx / 429  → TransientExternalError (retried)
  other 4xx / body that isn't JSON     → ConfigurationError (not retried)
"""
from __future__ import annotations

import structlog
from typing import Any, Optional

import httpx
from pydantic import ValidationError
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from adapters.base import AIResponder, BusinessActionAdapter
from config.settings import BackendConfig, get_settings
from flows.errors import ConfigurationError, TransientExternalError
from models.schemas import ActionOutcome, AIResponse

logger = structlog.get_logger()


class HttpBackendClient:
    """
    Shared transport for the HTTP adapters.
    Pass `client` to reuse a configured httpx.AsyncClient (tests use a MockTransport).
    """

    def __init__(self, config: BackendConfig = None, client: Optional[httpx.AsyncClient] = None):
        self.config = config or get_settings().backend
        self.client = client

    def _headers(self) -> dict[str, str]:
        headers = {}
        if self.config.auth_type == "bearer":
            token = self.config.auth_credentials.get("token", "")
            headers["Authorization"] = f"Bearer {token}"
        elif self.config.auth_type == "api_key":
            key_name = self.config.auth_credentials.get("header_name", "X-API-Key")
            headers[key_name] = self.config.auth_credentials.get("api_key", "")
        return headers

    async def _get_client(self) -> httpx.AsyncClient:
        if self.client is None or self.client.is_closed:
            self.client = httpx.AsyncClient(
                base_url=self.config.base_url,
                headers=self._headers(),
                timeout=self.config.timeout_seconds,
            )
        return self.client

    async def post(self, endpoint: str, payload: dict[str, Any]) -> dict[str, Any]:
        """POST to a named endpoint, retrying transient failures."""
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(max(1, self.config.retry_attempts)),
            wait=wait_exponential(multiplier=self.config.retry_backoff_seconds, max=10),
            retry=retry_if_exception_type(TransientExternalError),
            reraise=True,
        ):
            with attempt:
                return await self._post_once(endpoint, payload)

    async def _post_once(self, endpoint: str, payload: dict[str, Any]) -> dict[str, Any]:
        client = await self._get_client()
        url = self.config.endpoints.get(endpoint, endpoint)
        try:
            response = await client.post(url, json=payload)
        except httpx.HTTPError as e:
            logger.warning("backend_request_failed", endpoint=endpoint, error=str(e))
            raise TransientExternalError(f"Request to '{endpoint}' failed: {e}") from e

        status = response.status_code
        if status == 429 or status >= 500:
            logger.warning("backend_transient_status", endpoint=endpoint, status=status)
            raise TransientExternalError(
                f"Backend '{endpoint}' returned {status}", status_code=status,
            )
        if status >= 400:
            logger.error("backend_rejected_request", endpoint=endpoint, status=status)
            raise ConfigurationError(f"Backend '{endpoint}' rejected the request ({status})")

        try:
            body = response.json()
        except ValueError as e:
            raise ConfigurationError(f"Backend '{endpoint}' returned a non-JSON body") from e
        if not isinstance(body, dict):
            raise ConfigurationError(f"Backend '{endpoint}' returned {type(body).__name__}, expected object")
        return body

    async def close(self):
        if self.client:
            await self.client.aclose()


class HttpAIResponder(AIResponder):
    """
    Asks the backend's `ai` endpoint for a reply.

    Request:  {"prompt": "..."}
    Response: {"text": "..."}  (also accepts "response" / "message")
    """

    def __init__(self, config: BackendConfig = None, client: Optional[httpx.AsyncClient] = None):
        self.backend = HttpBackendClient(config, client)

    async def generate(self, prompt: str) -> AIResponse:
        body = await self.backend.post("ai", {"prompt": prompt})
        text = body.get("text", body.get("response", body.get("message")))
        if not isinstance(text, str):
            raise ConfigurationError("AI endpoint response has no text")
        return AIResponse(text=text)

    async def close(self):
        await self.backend.close()


class HttpBusinessActionAdapter(BusinessActionAdapter):
    """
    Executes business actions through the backend's `actions` endpoint.

    Request:  {"tenantId": ..., "action": ..., "context": {...}, "config": {...}}
    Response: {"port": "success" | "failure" | "needReason",
               "outputs": {"message": "...", "contextPatch": {...}}}
    """

    def __init__(self, config: BackendConfig = None, client: Optional[httpx.AsyncClient] = None):
        self.backend = HttpBackendClient(config, client)

    async def execute(
        self,
        tenant_id: str,
        context: dict[str, Any],
        node_config: dict[str, Any],
    ) -> ActionOutcome:
        payload = {
            "tenantId": tenant_id,
            "action": node_config.get("action", ""),
            "context": context,
            "config": node_config,
        }
        body = await self.backend.post("actions", payload)
        try:
            outcome = ActionOutcome.model_validate(body)
        except ValidationError as e:
            raise ConfigurationError("Action endpoint response has no port") from e
        logger.info("backend_action_executed", tenant_id=tenant_id,
                    action=payload["action"], port=outcome.port)
        return outcome

    async def close(self):
        await self.backend.close()

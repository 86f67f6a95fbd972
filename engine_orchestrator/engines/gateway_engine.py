"""
Engine client that forwards requests to the upstream engine gateway.

The gateway owns provider-specific HTTP clients and response parsing and
returns structured mention data.
"""

import time
from typing import Optional

import httpx
import structlog

from engine_orchestrator.config import settings
from engine_orchestrator.engines.base import EngineClient, EngineError
from engine_orchestrator.schemas.contracts import EngineQueryRequest, EngineQueryResult

logger = structlog.get_logger(__name__)


class GatewayEngineClient(EngineClient):
    """POSTs to {ENGINE_GATEWAY_URL}/engines/{engine}/query."""

    def __init__(self, base_url: str, timeout: Optional[float] = None, client: Optional[httpx.AsyncClient] = None):
        self.base_url = base_url.rstrip("/")
        self._client = client or httpx.AsyncClient(
            timeout=timeout or settings.ENGINE_QUERY_TIMEOUT_SECONDS,
        )

    @property
    def client_name(self) -> str:
        return "gateway"

    async def query(self, engine_id: str, request: EngineQueryRequest) -> EngineQueryResult:
        url = f"{self.base_url}/engines/{engine_id}/query"
        start = time.monotonic()
        try:
            response = await self._client.post(url, json=request.model_dump(exclude_none=True))
        except httpx.TimeoutException as e:
            raise EngineError(engine_id, "TIMEOUT", str(e)) from e
        except httpx.HTTPError as e:
            raise EngineError(engine_id, "TRANSPORT", str(e)) from e

        elapsed_ms = int((time.monotonic() - start) * 1000)
        if response.status_code >= 500:
            raise EngineError(engine_id, f"HTTP_{response.status_code}", response.text[:200])
        if response.status_code >= 400:
            logger.warning("engine_gateway_rejected", engine=engine_id, status_code=response.status_code)
            return EngineQueryResult(
                success=False,
                response_time_ms=elapsed_ms,
                error=f"HTTP {response.status_code}",
            )

        result = EngineQueryResult.model_validate(response.json())
        if not result.response_time_ms:
            result.response_time_ms = elapsed_ms
        return result

    async def aclose(self) -> None:
        await self._client.aclose()

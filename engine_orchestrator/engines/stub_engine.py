"""
Stub engine client for local runs and tests.
Answers are derived from a hash of the request so the same prompt always
gets the same answer. Engines listed in `failing_engines` raise EngineError.
"""

import hashlib
from typing import Iterable, Optional

from engine_orchestrator.engines.base import EngineClient, EngineError
from engine_orchestrator.schemas.contracts import (
    EngineQueryRequest,
    EngineQueryResult,
    MentionData,
)

_SENTIMENTS = ("positive", "neutral", "negative")


class StubEngineClient(EngineClient):
    """Deterministic fake engine client."""

    def __init__(self, failing_engines: Optional[Iterable[str]] = None, response_time_ms: int = 250):
        self.failing_engines = set(failing_engines or ())
        self.response_time_ms = response_time_ms
        self.calls: list[tuple[str, EngineQueryRequest]] = []

    @property
    def client_name(self) -> str:
        return "stub"

    async def query(self, engine_id: str, request: EngineQueryRequest) -> EngineQueryResult:
        self.calls.append((engine_id, request))
        if engine_id in self.failing_engines:
            raise EngineError(engine_id, "STUB_FAILURE", "engine configured to fail")

        digest = hashlib.sha256(
            f"{engine_id}:{request.prompt_id}:{request.prompt_text}:{request.claim_text}".encode()
        ).digest()
        mentioned = digest[0] % 4 != 0
        return EngineQueryResult(
            success=True,
            response_time_ms=self.response_time_ms,
            citation_present=digest[1] % 2 == 0,
            mention=MentionData(
                brand_mentioned=mentioned,
                sentiment=_SENTIMENTS[digest[2] % 3] if mentioned else None,
                score=float(digest[3] % 101) if mentioned else 0.0,
                position=(digest[4] % 10) + 1 if mentioned else None,
            ),
        )

"""
Abstract base class for engine clients.
The runner only ever talks to answer engines through this interface.
"""

from abc import ABC, abstractmethod

from engine_orchestrator.schemas.contracts import EngineQueryRequest, EngineQueryResult


class EngineClient(ABC):
    """
    Abstract base class for engine clients.

    Every client must:
    1. Accept an engine id and a structured request
    2. Return EngineQueryResult (success or not)
    3. Raise EngineError for transport-level failures, never crash
    """

    @property
    @abstractmethod
    def client_name(self) -> str:
        """Identifier used in logs: 'stub', 'gateway'."""
        ...

    @abstractmethod
    async def query(self, engine_id: str, request: EngineQueryRequest) -> EngineQueryResult:
        """Send one request to one engine."""
        ...

    async def aclose(self) -> None:
        """Release any held connections."""
        return None


class EngineError(Exception):
    """Raised when an engine call fails."""

    def __init__(self, engine_name: str, error_code: str, message: str):
        self.engine_name = engine_name
        self.error_code = error_code
        self.message = message
        super().__init__(f"[{engine_name}] {error_code}: {message}")

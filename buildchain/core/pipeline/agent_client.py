"""
Agent Execution Service client.

The service runs one specialist agent invocation and returns its text. The
pipeline only looks at `raw_text` and `transport_success`.
"""

from dataclasses import dataclass
from typing import Optional, Protocol

import httpx
import structlog

from buildchain.core.config import settings
from buildchain.core.models import ModelTier
from buildchain.core.pipeline.errors import AgentTransportError

logger = structlog.get_logger()


@dataclass(frozen=True)
class AgentRequest:
    agent_identity: str
    prompt: str
    model: str
    model_tier: ModelTier
    max_turns: int

    def to_payload(self) -> dict:
        return {
            "agent": self.agent_identity,
            "prompt": self.prompt,
            "model": self.model,
            "model_tier": self.model_tier.value,
            "max_turns": self.max_turns,
        }


@dataclass(frozen=True)
class AgentResponse:
    raw_text: str
    turns_used: int = 0
    transport_success: bool = True


class AgentExecutionService(Protocol):
    async def execute(self, request: AgentRequest) -> AgentResponse:
        """Run one agent invocation. May raise AgentTransportError or TimeoutError."""
        ...


class HttpAgentExecutionService:
    """
    HTTP client for a remote agent runner.

    POST {base_url}/v1/agents/execute with the request payload; expects
    ``{"text": ..., "turns_used": ..., "success": ...}`` back.
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        timeout: Optional[float] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.base_url = (base_url or settings.AGENT_SERVICE_URL).rstrip("/")
        self.api_key = api_key if api_key is not None else settings.AGENT_SERVICE_API_KEY
        self._client = client or httpx.AsyncClient(
            timeout=timeout or settings.AGENT_SERVICE_TIMEOUT_SECONDS
        )

    async def execute(self, request: AgentRequest) -> AgentResponse:
        headers = {"Authorization": f"Bearer {self.api_key}"} if self.api_key else {}

        try:
            response = await self._client.post(
                f"{self.base_url}/v1/agents/execute",
                json=request.to_payload(),
                headers=headers,
            )
        except httpx.TimeoutException as e:
            raise AgentTransportError(f"agent '{request.agent_identity}' timed out") from e
        except httpx.TransportError as e:
            raise AgentTransportError(f"agent service unreachable: {e}") from e

        if response.status_code >= 400:
            logger.warning(
                "agent_service_error_status",
                agent=request.agent_identity,
                status_code=response.status_code,
            )
            return AgentResponse(raw_text=response.text, transport_success=False)

        try:
            data = response.json()
        except ValueError as e:
            raise AgentTransportError("agent service returned invalid JSON") from e

        return AgentResponse(
            raw_text=str(data.get("text", "")),
            turns_used=int(data.get("turns_used", 0)),
            transport_success=bool(data.get("success", True)),
        )

    async def close(self) -> None:
        await self._client.aclose()

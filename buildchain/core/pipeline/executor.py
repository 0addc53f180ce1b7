"""
Phase Executor - run one phase against the agent execution service.

Holds an agent lease for the whole call and absorbs transient failures
(transport errors, timeouts, unparseable output) within a fixed attempt
budget.
"""

import asyncio
from dataclasses import dataclass
from typing import Optional

import structlog

from buildchain.core.models import ModelTier
from buildchain.core.pipeline.agent_client import AgentExecutionService, AgentRequest
from buildchain.core.pipeline.agent_resources import AgentResourceManager
from buildchain.core.pipeline.errors import (
    AgentTransportError,
    ParseError,
    PhaseExecutionError,
)
from buildchain.core.pipeline.output_parser import PhaseParser, PhaseResult

logger = structlog.get_logger()

RETRYABLE_ERRORS = (AgentTransportError, ParseError, TimeoutError, asyncio.TimeoutError)


@dataclass
class PhaseOutput:
    """Raw text of the successful attempt plus its parsed result, if any."""
    raw_text: str
    parsed: Optional[PhaseResult]
    attempts: int
    turns_used: int = 0


class PhaseExecutor:
    """
    Generic "run one phase" primitive.

    A transported reply that reports a business failure (e.g. a failing
    verification) is returned as-is; deciding what to do about it belongs to
    the retry loop controller.
    """

    MAX_ATTEMPTS = 3
    BACKOFF_SECONDS = 2.0
    DEFAULT_MAX_TURNS = 100

    def __init__(
        self,
        resources: AgentResourceManager,
        service: AgentExecutionService,
        models: dict[ModelTier, str],
        max_attempts: int = MAX_ATTEMPTS,
        backoff_seconds: float = BACKOFF_SECONDS,
        default_max_turns: int = DEFAULT_MAX_TURNS,
    ):
        self.resources = resources
        self.service = service
        self.models = models
        self.max_attempts = max_attempts
        self.backoff_seconds = backoff_seconds
        self.default_max_turns = default_max_turns

    async def run(
        self,
        agent_identity: str,
        prompt: str,
        model_tier: ModelTier,
        max_turns: Optional[int] = None,
    ) -> str:
        """Run a phase and return its raw output."""
        output = await self.run_parsed(agent_identity, prompt, model_tier, max_turns)
        return output.raw_text

    async def run_parsed(
        self,
        agent_identity: str,
        prompt: str,
        model_tier: ModelTier,
        max_turns: Optional[int] = None,
        parser: Optional[PhaseParser] = None,
    ) -> PhaseOutput:
        """
        Run a phase and parse its output.

        Raises:
            ResourceAcquisitionError: The agent definition could not be leased (not retried)
            PhaseExecutionError: Every attempt failed to transport or parse
        """
        request = AgentRequest(
            agent_identity=agent_identity,
            prompt=prompt,
            model=self.models[model_tier],
            model_tier=model_tier,
            max_turns=max_turns or self.default_max_turns,
        )

        async with self.resources.lease(agent_identity):
            last_error: Optional[Exception] = None

            for attempt in range(1, self.max_attempts + 1):
                try:
                    response = await self.service.execute(request)
                    if not response.transport_success:
                        raise AgentTransportError(
                            f"agent '{agent_identity}' reported a transport failure"
                        )
                    parsed = parser(response.raw_text) if parser else None
                    return PhaseOutput(
                        raw_text=response.raw_text,
                        parsed=parsed,
                        attempts=attempt,
                        turns_used=response.turns_used,
                    )
                except RETRYABLE_ERRORS as e:
                    last_error = e
                    logger.warning(
                        "phase_attempt_failed",
                        agent=agent_identity,
                        attempt=attempt,
                        max_attempts=self.max_attempts,
                        error=str(e) or type(e).__name__,
                    )
                    if attempt < self.max_attempts and self.backoff_seconds:
                        await asyncio.sleep(self.backoff_seconds)

        raise PhaseExecutionError(agent_identity, self.max_attempts, last_error)

"""
Phase Runner - execute, record and persist one phase attempt.

Shared by the phase sequencer and the retry loop controller so that every
attempt, whatever drives it, leaves exactly one PhaseRecord and one chain
state write behind.
"""

import asyncio
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Optional
from uuid import UUID

import structlog

from buildchain.core.models import BuildPhase, PhaseOutcome
from buildchain.core.pipeline.audit import AuditSink, safe_append
from buildchain.core.pipeline.catalogs import LocalizationCatalog, phase_message_key
from buildchain.core.pipeline.chain_state import ChainState, ChainStateStore, PhaseAttempt, utcnow
from buildchain.core.pipeline.errors import (
    CancelledByUser,
    PhaseExecutionError,
    PhaseValidationError,
    ResourceAcquisitionError,
)
from buildchain.core.pipeline.executor import PhaseExecutor
from buildchain.core.pipeline.notifications import ChannelNotifier, safe_send
from buildchain.core.pipeline.output_parser import PhaseParser, PhaseResult
from buildchain.core.pipeline.phases import PHASE_SPECS
from buildchain.core.pipeline.validation import FileCheck, check_files

logger = structlog.get_logger()

ResultHook = Callable[[ChainState, Optional[PhaseResult]], None]


@dataclass
class BuildContext:
    """Everything a running session carries between phases."""
    session_id: UUID
    requester_id: str
    channel: str
    locale: str
    request_text: str
    state: ChainState
    cancel_event: asyncio.Event = field(default_factory=asyncio.Event)

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    @property
    def project_dir(self) -> str:
        return self.state.artifacts.get("project_dir", "")


class PhaseRunner:
    """Runs a phase through the executor and commits its outcome."""

    def __init__(
        self,
        executor: PhaseExecutor,
        store: ChainStateStore,
        catalog: Optional[LocalizationCatalog] = None,
        notifier: Optional[ChannelNotifier] = None,
        audit: Optional[AuditSink] = None,
    ):
        self.executor = executor
        self.store = store
        self.catalog = catalog
        self.notifier = notifier
        self.audit = audit

    async def notify(self, ctx: BuildContext, text: str) -> None:
        await safe_send(self.notifier, ctx.requester_id, ctx.channel, text)

    async def run(
        self,
        ctx: BuildContext,
        phase: BuildPhase,
        prompt: str,
        parser: Optional[PhaseParser] = None,
        on_result: Optional[ResultHook] = None,
        announce: bool = True,
    ) -> Optional[PhaseResult]:
        """
        Run one attempt of `phase` and persist it.

        `on_result` mutates the chain state before it is written, so loop
        counters land in the same transaction as the record.

        Raises:
            CancelledByUser: Cancellation was observed; the result is discarded
            PhaseExecutionError, ResourceAcquisitionError: The attempt failed terminally
            PhaseValidationError: A required project file is missing before or after the attempt
        """
        if ctx.cancelled:
            raise CancelledByUser(ctx.session_id)

        spec = PHASE_SPECS[phase]
        state = ctx.state
        attempt = state.attempts_for(phase) + 1

        if announce and self.catalog is not None:
            await self.notify(ctx, self.catalog.lookup(phase_message_key(phase), ctx.locale))

        self.check_project(ctx, phase, spec.requires)

        logger.info(
            "phase_started",
            session_id=str(ctx.session_id),
            phase=phase.value,
            attempt=attempt,
        )
        started_at = utcnow()

        try:
            output = await self.executor.run_parsed(
                spec.agent,
                prompt,
                spec.model_tier,
                spec.max_turns,
                parser=parser,
            )
        except (PhaseExecutionError, ResourceAcquisitionError) as e:
            if ctx.cancelled:
                raise CancelledByUser(ctx.session_id) from e
            record = PhaseAttempt(
                session_id=ctx.session_id,
                phase=phase,
                attempt=attempt,
                agent_name=spec.agent,
                outcome=PhaseOutcome.ERROR,
                started_at=started_at,
                completed_at=utcnow(),
                error_message=str(e),
            )
            state.history.append(record)
            await self.store.save(ctx.session_id, state, record)
            await safe_append(self.audit, ctx.session_id, phase.value, record.outcome.value,
                              record.completed_at, str(e))
            raise

        # Cancelled while the agent was running: drop the late result
        if ctx.cancelled:
            logger.info("phase_result_discarded", session_id=str(ctx.session_id), phase=phase.value)
            raise CancelledByUser(ctx.session_id)

        parsed = output.parsed
        outcome = PhaseOutcome.SUCCESS
        if parsed is not None and not parsed.succeeded:
            outcome = PhaseOutcome.FAILURE

        record = PhaseAttempt(
            session_id=ctx.session_id,
            phase=phase,
            attempt=attempt,
            agent_name=spec.agent,
            outcome=outcome,
            started_at=started_at,
            completed_at=utcnow(),
            raw_output=output.raw_text,
            parsed_result=parsed.to_dict() if parsed is not None else None,
        )

        state.phase = phase
        state.history.append(record)
        if parsed is not None:
            state.store_result(parsed)
        if on_result is not None:
            on_result(state, parsed)

        await self.store.save(ctx.session_id, state, record)
        await safe_append(self.audit, ctx.session_id, phase.value, outcome.value, record.completed_at)

        logger.info(
            "phase_completed",
            session_id=str(ctx.session_id),
            phase=phase.value,
            attempt=attempt,
            outcome=outcome.value,
            executor_attempts=output.attempts,
        )
        self.check_project(ctx, phase, spec.produces)
        return parsed

    def check_project(self, ctx: BuildContext, phase: BuildPhase, check: Optional[FileCheck]) -> None:
        # Sessions that never got a project directory skip file checks
        if check is None or not ctx.project_dir:
            return
        try:
            check_files(Path(ctx.project_dir), check, phase)
        except PhaseValidationError as e:
            logger.warning(
                "phase_file_check_failed",
                session_id=str(ctx.session_id),
                phase=phase.value,
                message_key=e.message_key,
                path=e.path,
            )
            raise

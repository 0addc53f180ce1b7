"""
Build Orchestrator - Phase sequencer for build sessions.

Drives one confirmed BuildSession through the fixed phase order, delegating
the developer/qa/reviewer stretch to the retry loop controller.
"""

import asyncio
import logging
from pathlib import Path
from typing import Awaitable, Callable, Optional
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from buildchain.core.models import BuildPhase, BuildSession, BuildStatus
from buildchain.core.pipeline.audit import safe_append
from buildchain.core.pipeline.catalogs import LocalizationCatalog
from buildchain.core.pipeline.chain_state import ChainState, ChainStateStore, utcnow
from buildchain.core.pipeline.errors import (
    CancelledByUser,
    PhaseExecutionError,
    PhaseValidationError,
    ResourceAcquisitionError,
    RetryBudgetExhausted,
)
from buildchain.core.pipeline.output_parser import (
    DiscoveryResult,
    ProjectBrief,
    parse_build_summary,
    parse_discovery,
    parse_final_discovery,
    parse_project_brief,
)
from buildchain.core.pipeline.phases import LOOP_PHASES, PHASE_ORDER
from buildchain.core.pipeline.prompts import (
    ANALYST_PROMPT,
    ARCHITECT_PROMPT,
    DELIVERY_PROMPT,
    DISCOVERY_FINAL,
    DISCOVERY_FOLLOWUP,
    DISCOVERY_PROMPT,
    TEST_WRITER_PROMPT,
    format_transcript,
)
from buildchain.core.pipeline.retry_loops import LoopState, RetryLoopController
from buildchain.core.pipeline.runner import BuildContext, PhaseRunner

logger = logging.getLogger(__name__)

# Answers a round of discovery questions; None leaves them to the agent
ClarifyHook = Callable[[BuildContext, list[str]], Awaitable[Optional[str]]]


def format_brief(brief: ProjectBrief) -> str:
    """Plain-text rendering of a ProjectBrief for downstream prompts."""
    lines = [
        f"Project: {brief.name}",
        f"Language: {brief.language}",
        f"Database: {brief.database}",
        f"Frontend: {'yes' if brief.frontend else 'no'}",
        f"Scope: {brief.scope}",
    ]
    if brief.components:
        lines.append("Components:")
        lines.extend(f"- {component}" for component in brief.components)
    return "\n".join(lines)


class BuildOrchestrator:
    """
    Phase sequencer.

    Order: discovery -> analyst -> architect -> test-writer ->
    (developer <-> qa) -> reviewer loop -> delivery

    Features:
    - Resumes at the phase after the last persisted record
    - Bounded discovery sub-loop with optional clarification hook
    - One task per session; cancellation is persisted before the task sees it
    - Localized progress and outcome messages
    """

    MAX_DISCOVERY_ROUNDS = 3

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        runner: PhaseRunner,
        loops: RetryLoopController,
        store: ChainStateStore,
        catalog: LocalizationCatalog,
        workspace_dir: Path,
        clarify: Optional[ClarifyHook] = None,
        max_discovery_rounds: int = MAX_DISCOVERY_ROUNDS,
    ):
        self.session_factory = session_factory
        self.runner = runner
        self.loops = loops
        self.store = store
        self.catalog = catalog
        self.workspace_dir = Path(workspace_dir)
        self.clarify = clarify
        self.max_discovery_rounds = max_discovery_rounds

        self._tasks: dict[UUID, asyncio.Task] = {}
        self._contexts: dict[UUID, BuildContext] = {}

    @property
    def builds_dir(self) -> Path:
        return self.workspace_dir / "builds"

    @property
    def skills_dir(self) -> Path:
        return self.workspace_dir / "skills"

    # ==========================================================================
    # Task Management
    # ==========================================================================

    def launch(self, session_id: UUID) -> asyncio.Task:
        """
        Start driving a session in the background.

        A session that already has a live task gets that task back.
        """
        task = self._tasks.get(session_id)
        if task is not None and not task.done():
            return task

        task = asyncio.create_task(self.run(session_id), name=f"build-{session_id}")
        self._tasks[session_id] = task
        task.add_done_callback(lambda done: self._forget(session_id, done))
        return task

    def _forget(self, session_id: UUID, task: asyncio.Task) -> None:
        if self._tasks.get(session_id) is task:
            del self._tasks[session_id]

    def is_active(self, session_id: UUID) -> bool:
        task = self._tasks.get(session_id)
        return task is not None and not task.done()

    @property
    def active_sessions(self) -> list[UUID]:
        return [session_id for session_id, task in self._tasks.items() if not task.done()]

    async def cancel(self, session_id: UUID, reason: Optional[str] = None) -> bool:
        """
        Cancel a session.

        The cancellation is persisted first; a phase still running finishes
        but its result is discarded.

        Returns:
            False if the session had already reached a terminal status
        """
        cancelled = await self.store.mark_cancelled(session_id, reason)
        ctx = self._contexts.get(session_id)
        if ctx is not None:
            ctx.cancel_event.set()
        return cancelled

    async def resume_incomplete(self) -> list[UUID]:
        """Relaunch every session left running by a previous process."""
        async with self.session_factory() as db:
            result = await db.execute(
                select(BuildSession.id).where(BuildSession.status == BuildStatus.RUNNING)
            )
            session_ids = list(result.scalars().all())

        for session_id in session_ids:
            logger.info(f"Resuming build session {session_id}")
            self.launch(session_id)
        return session_ids

    async def shutdown(self) -> None:
        """Stop live tasks. Their sessions stay running and resume on next start."""
        tasks = [task for task in self._tasks.values() if not task.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        logger.info(f"Stopped {len(tasks)} build task(s)")

    # ==========================================================================
    # Execution
    # ==========================================================================

    def next_phase(self, state: ChainState) -> Optional[BuildPhase]:
        """
        The phase to run next given persisted progress; None when done.

        Raises:
            RetryBudgetExhausted: A loop counter already sits at its cap
        """
        phase = state.phase

        if phase is None:
            return BuildPhase.DISCOVERY

        if phase == BuildPhase.DISCOVERY:
            if state.discovery.get("complete"):
                return BuildPhase.ANALYST
            return BuildPhase.DISCOVERY

        if phase in LOOP_PHASES:
            loop_state, _ = self.loops.resume_point(state)
            if loop_state == LoopState.DELIVERING:
                return BuildPhase.DELIVERY
            return BuildPhase.DEVELOPER

        if phase == BuildPhase.DELIVERY:
            return None

        return PHASE_ORDER[PHASE_ORDER.index(phase) + 1]

    async def run(self, session_id: UUID) -> Optional[BuildStatus]:
        """
        Execute a session from its persisted position to a terminal status.

        Returns:
            Final status, or None if the session was missing or already terminal
        """
        ctx = await self._load_context(session_id)
        if ctx is None:
            return None

        self._contexts[session_id] = ctx
        logger.info(f"Starting build session {session_id} at {self.next_phase_name(ctx.state)}")

        try:
            await self._drive(ctx)

        except CancelledByUser:
            await self._on_cancelled(ctx)

        except RetryBudgetExhausted as e:
            key = "build.qa_exhausted" if e.phase == "qa" else "build.review_exhausted"
            message = self.catalog.render(key, ctx.locale, attempts=e.attempts, feedback=e.feedback)
            await self._finish(ctx, BuildStatus.FAILED, message)

        except PhaseValidationError as e:
            message = self.catalog.render(e.message_key, ctx.locale, phase=e.phase.value, path=e.path)
            await self._finish(ctx, BuildStatus.FAILED, message)

        except (PhaseExecutionError, ResourceAcquisitionError) as e:
            message = self.catalog.render("build.failed", ctx.locale, reason=str(e))
            await self._finish(ctx, BuildStatus.FAILED, message)

        except Exception as e:
            logger.exception(f"Build session {session_id} crashed: {e}")
            message = self.catalog.render("build.failed", ctx.locale, reason=str(e))
            await self._finish(ctx, BuildStatus.FAILED, message)

        else:
            await self._finish(ctx, BuildStatus.SUCCEEDED, self._success_message(ctx))

        finally:
            self._contexts.pop(session_id, None)

        logger.info(f"Build session {session_id} finished with status {ctx.state.status.value}")
        return ctx.state.status

    def next_phase_name(self, state: ChainState) -> str:
        try:
            phase = self.next_phase(state)
        except RetryBudgetExhausted:
            return "exhausted loop"
        return phase.value if phase else "completion"

    async def _load_context(self, session_id: UUID) -> Optional[BuildContext]:
        async with self.session_factory() as db:
            session = await db.get(BuildSession, session_id)
            if session is None:
                logger.warning(f"Build session {session_id} not found")
                return None
            if session.status.is_terminal:
                logger.info(f"Build session {session_id} is already {session.status.value}")
                return None

            requester_id = session.requester_id
            channel = session.channel
            locale = session.locale
            request_text = session.request_text

        state = await self.store.load(session_id)
        if state is None:
            state = ChainState(session_id=session_id)
        state.status = BuildStatus.RUNNING

        return BuildContext(
            session_id=session_id,
            requester_id=requester_id,
            channel=channel,
            locale=locale,
            request_text=request_text,
            state=state,
        )

    async def _drive(self, ctx: BuildContext) -> None:
        phase = self.next_phase(ctx.state)

        while phase is not None:
            if ctx.cancelled:
                raise CancelledByUser(ctx.session_id)

            if phase == BuildPhase.DISCOVERY:
                await self._run_discovery_round(ctx)
            elif phase == BuildPhase.ANALYST:
                await self._run_analyst(ctx)
            elif phase == BuildPhase.ARCHITECT:
                await self._run_architect(ctx)
            elif phase == BuildPhase.TEST_WRITER:
                await self._run_test_writer(ctx)
            elif phase in LOOP_PHASES:
                await self.loops.run(ctx)
            elif phase == BuildPhase.DELIVERY:
                await self._run_delivery(ctx)

            phase = self.next_phase(ctx.state)

    # ==========================================================================
    # Phases
    # ==========================================================================

    async def _run_discovery_round(self, ctx: BuildContext) -> None:
        """One discovery round; the final round must produce the brief."""
        rounds = ctx.state.discovery["rounds"]
        round_number = len(rounds) + 1
        final = round_number >= self.max_discovery_rounds

        if final:
            prompt = DISCOVERY_FINAL.format(
                request=ctx.request_text,
                transcript=format_transcript(rounds),
            )
        elif rounds:
            prompt = DISCOVERY_FOLLOWUP.format(
                request=ctx.request_text,
                transcript=format_transcript(rounds),
                round=round_number,
                max_rounds=self.max_discovery_rounds,
            )
        else:
            prompt = DISCOVERY_PROMPT.format(request=ctx.request_text)

        def record_round(state: ChainState, result: DiscoveryResult) -> None:
            discovery = dict(state.discovery)
            discovery["rounds"] = list(discovery["rounds"])
            if result.complete:
                discovery["complete"] = True
                discovery["brief"] = result.brief
            else:
                discovery["rounds"].append({"questions": result.questions, "answer": None})
            state.artifacts["discovery"] = discovery

        result = await self.runner.run(
            ctx,
            BuildPhase.DISCOVERY,
            prompt,
            parser=parse_final_discovery if final else parse_discovery,
            on_result=record_round,
            announce=round_number == 1,
        )

        if result.complete or self.clarify is None:
            return

        answer = await self.clarify(ctx, result.questions)
        if answer:
            ctx.state.artifacts["discovery"]["rounds"][-1]["answer"] = answer
            await self.store.save(ctx.session_id, ctx.state)

    async def _run_analyst(self, ctx: BuildContext) -> None:
        refined = ctx.state.discovery.get("brief") or ctx.request_text

        def prepare_project(state: ChainState, brief: ProjectBrief) -> None:
            project_dir = self.builds_dir / brief.name
            project_dir.mkdir(parents=True, exist_ok=True)
            state.artifacts["project_dir"] = str(project_dir)
            state.artifacts["brief_text"] = format_brief(brief)

        brief = await self.runner.run(
            ctx,
            BuildPhase.ANALYST,
            ANALYST_PROMPT.format(brief=refined),
            parser=parse_project_brief,
            on_result=prepare_project,
        )

        await self.runner.notify(
            ctx,
            self.catalog.render("build.building", ctx.locale, name=brief.name, scope=brief.scope),
        )

    async def _run_architect(self, ctx: BuildContext) -> None:
        prompt = ARCHITECT_PROMPT.format(
            brief_text=ctx.state.artifacts.get("brief_text", ""),
            project_dir=ctx.project_dir,
        )
        await self.runner.run(ctx, BuildPhase.ARCHITECT, prompt)

    async def _run_test_writer(self, ctx: BuildContext) -> None:
        prompt = TEST_WRITER_PROMPT.format(project_dir=ctx.project_dir)
        await self.runner.run(ctx, BuildPhase.TEST_WRITER, prompt)

    async def _run_delivery(self, ctx: BuildContext) -> None:
        brief = ctx.state.brief
        prompt = DELIVERY_PROMPT.format(
            project_name=brief.name if brief else "",
            project_dir=ctx.project_dir,
            skills_dir=self.skills_dir,
        )
        await self.runner.run(ctx, BuildPhase.DELIVERY, prompt, parser=parse_build_summary)

    # ==========================================================================
    # Terminal States
    # ==========================================================================

    def _success_message(self, ctx: BuildContext) -> str:
        summary = ctx.state.summary
        brief = ctx.state.brief
        return self.catalog.render(
            "build.succeeded",
            ctx.locale,
            project=(summary and summary.project) or (brief.name if brief else ""),
            summary=summary.summary if summary else "",
            location=(summary and summary.location) or ctx.project_dir,
            language=(summary and summary.language) or (brief.language if brief else ""),
            usage=summary.usage if summary else "",
        )

    async def _finish(self, ctx: BuildContext, status: BuildStatus, message: str) -> None:
        ctx.state.status = status
        try:
            await self.store.save(ctx.session_id, ctx.state, message=message)
        except CancelledByUser:
            await self._on_cancelled(ctx)
            return

        await safe_append(self.runner.audit, ctx.session_id, None, status.value, utcnow(), message)
        await self.runner.notify(ctx, message)

    async def _on_cancelled(self, ctx: BuildContext) -> None:
        # Already persisted by cancel(); only report it
        ctx.state.status = BuildStatus.CANCELLED
        logger.info(f"Build session {ctx.session_id} cancelled, discarding in-flight results")
        await safe_append(self.runner.audit, ctx.session_id, None, BuildStatus.CANCELLED.value, utcnow())
        await self.runner.notify(ctx, self.catalog.lookup("build.cancelled", ctx.locale))

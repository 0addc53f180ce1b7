"""
Build Chain - Retry Loop Controller Tests
=========================================

Verification and review feedback loops, their caps and resume points.
"""

from pathlib import Path
from uuid import uuid4

import pytest

from buildchain.core.models import BuildPhase, PhaseOutcome
from buildchain.core.pipeline.agent_client import AgentResponse
from buildchain.core.pipeline.chain_state import ChainState, ChainStateStore
from buildchain.core.pipeline.errors import PhaseValidationError, RetryBudgetExhausted
from buildchain.core.pipeline.factory import BuildPipeline
from buildchain.core.pipeline.output_parser import ReviewResult, VerificationResult
from buildchain.core.pipeline.retry_loops import LoopState, RetryLoopController
from buildchain.core.pipeline.runner import BuildContext

from conftest import (
    ScriptedAgentService,
    create_build_session,
    qa_fail,
    review_changes,
    scaffold_project,
)


@pytest.fixture
def loops(pipeline: BuildPipeline) -> RetryLoopController:
    return pipeline.orchestrator.loops


@pytest.fixture
async def ctx(session_factory, project_dir: Path) -> BuildContext:
    session_id = await create_build_session(session_factory)
    scaffold_project(project_dir, "build-architect", "build-test-writer")
    state = ChainState(
        session_id=session_id,
        phase=BuildPhase.TEST_WRITER,
        artifacts={"project_dir": str(project_dir)},
    )
    return BuildContext(
        session_id=session_id,
        requester_id="user-1",
        channel="telegram",
        locale="en",
        request_text="build me a todo cli app",
        state=state,
    )


@pytest.fixture
def counter_snapshots(pipeline: BuildPipeline, monkeypatch) -> list[tuple[int, int]]:
    """Counters as seen by every chain state write."""
    snapshots: list[tuple[int, int]] = []
    store: ChainStateStore = pipeline.store
    original_save = store.save

    async def spy(session_id, state, record=None, message=None):
        snapshots.append((state.qa_attempts, state.review_attempts))
        await original_save(session_id, state, record, message)

    monkeypatch.setattr(store, "save", spy)
    return snapshots


# ==========================================================================
# Verification Loop
# ==========================================================================

class TestVerificationLoop:

    async def test_passes_first_time(self, loops, ctx, agent_service: ScriptedAgentService):
        await loops.run(ctx)

        assert agent_service.agents_called == ["build-developer", "build-qa", "build-reviewer"]
        assert ctx.state.qa_attempts == 0
        assert ctx.state.review_attempts == 0

    async def test_fails_twice_then_passes(
        self,
        loops,
        ctx,
        agent_service: ScriptedAgentService,
        pipeline: BuildPipeline,
    ):
        agent_service.script("build-qa", qa_fail("missing index"), qa_fail("slow query"))

        await loops.run(ctx)

        # The passing attempt does not count
        assert ctx.state.qa_attempts == 2
        assert agent_service.agents_called == [
            "build-developer", "build-qa",
            "build-developer", "build-qa",
            "build-developer", "build-qa",
            "build-reviewer",
        ]

        developer_prompts = [call.prompt for call in agent_service.calls_for("build-developer")]
        assert "missing index" in developer_prompts[1]
        assert "slow query" in developer_prompts[2]

        persisted = await pipeline.store.load(ctx.session_id)
        assert persisted.qa_attempts == 2
        assert [r.outcome for r in persisted.history if r.phase == BuildPhase.QA] == [
            PhaseOutcome.FAILURE,
            PhaseOutcome.FAILURE,
            PhaseOutcome.SUCCESS,
        ]

    async def test_exhausted_after_three_failures(
        self,
        loops,
        ctx,
        agent_service: ScriptedAgentService,
        pipeline: BuildPipeline,
        counter_snapshots,
    ):
        agent_service.script("build-qa", qa_fail("one"), qa_fail("two"), qa_fail("disk full"))

        with pytest.raises(RetryBudgetExhausted) as exc_info:
            await loops.run(ctx)

        assert exc_info.value.phase == "qa"
        assert exc_info.value.attempts == 3
        assert exc_info.value.feedback == "disk full"
        assert "build-reviewer" not in agent_service.agents_called
        assert len(agent_service.calls_for("build-developer")) == 3

        persisted = await pipeline.store.load(ctx.session_id)
        assert persisted.qa_attempts == 3
        assert max(qa for qa, _ in counter_snapshots) == 3


# ==========================================================================
# Review Loop
# ==========================================================================

class TestReviewLoop:

    async def test_changes_then_approval(self, loops, ctx, agent_service: ScriptedAgentService):
        agent_service.script("build-reviewer", review_changes("add input validation"), "REVIEW: APPROVED")

        await loops.run(ctx)

        assert ctx.state.review_attempts == 1
        assert agent_service.agents_called == [
            "build-developer", "build-qa", "build-reviewer",
            "build-developer", "build-qa", "build-reviewer",
        ]
        assert "add input validation" in agent_service.calls_for("build-developer")[1].prompt

    async def test_two_rejections_fail_with_second_feedback(
        self,
        loops,
        ctx,
        agent_service: ScriptedAgentService,
        counter_snapshots,
    ):
        agent_service.script(
            "build-reviewer",
            review_changes("rename module"),
            review_changes("remove unsafe block"),
        )

        with pytest.raises(RetryBudgetExhausted) as exc_info:
            await loops.run(ctx)

        assert exc_info.value.phase == "review"
        assert exc_info.value.feedback == "remove unsafe block"
        assert ctx.state.review_attempts == 2
        assert max(review for _, review in counter_snapshots) == 2

    async def test_review_feedback_reenters_verification(
        self,
        loops,
        ctx,
        agent_service: ScriptedAgentService,
    ):
        agent_service.script("build-reviewer", review_changes("handle errors"), "REVIEW: APPROVED")
        agent_service.script("build-qa", "VERIFICATION: PASS", qa_fail("new test fails"))

        await loops.run(ctx)

        # Counters are shared across both loops and never reset
        assert ctx.state.qa_attempts == 1
        assert ctx.state.review_attempts == 1
        assert agent_service.agents_called == [
            "build-developer", "build-qa", "build-reviewer",
            "build-developer", "build-qa",
            "build-developer", "build-qa", "build-reviewer",
        ]

    async def test_explicit_loop_entry_points(self, loops, ctx, agent_service: ScriptedAgentService):
        agent_service.script("build-qa", qa_fail("flaky"))

        verification = await loops.run_verification_loop(ctx)
        review = await loops.run_review_loop(ctx)

        assert verification.passed
        assert review.approved
        assert ctx.state.qa_attempts == 1


# ==========================================================================
# Project File Checks
# ==========================================================================

class TestFileChecks:
    """Loop phases refuse to start on a project missing their inputs."""

    async def test_developer_needs_tests(
        self,
        loops: RetryLoopController,
        ctx: BuildContext,
        agent_service: ScriptedAgentService,
        project_dir: Path,
    ):
        (project_dir / "tests" / "test_todo.py").unlink()

        with pytest.raises(PhaseValidationError) as exc_info:
            await loops.run(ctx)

        assert exc_info.value.phase == BuildPhase.DEVELOPER
        assert exc_info.value.message_key == "validation.no_tests"
        assert agent_service.calls == []

    async def test_qa_needs_sources(
        self,
        loops: RetryLoopController,
        ctx: BuildContext,
        agent_service: ScriptedAgentService,
    ):
        agent_service.produces("build-developer")

        with pytest.raises(PhaseValidationError) as exc_info:
            await loops.run(ctx)

        assert exc_info.value.phase == BuildPhase.QA
        assert exc_info.value.message_key == "validation.no_sources"
        assert agent_service.agents_called == ["build-developer"]

    async def test_sources_in_hidden_dirs_do_not_count(
        self,
        loops: RetryLoopController,
        ctx: BuildContext,
        agent_service: ScriptedAgentService,
    ):
        agent_service.produces("build-developer", ".cache/main.rs")

        with pytest.raises(PhaseValidationError):
            await loops.run(ctx)

    async def test_retry_iterations_are_checked_too(
        self,
        loops: RetryLoopController,
        ctx: BuildContext,
        agent_service: ScriptedAgentService,
        project_dir: Path,
    ):
        async def fail_and_wipe_sources(request):
            (project_dir / "src" / "main.rs").unlink()
            return AgentResponse(raw_text=qa_fail("crash on start"), turns_used=1)

        agent_service.script("build-qa", fail_and_wipe_sources)
        agent_service.produces("build-developer")
        scaffold_project(project_dir, "build-developer")

        with pytest.raises(PhaseValidationError):
            await loops.run(ctx)

        assert agent_service.agents_called == ["build-developer", "build-qa", "build-developer"]
        assert ctx.state.qa_attempts == 1


# ==========================================================================
# Resume Points
# ==========================================================================

class TestResumePoint:
    """The loop position is derived from persisted state."""

    @pytest.fixture
    def controller(self) -> RetryLoopController:
        return RetryLoopController(runner=None)

    def state(self, phase, **kwargs) -> ChainState:
        return ChainState(session_id=uuid4(), phase=phase, **kwargs)

    def test_before_loops(self, controller: RetryLoopController):
        assert controller.resume_point(self.state(BuildPhase.TEST_WRITER)) == (LoopState.DEVELOPING, "")

    def test_after_developer(self, controller: RetryLoopController):
        assert controller.resume_point(self.state(BuildPhase.DEVELOPER)) == (LoopState.VERIFYING, "")

    def test_after_failed_verification(self, controller: RetryLoopController):
        state = self.state(BuildPhase.QA, qa_attempts=1)
        state.store_result(VerificationResult(passed=False, feedback="null deref"))
        assert controller.resume_point(state) == (LoopState.DEVELOPING, "null deref")

    def test_after_passed_verification(self, controller: RetryLoopController):
        state = self.state(BuildPhase.QA)
        state.store_result(VerificationResult(passed=True))
        assert controller.resume_point(state) == (LoopState.REVIEWING, "")

    def test_after_rejected_review(self, controller: RetryLoopController):
        state = self.state(BuildPhase.REVIEWER, review_attempts=1)
        state.store_result(ReviewResult(approved=False, feedback="split file"))
        assert controller.resume_point(state) == (LoopState.DEVELOPING, "split file")

    def test_after_approval(self, controller: RetryLoopController):
        state = self.state(BuildPhase.REVIEWER)
        state.store_result(ReviewResult(approved=True))
        assert controller.resume_point(state) == (LoopState.DELIVERING, "")

    def test_exhausted_counter_raises(self, controller: RetryLoopController):
        state = self.state(BuildPhase.QA, qa_attempts=3)
        state.store_result(VerificationResult(passed=False, feedback="still broken"))
        with pytest.raises(RetryBudgetExhausted):
            controller.resume_point(state)

    async def test_resumed_session_keeps_counting(
        self,
        loops: RetryLoopController,
        ctx: BuildContext,
        agent_service: ScriptedAgentService,
    ):
        ctx.state.phase = BuildPhase.QA
        ctx.state.qa_attempts = 2
        ctx.state.store_result(VerificationResult(passed=False, feedback="timeout in test"))
        agent_service.script("build-qa", qa_fail("still timing out"))

        with pytest.raises(RetryBudgetExhausted) as exc_info:
            await loops.run(ctx)

        assert exc_info.value.feedback == "still timing out"
        assert ctx.state.qa_attempts == 3
        assert "timeout in test" in agent_service.calls_for("build-developer")[0].prompt

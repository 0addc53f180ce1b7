"""
Retry Loop Controller - the verification and review feedback loops.

    DEVELOPING -> VERIFYING -> DEVELOPING (fail) | REVIEWING (pass)
    REVIEWING  -> DEVELOPING (changes requested) | DELIVERING (approved)

Failed verifications and rejected reviews feed their text back into the
next developer prompt. Both counters live on ChainState, are bumped in the
same write as the failing record, and are never reset within a session.
"""

import logging
from enum import Enum

from buildchain.core.models import BuildPhase
from buildchain.core.pipeline.chain_state import ChainState
from buildchain.core.pipeline.errors import RetryBudgetExhausted
from buildchain.core.pipeline.output_parser import (
    ReviewResult,
    VerificationResult,
    parse_review_result,
    parse_verification_result,
)
from buildchain.core.pipeline.prompts import (
    DEVELOPER_PROMPT,
    DEVELOPER_RETRY_PROMPT,
    QA_PROMPT,
    REVIEWER_PROMPT,
)
from buildchain.core.pipeline.runner import BuildContext, PhaseRunner

logger = logging.getLogger(__name__)


class LoopState(str, Enum):
    DEVELOPING = "developing"
    VERIFYING = "verifying"
    REVIEWING = "reviewing"
    DELIVERING = "delivering"


class RetryLoopController:
    """
    Drives developer, QA and reviewer until the build is approved.

    A failing verification at `qa_attempts == MAX_QA_ITERATIONS` or a
    rejected review at `review_attempts == MAX_REVIEW_ITERATIONS` raises
    RetryBudgetExhausted carrying the last feedback.
    """

    MAX_QA_ITERATIONS = 3
    MAX_REVIEW_ITERATIONS = 2

    def __init__(
        self,
        runner: PhaseRunner,
        max_qa_iterations: int = MAX_QA_ITERATIONS,
        max_review_iterations: int = MAX_REVIEW_ITERATIONS,
    ):
        self.runner = runner
        self.max_qa_iterations = max_qa_iterations
        self.max_review_iterations = max_review_iterations

    # ==========================================================================
    # Resume
    # ==========================================================================

    def resume_point(self, state: ChainState) -> tuple[LoopState, str]:
        """
        Where to pick up given the last recorded phase.

        Returns:
            (loop state, feedback to fold into the next developer prompt)

        Raises:
            RetryBudgetExhausted: The persisted counters already hit their cap
        """
        phase = state.phase

        if phase == BuildPhase.DEVELOPER:
            return LoopState.VERIFYING, ""

        if phase == BuildPhase.QA:
            verification = state.verification
            if verification is None or verification.passed:
                return LoopState.REVIEWING, ""
            self._check_qa_budget(state, verification)
            return LoopState.DEVELOPING, verification.feedback

        if phase == BuildPhase.REVIEWER:
            review = state.review
            if review is None or review.approved:
                return LoopState.DELIVERING, ""
            self._check_review_budget(state, review)
            return LoopState.DEVELOPING, review.feedback

        if phase == BuildPhase.DELIVERY:
            return LoopState.DELIVERING, ""

        return LoopState.DEVELOPING, ""

    def _check_qa_budget(self, state: ChainState, result: VerificationResult) -> None:
        if state.qa_attempts >= self.max_qa_iterations:
            raise RetryBudgetExhausted("qa", state.qa_attempts, result.feedback)

    def _check_review_budget(self, state: ChainState, result: ReviewResult) -> None:
        if state.review_attempts >= self.max_review_iterations:
            raise RetryBudgetExhausted("review", state.review_attempts, result.feedback)

    # ==========================================================================
    # Loops
    # ==========================================================================

    async def run(self, ctx: BuildContext) -> None:
        """Run both loops from the session's resume point until delivery is due."""
        loop_state, feedback = self.resume_point(ctx.state)

        while loop_state != LoopState.DELIVERING:
            logger.info(f"Session {ctx.session_id}: {loop_state.value}")

            if loop_state == LoopState.DEVELOPING:
                await self.develop(ctx, feedback)
                loop_state = LoopState.VERIFYING

            elif loop_state == LoopState.VERIFYING:
                verification = await self.verify(ctx)
                if verification.passed:
                    loop_state = LoopState.REVIEWING
                else:
                    self._check_qa_budget(ctx.state, verification)
                    feedback = verification.feedback
                    loop_state = LoopState.DEVELOPING

            elif loop_state == LoopState.REVIEWING:
                review = await self.review(ctx)
                if review.approved:
                    loop_state = LoopState.DELIVERING
                else:
                    self._check_review_budget(ctx.state, review)
                    feedback = review.feedback
                    loop_state = LoopState.DEVELOPING

    async def run_verification_loop(self, ctx: BuildContext, feedback: str = "") -> VerificationResult:
        """Develop and verify until QA passes or the QA budget runs out."""
        while True:
            await self.develop(ctx, feedback)
            verification = await self.verify(ctx)
            if verification.passed:
                return verification
            self._check_qa_budget(ctx.state, verification)
            feedback = verification.feedback

    async def run_review_loop(self, ctx: BuildContext) -> ReviewResult:
        """Review; on requested changes re-enter the verification loop."""
        while True:
            review = await self.review(ctx)
            if review.approved:
                return review
            self._check_review_budget(ctx.state, review)
            await self.run_verification_loop(ctx, review.feedback)

    # ==========================================================================
    # Single Steps
    # ==========================================================================

    async def develop(self, ctx: BuildContext, feedback: str = "") -> None:
        if feedback:
            prompt = DEVELOPER_RETRY_PROMPT.format(project_dir=ctx.project_dir, feedback=feedback)
        else:
            prompt = DEVELOPER_PROMPT.format(project_dir=ctx.project_dir)
        await self.runner.run(ctx, BuildPhase.DEVELOPER, prompt)

    async def verify(self, ctx: BuildContext) -> VerificationResult:
        def count_failure(state: ChainState, result: VerificationResult) -> None:
            if not result.passed:
                state.qa_attempts += 1

        result = await self.runner.run(
            ctx,
            BuildPhase.QA,
            QA_PROMPT.format(project_dir=ctx.project_dir),
            parser=parse_verification_result,
            on_result=count_failure,
        )
        if not result.passed:
            logger.warning(
                f"Session {ctx.session_id}: verification failed "
                f"({ctx.state.qa_attempts}/{self.max_qa_iterations}): {result.feedback}"
            )
        return result

    async def review(self, ctx: BuildContext) -> ReviewResult:
        def count_rejection(state: ChainState, result: ReviewResult) -> None:
            if not result.approved:
                state.review_attempts += 1

        result = await self.runner.run(
            ctx,
            BuildPhase.REVIEWER,
            REVIEWER_PROMPT.format(project_dir=ctx.project_dir),
            parser=parse_review_result,
            on_result=count_rejection,
        )
        if not result.approved:
            logger.warning(
                f"Session {ctx.session_id}: changes requested "
                f"({ctx.state.review_attempts}/{self.max_review_iterations}): {result.feedback}"
            )
        return result

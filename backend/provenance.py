"""
Grade provenance and the single write path for grades.

Every grade carries who produced it:

    prior \\ writer    automatic    human
    none              AUTOMATIC    HUMAN
    AUTOMATIC         AUTOMATIC    HUMAN_OVERRIDE
    HUMAN             skip         HUMAN
    HUMAN_OVERRIDE    skip         HUMAN_OVERRIDE

HUMAN_OVERRIDE is the human lock. Only a forced re-grade takes it away.
All writes are compare-and-write against the grade's ETag.
"""
import logging
import math
from typing import Any, Optional

from attempt_status import AttemptStateMachine
from attempt_store import AttemptStore
from constants import CONTAINER, SCORE_PRECISION, WRITE_CONFLICT_RETRIES
from database import WriteConflictError, batch_create, batch_replace, BatchOperation
from datetime_utils import now_utc
from error_utils import ValidationError
from models import Grade, GradeProvenance, GradeWriteOutcome, GradeWriteResult, grade_id_for

logger = logging.getLogger(__name__)


def next_provenance(prior: Optional[GradeProvenance], human: bool) -> Optional[GradeProvenance]:
    """Resulting provenance for a write, or None when the write must be skipped."""
    if prior is None:
        return GradeProvenance.HUMAN if human else GradeProvenance.AUTOMATIC
    if prior == GradeProvenance.AUTOMATIC:
        return GradeProvenance.HUMAN_OVERRIDE if human else GradeProvenance.AUTOMATIC
    if not human:
        return None
    return prior


def clamp_score(value: float, max_points: Optional[float]) -> float:
    value = max(0.0, value)
    if max_points is not None:
        value = min(value, max_points)
    return round(value, SCORE_PRECISION)


def parse_score(value: Any) -> float:
    """Human input must be a finite number; booleans are not scores."""
    if isinstance(value, bool):
        raise ValidationError("Score must be a number")
    try:
        score = float(value)
    except (TypeError, ValueError):
        raise ValidationError("Score must be a number")
    if not math.isfinite(score):
        raise ValidationError("Score must be a finite number")
    return score


def plan_automatic_grade(
    prior: Optional[Grade],
    attempt_id: str,
    answer_id: str,
    score: float,
    feedback: Optional[str] = None,
    rationale: Optional[str] = None,
) -> Optional[Grade]:
    """The grade an automatic writer would store, or None when a human owns the answer."""
    provenance = next_provenance(prior.provenance if prior else None, human=False)
    if provenance is None:
        return None
    return Grade(
        id=grade_id_for(answer_id),
        attempt_id=attempt_id,
        answer_id=answer_id,
        score=score,
        feedback=feedback,
        rationale=rationale,
        author=None,
        provenance=provenance,
        graded_at=now_utc(),
        etag=prior.etag if prior else None,
    )


def grade_batch_operation(planned: Grade, prior: Optional[Grade]) -> BatchOperation:
    """Create-only when no grade existed, otherwise replace guarded by the prior ETag."""
    if prior is None:
        return batch_create(planned.to_document())
    return batch_replace(planned.to_document(), etag=prior.etag)


class GradeWriter:
    def __init__(self, db, state_machine: Optional[AttemptStateMachine] = None):
        self.db = db
        self.container = CONTAINER["ATTEMPTS"]
        self.store = AttemptStore(db)
        self.state_machine = state_machine or AttemptStateMachine(db)

    async def _compare_and_write(self, attempt_id: str, answer_id: str, decide) -> GradeWriteResult:
        for _ in range(WRITE_CONFLICT_RETRIES):
            prior = await self.store.get_grade(attempt_id, answer_id)
            planned = decide(prior)
            if planned is None:
                return GradeWriteResult(outcome=GradeWriteOutcome.SKIPPED, grade=prior)
            try:
                if prior is None:
                    saved = await self.db.create_item(self.container, planned.to_document())
                else:
                    saved = await self.db.replace_item(self.container, planned.to_document(), etag=prior.etag)
            except WriteConflictError:
                logger.info(f"Grade for answer {answer_id} changed underneath us; re-deciding")
                continue
            await self.state_machine.recompute_status(attempt_id)
            return GradeWriteResult(outcome=GradeWriteOutcome.WRITTEN, grade=Grade.model_validate(saved))

        raise WriteConflictError(f"Could not write grade for answer {answer_id}")

    async def write_automatic(
        self,
        attempt_id: str,
        answer_id: str,
        score: float,
        feedback: Optional[str] = None,
        rationale: Optional[str] = None,
        max_points: Optional[float] = None,
    ) -> GradeWriteResult:
        """Automatic scorers never overwrite a human grade; such writes are silent no-ops."""
        score = clamp_score(score, max_points)

        def decide(prior: Optional[Grade]) -> Optional[Grade]:
            return plan_automatic_grade(prior, attempt_id, answer_id, score, feedback, rationale)

        result = await self._compare_and_write(attempt_id, answer_id, decide)
        if result.outcome == GradeWriteOutcome.SKIPPED:
            logger.info(f"Skipped automatic grade for answer {answer_id}: human grade present")
        return result

    async def write_human(
        self,
        attempt_id: str,
        answer_id: str,
        score: Any,
        grader_id: str,
        feedback: Optional[str] = None,
    ) -> GradeWriteResult:
        value = parse_score(score)
        attempt = await self.store.get_attempt(attempt_id)
        answer = await self.store.get_answer(attempt_id, answer_id)
        exam = await self.store.get_exam(attempt.exam_id)
        question = exam.question(answer.question_id)
        max_points = question.resolved_max_points if question else 0.0
        if max_points <= 0:
            raise ValidationError("Question has no gradable points")
        value = clamp_score(value, max_points)

        def decide(prior: Optional[Grade]) -> Optional[Grade]:
            provenance = next_provenance(prior.provenance if prior else None, human=True)
            return Grade(
                id=grade_id_for(answer_id),
                attempt_id=attempt_id,
                answer_id=answer_id,
                score=value,
                feedback=feedback,
                rationale=prior.rationale if prior else None,
                author=grader_id,
                provenance=provenance,
                graded_at=now_utc(),
            )

        result = await self._compare_and_write(attempt_id, answer_id, decide)
        logger.info(f"Human grade by {grader_id} on answer {answer_id}: {value} ({result.grade.provenance.value})")
        return result

    async def clear_provenance(self, attempt_id: str, answer_id: str) -> Optional[Grade]:
        """
        Forced re-grade: the one sanctioned way to lift a human lock. The
        score is kept; author and lock are cleared so the next automatic job
        may overwrite it.
        """
        for _ in range(WRITE_CONFLICT_RETRIES):
            prior = await self.store.get_grade(attempt_id, answer_id)
            if prior is None or (prior.provenance == GradeProvenance.AUTOMATIC and prior.author is None):
                return prior
            reset = prior.model_copy(update={"author": None, "provenance": GradeProvenance.AUTOMATIC})
            try:
                saved = await self.db.replace_item(self.container, reset.to_document(), etag=prior.etag)
            except WriteConflictError:
                continue
            logger.info(f"Cleared {prior.provenance.value} provenance on answer {answer_id} for re-grade")
            return Grade.model_validate(saved)

        raise WriteConflictError(f"Could not reset grade for answer {answer_id}")

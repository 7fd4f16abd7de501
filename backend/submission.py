"""
Attempt lifecycle: start, answer autosave, proctor event ingestion, submit.

Submit is the one place several things must happen exactly once: the
idempotency claim, the status flip to SUBMITTED and the inline automatic
grades for multiple-choice answers are committed in a single transactional
batch on the attempt partition.
"""
import hashlib
import logging
from datetime import timedelta
from typing import Any, List, Optional, Tuple

import auto_scorer
from attempt_status import AttemptStateMachine
from attempt_store import AttemptStore
from constants import (
    AUTO_ENQUEUE_ON_SUBMIT,
    CONTAINER,
    SUBMIT_GRACE_PERIOD_SECONDS,
    WRITE_CONFLICT_RETRIES,
)
from database import BatchConflictError, WriteConflictError, batch_replace
from datetime_utils import ensure_aware, now_utc
from error_utils import NotFoundError, QueueUnavailableError, ValidationError
from grading_orchestrator import GradingOrchestrator
from integrity import OPERATION_PROCTOR, OPERATION_SUBMIT, IntegrityGuard, issue_nonce
from models import (
    Answer,
    AnswerSegment,
    Attempt,
    AttemptStatus,
    AttemptSummary,
    AutosaveResponse,
    AutoScoredAnswer,
    Exam,
    ProctorEventResponse,
    QuestionType,
    SubmitResponse,
    answer_id_for,
    attempt_id_for,
)
from provenance import grade_batch_operation, plan_automatic_grade
from rate_limit import SlidingWindowRateLimiter, proctor_limiter, submit_limiter

logger = logging.getLogger(__name__)


def auto_submit_request_id(attempt_id: str) -> str:
    """Deterministic request id for time-expiry submits so the sweep can run repeatedly."""
    return f"auto-expiry-{attempt_id}"


def check_submission_window(exam: Exam, now=None) -> None:
    now = now or now_utc()
    if exam.start_at is not None and now < ensure_aware(exam.start_at):
        raise ValidationError("Exam has not started yet")
    end_at = exam.ends_at()
    if end_at is not None and now > end_at + timedelta(seconds=SUBMIT_GRACE_PERIOD_SECONDS):
        raise ValidationError("Exam has ended, submission not allowed")


class SubmissionService:
    def __init__(
        self,
        db,
        orchestrator: Optional[GradingOrchestrator] = None,
        state_machine: Optional[AttemptStateMachine] = None,
        submit_rate_limiter: Optional[SlidingWindowRateLimiter] = None,
        proctor_rate_limiter: Optional[SlidingWindowRateLimiter] = None,
        auto_enqueue: bool = AUTO_ENQUEUE_ON_SUBMIT,
    ):
        self.db = db
        self.store = AttemptStore(db)
        self.guard = IntegrityGuard(db)
        self.orchestrator = orchestrator
        self.state_machine = state_machine or AttemptStateMachine(db)
        self.submit_limiter = submit_rate_limiter or submit_limiter
        self.proctor_limiter = proctor_rate_limiter or proctor_limiter
        self.auto_enqueue = auto_enqueue

    async def _owned_attempt(self, attempt_id: str, student_id: Optional[str]) -> Attempt:
        attempt = await self.store.get_attempt(attempt_id)
        # Someone else's attempt looks exactly like a missing one
        if student_id is not None and attempt.student_id != student_id:
            raise NotFoundError(f"Attempt {attempt_id} not found")
        return attempt

    # ===== Start =====

    async def start_attempt(self, exam_id: str, student_id: str) -> Tuple[Attempt, str]:
        """Create the student's attempt, or return the existing one, with its nonce."""
        exam = await self.store.get_exam(exam_id)
        attempt_id = attempt_id_for(exam_id, student_id)

        existing = await self.store.find_attempt(attempt_id)
        if existing is not None:
            return existing, existing.integrity_nonce

        now = now_utc()
        if exam.start_at is not None and now < ensure_aware(exam.start_at):
            raise ValidationError("Exam has not started yet")
        end_at = exam.ends_at()
        if end_at is not None and now > end_at:
            raise ValidationError("Exam has ended")

        attempt = Attempt(
            id=attempt_id,
            attempt_id=attempt_id,
            exam_id=exam_id,
            student_id=student_id,
            status=AttemptStatus.IN_PROGRESS,
            started_at=now,
            integrity_nonce=issue_nonce(),
        )
        try:
            saved = await self.db.create_item(CONTAINER["ATTEMPTS"], attempt.to_document())
        except WriteConflictError:
            # A concurrent start created it first
            winner = await self.store.get_attempt(attempt_id)
            return winner, winner.integrity_nonce

        logger.info(f"Started attempt {attempt_id} for student {student_id} on exam {exam_id}")
        created = Attempt.model_validate(saved)
        return created, created.integrity_nonce

    # ===== Autosave =====

    async def autosave_answer(self, attempt_id: str, student_id: str, question_id: str,
                              segment_id: str, content: str) -> AutosaveResponse:
        attempt = await self._owned_attempt(attempt_id, student_id)
        if attempt.status != AttemptStatus.IN_PROGRESS:
            raise ValidationError("Attempt already submitted")

        exam = await self.store.get_exam(attempt.exam_id)
        check_submission_window(exam)
        question = exam.question(question_id)
        if question is None:
            raise ValidationError(f"Question {question_id} is not part of this exam")
        if segment_id not in {seg.id for seg in question.segments}:
            raise ValidationError(f"Segment {segment_id} is not part of question {question_id}")

        answer_id = answer_id_for(attempt_id, question_id)
        container = CONTAINER["ATTEMPTS"]
        for _ in range(WRITE_CONFLICT_RETRIES):
            doc = await self.db.read_item(container, answer_id, attempt_id)
            answer = Answer.model_validate(doc) if doc else Answer(
                id=answer_id, attempt_id=attempt_id, question_id=question_id
            )
            saved_at = now_utc()
            segments = [s for s in answer.segments if s.segment_id != segment_id]
            segments.append(AnswerSegment(segment_id=segment_id, content=content, saved_at=saved_at))
            answer.segments = segments
            try:
                if doc is None:
                    await self.db.create_item(container, answer.to_document())
                else:
                    await self.db.replace_item(container, answer.to_document(), etag=answer.etag)
            except WriteConflictError:
                continue
            return AutosaveResponse(answer_id=answer_id, saved_at=saved_at)

        raise WriteConflictError(f"Could not save answer {answer_id}")

    # ===== Proctor events =====

    async def record_proctor_event(self, attempt_id: str, student_id: str, event: Any,
                                   request_id: Any, nonce: Any) -> ProctorEventResponse:
        """Append one proctoring event; the request id makes retries harmless."""
        self.proctor_limiter.check(f"{student_id}:{attempt_id}")
        attempt = await self._owned_attempt(attempt_id, student_id)
        request_id = self.guard.verify(attempt, request_id, nonce)

        if await self.guard.is_replay(attempt_id, request_id, OPERATION_PROCTOR):
            return ProctorEventResponse(success=True, replay=True)

        digest = hashlib.sha256(request_id.encode("utf-8")).hexdigest()
        stamped = event.model_copy(update={"timestamp": now_utc()})
        doc = {"id": f"evt-{digest}", "attempt_id": attempt_id, **stamped.model_dump(mode="json")}
        try:
            await self.db.create_item(CONTAINER["PROCTOR_EVENTS"], doc)
        except WriteConflictError:
            logger.info(f"Proctor event for request already stored on attempt {attempt_id}")

        gate = await self.guard.begin_submission(
            attempt_id, request_id, nonce, operation=OPERATION_PROCTOR, attempt=attempt
        )
        return ProctorEventResponse(success=True, replay=gate.replay)

    # ===== Submit =====

    async def submit(self, attempt_id: str, student_id: Optional[str], request_id: Any, nonce: Any,
                     auto_submitted: bool = False) -> SubmitResponse:
        """
        Submit an attempt at most once per request id.

        A replay returns success without side effects. MCQ answers are scored
        inside the same commit; open-ended answers are queued afterwards.
        """
        if not auto_submitted:
            self.submit_limiter.check(f"{student_id}:{attempt_id}")

        for _ in range(WRITE_CONFLICT_RETRIES):
            attempt = await self._owned_attempt(attempt_id, student_id)
            validated_id = self.guard.verify(attempt, request_id, nonce)
            if await self.guard.is_replay(attempt_id, validated_id, OPERATION_SUBMIT):
                logger.info(f"Replayed submit for attempt {attempt_id}")
                return SubmitResponse(success=True, replay=True)

            if attempt.status != AttemptStatus.IN_PROGRESS:
                raise ValidationError("Attempt already submitted")
            exam = await self.store.get_exam(attempt.exam_id)
            if not auto_submitted:
                check_submission_window(exam)

            submitted = attempt.model_copy(update={
                "status": AttemptStatus.SUBMITTED,
                "submitted_at": now_utc(),
                "auto_submitted": auto_submitted,
            })
            operations = [batch_replace(submitted.to_document(), etag=attempt.etag)]
            scored = await self._plan_auto_grades(attempt_id, exam, operations)

            try:
                gate = await self.guard.begin_submission(
                    attempt_id, validated_id, nonce, operations=operations, attempt=attempt
                )
            except BatchConflictError as e:
                logger.info(f"Submit for attempt {attempt_id} conflicted at operation {e.failed_index}; retrying")
                continue

            if gate.replay:
                return SubmitResponse(success=True, replay=True)

            updated = await self.state_machine.recompute_status(attempt_id)
            logger.info(
                f"Attempt {attempt_id} submitted ({'auto' if auto_submitted else 'manual'}), "
                f"{len(scored)} answers auto-scored"
            )
            enqueued = await self._enqueue_remaining(attempt_id)
            return SubmitResponse(
                success=True,
                replay=False,
                attempt=AttemptSummary.from_attempt(updated),
                auto_scored=scored,
                grading_enqueued=enqueued,
            )

        raise WriteConflictError(f"Could not submit attempt {attempt_id}")

    async def _plan_auto_grades(self, attempt_id: str, exam: Exam, operations: List) -> List[AutoScoredAnswer]:
        """Append grade writes for every answered MCQ question; returns what was scored."""
        answers = await self.store.list_answers(attempt_id)
        grades = await self.store.grades_by_answer(attempt_id)
        scored = []
        for answer in answers:
            question = exam.question(answer.question_id)
            if question is None or question.type != QuestionType.MCQ:
                continue
            result = auto_scorer.score(question, answer.selections())
            prior = grades.get(answer.id)
            planned = plan_automatic_grade(prior, attempt_id, answer.id, result.score)
            if planned is not None:
                operations.append(grade_batch_operation(planned, prior))
            scored.append(AutoScoredAnswer(
                answer_id=answer.id,
                question_id=question.id,
                score=result.score,
                is_correct=result.is_correct,
                written=planned is not None,
            ))
        return scored

    async def _enqueue_remaining(self, attempt_id: str) -> Optional[int]:
        """Queue grading for still-ungraded answers; a queue outage never undoes the submit."""
        if not self.auto_enqueue or self.orchestrator is None:
            return None
        try:
            result = await self.orchestrator.enqueue(attempt_id, only_ungraded=True)
        except QueueUnavailableError as e:
            logger.error(f"Submitted attempt {attempt_id} but could not schedule grading: {e.message}")
            return None
        return result.enqueued

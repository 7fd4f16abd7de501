"""Schedules automatic grading jobs for the answers of an attempt or a whole exam."""
import logging
from typing import List, Optional, Tuple

from attempt_store import AttemptStore
from constants import GRADING_QUEUE_NAME
from error_utils import QueueUnavailableError, ValidationError
from grading_queue import QueueClient
from models import AttemptStatus, EnqueueResult, GradeProvenance, GradingJob, GradingProgress, GradingProgressStatus
from provenance import GradeWriter

logger = logging.getLogger(__name__)

HUMAN_PROVENANCE = (GradeProvenance.HUMAN, GradeProvenance.HUMAN_OVERRIDE)
SUBMITTED_STATUSES = (AttemptStatus.SUBMITTED, AttemptStatus.GRADING_IN_PROGRESS, AttemptStatus.GRADED)


class GradingOrchestrator:
    """
    Enqueueing is pure scheduling; nothing is scored here. Repeated calls only
    produce duplicate jobs, and duplicate jobs are no-ops on the write path.
    """

    def __init__(self, db, queue: Optional[QueueClient], grade_writer: Optional[GradeWriter] = None,
                 queue_name: str = GRADING_QUEUE_NAME):
        self.store = AttemptStore(db)
        self.queue = queue
        self.queue_name = queue_name
        self.grade_writer = grade_writer or GradeWriter(db)

    def _send(self, jobs: List[GradingJob]) -> None:
        if self.queue is None:
            raise QueueUnavailableError("Grading queue is not configured")
        if jobs:
            self.queue.send_messages(self.queue_name, [job.model_dump(by_alias=True) for job in jobs])

    async def _plan_jobs(self, attempt_id: str, only_ungraded: bool = False) -> Tuple[int, List[GradingJob]]:
        """Jobs for every answer not owned by a human grader, plus the answer count."""
        answers = await self.store.list_answers(attempt_id)
        grades = await self.store.grades_by_answer(attempt_id)

        jobs = []
        for answer in answers:
            grade = grades.get(answer.id)
            if grade is not None and (grade.provenance in HUMAN_PROVENANCE or grade.author is not None):
                continue
            if grade is not None and only_ungraded:
                continue
            jobs.append(GradingJob(attempt_id=attempt_id, answer_id=answer.id, question_id=answer.question_id))
        return len(answers), jobs

    async def _submitted_attempts(self, exam_id: str):
        await self.store.get_exam(exam_id)
        attempts = await self.store.list_attempts(exam_id=exam_id)
        return [a for a in attempts if a.status in SUBMITTED_STATUSES]

    async def enqueue(self, attempt_id: str, single_answer_id: Optional[str] = None,
                      force_regrade: bool = False, only_ungraded: bool = False) -> EnqueueResult:
        """
        Batch mode queues every answer not owned by a human grader. With
        only_ungraded, answers that already carry any grade are skipped too.
        """
        await self.store.get_attempt(attempt_id)

        if single_answer_id:
            return await self._enqueue_single(attempt_id, single_answer_id)
        if force_regrade:
            raise ValidationError("forceRegrade requires singleAnswerId")

        total, jobs = await self._plan_jobs(attempt_id, only_ungraded)
        self._send(jobs)
        result = EnqueueResult(total=total, enqueued=len(jobs), skipped=total - len(jobs))
        logger.info(f"Enqueued grading for attempt {attempt_id}: {result.enqueued}/{result.total} (skipped {result.skipped})")
        return result

    async def enqueue_exam(self, exam_id: str) -> EnqueueResult:
        """Grade-all: batch mode over every submitted attempt of the exam, sent as one batch."""
        attempts = await self._submitted_attempts(exam_id)

        total = 0
        jobs: List[GradingJob] = []
        for attempt in attempts:
            answer_count, attempt_jobs = await self._plan_jobs(attempt.id)
            total += answer_count
            jobs.extend(attempt_jobs)

        self._send(jobs)
        result = EnqueueResult(total=total, enqueued=len(jobs), skipped=total - len(jobs))
        logger.info(
            f"Enqueued grading for exam {exam_id}: {result.enqueued}/{result.total} answers "
            f"across {len(attempts)} attempts (skipped {result.skipped})"
        )
        return result

    async def grading_progress(self, exam_id: str) -> GradingProgress:
        """How many answers of the exam's submitted attempts carry a grade."""
        attempts = await self._submitted_attempts(exam_id)

        total = 0
        completed = 0
        for attempt in attempts:
            answers = await self.store.list_answers(attempt.id)
            grades = await self.store.grades_by_answer(attempt.id)
            total += len(answers)
            completed += sum(1 for a in answers if a.id in grades)

        if completed == total:
            status = GradingProgressStatus.COMPLETED
        elif completed > 0 or any(a.status == AttemptStatus.GRADING_IN_PROGRESS for a in attempts):
            status = GradingProgressStatus.IN_PROGRESS
        else:
            status = GradingProgressStatus.NOT_STARTED

        percentage = round(completed / total * 100) if total else 100
        return GradingProgress(
            completed=completed,
            total=total,
            percentage=percentage,
            status=status,
            attempt_count=len(attempts),
        )

    async def _enqueue_single(self, attempt_id: str, answer_id: str) -> EnqueueResult:
        """Forced re-grade: lift any human lock, then schedule exactly one job."""
        answer = await self.store.get_answer(attempt_id, answer_id)
        if self.queue is None:
            raise QueueUnavailableError("Grading queue is not configured")

        await self.grade_writer.clear_provenance(attempt_id, answer_id)
        self._send([GradingJob(
            attempt_id=attempt_id,
            answer_id=answer.id,
            question_id=answer.question_id,
            force_regrade=True,
        )])
        logger.info(f"Forced re-grade enqueued for answer {answer_id} (attempt {attempt_id})")
        return EnqueueResult(total=1, enqueued=1, skipped=0)

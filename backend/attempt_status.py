"""
Attempt status state machine.

IN_PROGRESS -> SUBMITTED -> GRADING_IN_PROGRESS -> GRADED, plus the
administrative GRADING_IN_PROGRESS -> SUBMITTED reset. After submission the
status is always derived from how many answers carry a grade, so concurrent
graders converge regardless of the order their writes land in.
"""
import logging

from attempt_store import AttemptStore
from constants import WRITE_CONFLICT_RETRIES
from database import WriteConflictError
from models import Attempt, AttemptStatus, ResetStuckResult

logger = logging.getLogger(__name__)


def derive_status(current: AttemptStatus, graded: int, total: int) -> AttemptStatus:
    if current == AttemptStatus.IN_PROGRESS:
        return current
    if graded == 0:
        return AttemptStatus.SUBMITTED
    if graded < total:
        return AttemptStatus.GRADING_IN_PROGRESS
    return AttemptStatus.GRADED


class AttemptStateMachine:
    def __init__(self, db):
        self.store = AttemptStore(db)

    async def recompute_status(self, attempt_id: str) -> Attempt:
        """Re-derive the status from the partition; writes only when it changed."""
        for _ in range(WRITE_CONFLICT_RETRIES):
            attempt = await self.store.get_attempt(attempt_id)
            answers = await self.store.list_answers(attempt_id)
            grades = await self.store.grades_by_answer(attempt_id)
            graded = sum(1 for a in answers if a.id in grades)

            new_status = derive_status(attempt.status, graded, len(answers))
            if new_status == attempt.status:
                return attempt

            previous = attempt.status
            attempt.status = new_status
            try:
                saved = await self.store.save_attempt(attempt)
            except WriteConflictError:
                logger.info(f"Attempt {attempt_id} changed during recompute; re-reading")
                continue
            logger.info(f"Attempt {attempt_id}: {previous.value} -> {new_status.value} ({graded}/{len(answers)} graded)")
            return saved

        raise WriteConflictError(f"Could not settle status for attempt {attempt_id}")

    async def reset_stuck_attempts(self, exam_id: str) -> ResetStuckResult:
        """Move every GRADING_IN_PROGRESS attempt of the exam back to SUBMITTED."""
        await self.store.get_exam(exam_id)
        stuck = await self.store.list_attempts(exam_id=exam_id, status=AttemptStatus.GRADING_IN_PROGRESS.value)

        reset_count = 0
        for attempt in stuck:
            attempt.status = AttemptStatus.SUBMITTED
            try:
                await self.store.save_attempt(attempt)
            except WriteConflictError:
                # Moved on concurrently; leave it alone
                continue
            reset_count += 1

        logger.info(f"Reset {reset_count}/{len(stuck)} stuck attempts for exam {exam_id}")
        return ResetStuckResult(reset_count=reset_count)

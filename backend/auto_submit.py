"""
Expired-attempt sweep.

Finds IN_PROGRESS attempts whose exam has ended and submits them through the
regular submit path with a deterministic request id, so a sweep racing a
late manual submit (or another sweep) still commits side effects only once.
Run periodically, e.g. `python auto_submit.py` from a scheduler every 5 minutes.
"""
import asyncio
import logging
import os
from typing import Dict, Optional

from attempt_store import AttemptStore
from datetime_utils import now_utc
from error_utils import GradingEngineError
from database import WriteConflictError
from models import AttemptStatus, Exam
from submission import SubmissionService, auto_submit_request_id

logger = logging.getLogger(__name__)


class AutoSubmitSweep:
    def __init__(self, db, submissions: SubmissionService):
        self.store = AttemptStore(db)
        self.submissions = submissions

    async def run(self, now=None) -> int:
        """Auto-submit every expired attempt; returns how many were submitted by this run."""
        now = now or now_utc()
        in_progress = await self.store.list_attempts(status=AttemptStatus.IN_PROGRESS.value)
        logger.info(f"Auto-submit sweep at {now.isoformat()}: {len(in_progress)} attempts in progress")

        exams: Dict[str, Optional[Exam]] = {}
        submitted = 0
        for attempt in in_progress:
            if attempt.exam_id not in exams:
                try:
                    exams[attempt.exam_id] = await self.store.get_exam(attempt.exam_id)
                except GradingEngineError:
                    exams[attempt.exam_id] = None
            exam = exams[attempt.exam_id]
            if exam is None:
                continue
            end_at = exam.ends_at()
            if end_at is None or now <= end_at:
                continue

            try:
                result = await self.submissions.submit(
                    attempt.id,
                    student_id=None,
                    request_id=auto_submit_request_id(attempt.id),
                    nonce=attempt.integrity_nonce,
                    auto_submitted=True,
                )
            except (GradingEngineError, WriteConflictError) as e:
                logger.error(f"Failed to auto-submit attempt {attempt.id}: {e}")
                continue
            if not result.replay:
                submitted += 1
                logger.info(f"Auto-submitted attempt {attempt.id} (exam {exam.id} ended {end_at.isoformat()})")

        logger.info(f"Successfully auto-submitted {submitted} expired attempts")
        return submitted


async def _run() -> None:
    from database import create_cosmos_client, get_cosmosdb_service
    from grading_orchestrator import GradingOrchestrator
    from grading_queue import get_queue_client

    endpoint = os.getenv("COSMOS_DB_ENDPOINT")
    if not endpoint:
        raise RuntimeError("COSMOS_DB_ENDPOINT is required for the auto-submit sweep")
    database_client = create_cosmos_client(endpoint).get_database_client(
        os.getenv("DATABASE_NAME", "grading_engine")
    )
    db = await get_cosmosdb_service(database_client)
    submissions = SubmissionService(db, orchestrator=GradingOrchestrator(db, get_queue_client()))
    await AutoSubmitSweep(db, submissions).run()


def main():
    logging.basicConfig(level=logging.INFO, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s")
    asyncio.run(_run())


if __name__ == "__main__":
    main()

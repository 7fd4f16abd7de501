"""
Grading worker: consumes grading jobs from SQS and writes automatic grades.

Run with `python grading_worker.py` (or the `grading-worker` console script).
A failed job is logged and its message deleted; the answer stays ungraded
until a teacher re-enqueues it or resets the exam's stuck attempts.
"""
import asyncio
import logging
import os
from typing import Optional

from pydantic import ValidationError as PydanticValidationError

import auto_scorer
from attempt_store import AttemptStore
from constants import GRADING_QUEUE_NAME, QUEUE_BATCH_SIZE, QUEUE_WAIT_TIME_SECONDS
from database import WriteConflictError
from error_utils import GradingEngineError, NotFoundError, safe_log
from external_scorer import ExternalScorer
from grading_queue import QueueClient
from models import GradeWriteOutcome, GradeWriteResult, GradingJob, QuestionType
from provenance import GradeWriter, next_provenance

logger = logging.getLogger(__name__)


class GradingJobRunner:
    def __init__(self, db, scorer: ExternalScorer, grade_writer: Optional[GradeWriter] = None):
        self.store = AttemptStore(db)
        self.scorer = scorer
        self.grade_writer = grade_writer or GradeWriter(db)

    async def run(self, job: GradingJob) -> Optional[GradeWriteResult]:
        """Grade one answer. Returns None when the job has nothing to grade."""
        try:
            answer = await self.store.get_answer(job.attempt_id, job.answer_id)
            attempt = await self.store.get_attempt(job.attempt_id)
            exam = await self.store.get_exam(attempt.exam_id)
        except NotFoundError as e:
            logger.warning(f"Skipping job for answer {job.answer_id}: {e.message}")
            return None

        question = exam.question(answer.question_id)
        if question is None:
            logger.warning(f"Question {answer.question_id} no longer in exam {exam.id}; skipping answer {answer.id}")
            return None

        max_points = question.resolved_max_points
        if max_points <= 0:
            logger.warning(f"Question {question.id} has no valid max points; skipping answer {answer.id}")
            return None

        if question.type == QuestionType.MCQ:
            result = auto_scorer.score(question, answer.selections())
            return await self.grade_writer.write_automatic(
                job.attempt_id, answer.id, result.score, max_points=max_points
            )

        # No point paying for a model call whose result would be discarded
        prior = await self.store.get_grade(job.attempt_id, answer.id)
        if prior is not None and next_provenance(prior.provenance, human=False) is None:
            logger.info(f"Answer {answer.id} is human-graded; skipping external scorer")
            return GradeWriteResult(outcome=GradeWriteOutcome.SKIPPED, grade=prior)

        external = await self.scorer.grade(question.content, question.rubric, answer.text(), max_points)
        write = await self.grade_writer.write_automatic(
            job.attempt_id,
            answer.id,
            external.score,
            feedback=external.feedback,
            rationale=external.rationale,
            max_points=max_points,
        )
        logger.info(
            f"Graded answer {answer.id}: {external.score}/{max_points} "
            f"({write.outcome.value}, forced={job.force_regrade})"
        )
        return write


class GradingWorker:
    def __init__(self, runner: GradingJobRunner, queue: QueueClient, queue_name: str = GRADING_QUEUE_NAME):
        self.runner = runner
        self.queue = queue
        self.queue_name = queue_name

    async def process_message(self, message: dict) -> bool:
        """Run one job. The message is deleted whatever the outcome."""
        try:
            job = GradingJob.model_validate_json(message.get("Body") or "")
        except PydanticValidationError as e:
            safe_log(f"Dropping malformed grading message {message.get('MessageId')}", e)
            self.queue.delete_message(self.queue_name, message["ReceiptHandle"])
            return False

        ok = False
        try:
            await self.runner.run(job)
            ok = True
        except GradingEngineError as e:
            logger.error(f"Grading job for answer {job.answer_id} failed ({e.kind.value}): {e.message}")
        except WriteConflictError as e:
            logger.error(f"Grading job for answer {job.answer_id} kept conflicting: {e}")
        except Exception as e:
            safe_log(f"Unexpected failure grading answer {job.answer_id}", e)
        finally:
            self.queue.delete_message(self.queue_name, message["ReceiptHandle"])
        return ok

    async def run_once(self, wait_time_seconds: int = QUEUE_WAIT_TIME_SECONDS) -> int:
        """Receive and process one batch; returns how many jobs succeeded."""
        messages = self.queue.receive_messages(
            self.queue_name, max_messages=QUEUE_BATCH_SIZE, wait_time_seconds=wait_time_seconds
        )
        succeeded = 0
        for message in messages:
            if await self.process_message(message):
                succeeded += 1
        return succeeded

    async def run_forever(self, stop: Optional[asyncio.Event] = None) -> None:
        logger.info(f"Grading worker listening on '{self.queue_name}'")
        while stop is None or not stop.is_set():
            try:
                await self.run_once()
            except GradingEngineError as e:
                logger.warning(f"Queue unavailable ({e.message}); backing off")
                await asyncio.sleep(5)


async def _run() -> None:
    from database import create_cosmos_client, get_cosmosdb_service
    from grading_queue import get_queue_client

    endpoint = os.getenv("COSMOS_DB_ENDPOINT")
    if not endpoint:
        raise RuntimeError("COSMOS_DB_ENDPOINT is required for the grading worker")
    database_client = create_cosmos_client(endpoint).get_database_client(
        os.getenv("DATABASE_NAME", "grading_engine")
    )
    db = await get_cosmosdb_service(database_client)
    worker = GradingWorker(GradingJobRunner(db, ExternalScorer()), get_queue_client())
    await worker.run_forever()


def main():
    logging.basicConfig(level=logging.INFO, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s")
    asyncio.run(_run())


if __name__ == "__main__":
    main()

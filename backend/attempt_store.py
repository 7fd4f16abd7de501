"""Typed accessors for the exams container and the per-attempt partition."""
import logging
from typing import Dict, List, Optional

from constants import CONTAINER, DOC_ANSWER, DOC_ATTEMPT, DOC_GRADE
from error_utils import NotFoundError
from models import Answer, Attempt, Exam, Grade, grade_id_for

logger = logging.getLogger(__name__)


class AttemptStore:
    def __init__(self, db):
        self.db = db
        self.attempts = CONTAINER["ATTEMPTS"]
        self.exams = CONTAINER["EXAMS"]

    async def get_exam(self, exam_id: str) -> Exam:
        doc = await self.db.read_item(self.exams, exam_id, exam_id)
        if not doc:
            raise NotFoundError(f"Exam {exam_id} not found")
        return Exam.model_validate(doc)

    async def find_attempt(self, attempt_id: str) -> Optional[Attempt]:
        doc = await self.db.read_item(self.attempts, attempt_id, attempt_id)
        if not doc or doc.get("doc_type") != DOC_ATTEMPT:
            return None
        return Attempt.model_validate(doc)

    async def get_attempt(self, attempt_id: str) -> Attempt:
        attempt = await self.find_attempt(attempt_id)
        if attempt is None:
            raise NotFoundError(f"Attempt {attempt_id} not found")
        return attempt

    async def save_attempt(self, attempt: Attempt) -> Attempt:
        """Compare-and-write on the attempt's ETag; raises WriteConflictError if it moved."""
        saved = await self.db.replace_item(self.attempts, attempt.to_document(), etag=attempt.etag)
        return Attempt.model_validate(saved)

    async def list_attempts(self, **filters) -> List[Attempt]:
        docs = await self.db.find_many(self.attempts, {"doc_type": DOC_ATTEMPT, **filters})
        return [Attempt.model_validate(d) for d in docs]

    async def get_answer(self, attempt_id: str, answer_id: str) -> Answer:
        doc = await self.db.read_item(self.attempts, answer_id, attempt_id)
        if not doc or doc.get("doc_type") != DOC_ANSWER:
            raise NotFoundError(f"Answer {answer_id} not found in attempt {attempt_id}")
        return Answer.model_validate(doc)

    async def list_answers(self, attempt_id: str) -> List[Answer]:
        docs = await self.db.find_many(self.attempts, {"doc_type": DOC_ANSWER}, partition_key=attempt_id)
        return [Answer.model_validate(d) for d in docs]

    async def get_grade(self, attempt_id: str, answer_id: str) -> Optional[Grade]:
        doc = await self.db.read_item(self.attempts, grade_id_for(answer_id), attempt_id)
        return Grade.model_validate(doc) if doc else None

    async def grades_by_answer(self, attempt_id: str) -> Dict[str, Grade]:
        docs = await self.db.find_many(self.attempts, {"doc_type": DOC_GRADE}, partition_key=attempt_id)
        grades = [Grade.model_validate(d) for d in docs]
        return {g.answer_id: g for g in grades}

import copy
import itertools
import json
from datetime import timedelta

import pytest

from constants import COLLECTIONS, CONTAINER
from database import BatchConflictError, WriteConflictError
from datetime_utils import now_utc
from error_utils import ExternalScorerError, QueueUnavailableError
from grading_queue import QueueClient
from integrity import issue_nonce
from models import (
    Answer,
    AnswerSegment,
    Attempt,
    AttemptStatus,
    Exam,
    ExternalScore,
    Grade,
    GradeProvenance,
    Question,
    QuestionSegment,
    QuestionType,
    answer_id_for,
    attempt_id_for,
    grade_id_for,
)
from rate_limit import proctor_limiter, submit_limiter

PK_FIELDS = {v["name"]: v["pk_field"] for v in COLLECTIONS.values()}


class MockCosmosDB:
    """In-memory stand-in for CosmosDBService with ETags and transactional batches."""

    def __init__(self):
        self.storage = {}
        self._etags = itertools.count(1)
        self.batches = []

    def _container(self, container_name):
        return self.storage.setdefault(container_name, {})

    def _key(self, container_name, item):
        return (str(item[PK_FIELDS[container_name]]), item["id"])

    def _stamp(self, item):
        doc = copy.deepcopy(item)
        doc["_etag"] = f'"{next(self._etags)}"'
        return doc

    def docs(self, container_name):
        return [copy.deepcopy(d) for d in self._container(container_name).values()]

    async def create_item(self, container_name, item):
        docs = self._container(container_name)
        key = self._key(container_name, item)
        if key in docs:
            raise WriteConflictError(f"Item already exists: {item['id']}")
        docs[key] = self._stamp(item)
        return copy.deepcopy(docs[key])

    async def read_item(self, container_name, item_id, partition_key):
        doc = self._container(container_name).get((str(partition_key), item_id))
        return copy.deepcopy(doc) if doc else None

    async def replace_item(self, container_name, item, etag=None):
        docs = self._container(container_name)
        key = self._key(container_name, item)
        current = docs.get(key)
        if current is None:
            raise WriteConflictError(f"Item vanished: {item['id']}")
        if etag and current["_etag"] != etag:
            raise WriteConflictError(f"ETag mismatch on {item['id']}")
        docs[key] = self._stamp(item)
        return copy.deepcopy(docs[key])

    async def execute_batch(self, container_name, operations, partition_key):
        self.batches.append(operations)
        staged = dict(self._container(container_name))
        results = []
        for index, operation in enumerate(operations):
            name, args = operation[0], operation[1]
            kwargs = operation[2] if len(operation) > 2 else {}
            item = args[-1]
            key = self._key(container_name, item)
            if key[0] != str(partition_key):
                raise BatchConflictError("Operation outside the batch partition", failed_index=index)
            if name == "create" and key in staged:
                raise BatchConflictError(f"Batch rolled back at {index}", failed_index=index)
            if name == "replace":
                current = staged.get(key)
                etag = kwargs.get("if_match_etag")
                if current is None or (etag and current["_etag"] != etag):
                    raise BatchConflictError(f"Batch rolled back at {index}", failed_index=index)
            staged[key] = self._stamp(item)
            results.append(copy.deepcopy(staged[key]))
        self.storage[container_name] = staged
        return results

    async def find_many(self, container_name, filter_dict, partition_key=None, limit=None):
        found = []
        for (pk, _), doc in self._container(container_name).items():
            if partition_key is not None and pk != str(partition_key):
                continue
            if all(doc.get(k) == v for k, v in filter_dict.items()):
                found.append(copy.deepcopy(doc))
        return found[:limit] if limit else found

    def get_metrics(self):
        return {"operation_count": 0}


class FakeQueue(QueueClient):
    def __init__(self, fail=False):
        self.fail = fail
        self.pending = []
        self.deleted = []
        self._ids = itertools.count(1)

    def send_messages(self, queue_name, messages):
        if self.fail:
            raise QueueUnavailableError(f"Queue '{queue_name}' unavailable")
        for message in messages:
            n = next(self._ids)
            self.pending.append({"MessageId": f"m-{n}", "ReceiptHandle": f"r-{n}", "Body": json.dumps(message)})
        return len(messages)

    def receive_messages(self, queue_name, max_messages=1, wait_time_seconds=0):
        received, self.pending = self.pending[:max_messages], self.pending[max_messages:]
        return received

    def delete_message(self, queue_name, receipt_handle):
        self.deleted.append(receipt_handle)
        return True

    def jobs(self):
        return [json.loads(m["Body"]) for m in self.pending]


class FakeScorer:
    """External scorer double: fixed score, optional failure, call log."""

    def __init__(self, score=3.0, error=None):
        self.score = score
        self.error = error
        self.calls = []

    async def grade(self, question, rubric, student_answer, max_points):
        self.calls.append(student_answer)
        if self.error is not None:
            raise ExternalScorerError(self.error)
        return ExternalScore(score=self.score, feedback="Looks fine", rationale="Matches criteria")


def mcq_question(question_id="q-mcq", require_all_correct=False, max_points=4):
    return Question(
        id=question_id,
        type=QuestionType.MCQ,
        content="Which options apply?",
        max_points=max_points,
        require_all_correct=require_all_correct,
        segments=[
            QuestionSegment(id="A", is_correct=False),
            QuestionSegment(id="B", is_correct=True),
            QuestionSegment(id="C", is_correct=False),
            QuestionSegment(id="D", is_correct=True),
        ],
    )


def text_question(question_id="q-text", max_points=5):
    return Question(
        id=question_id,
        type=QuestionType.TEXT,
        content="Explain optimistic concurrency.",
        rubric="Mentions versions and retries",
        max_points=max_points,
        segments=[QuestionSegment(id="s1", instruction="Your answer")],
    )


class Seeder:
    """Writes exams, attempts, answers and grades straight into the mock store."""

    def __init__(self, db):
        self.db = db

    async def exam(self, exam_id="exam-1", questions=None, starts_in_minutes=-30, ends_in_minutes=60):
        now = now_utc()
        exam = Exam(
            id=exam_id,
            title="Distributed Systems Midterm",
            start_at=now + timedelta(minutes=starts_in_minutes),
            end_at=now + timedelta(minutes=ends_in_minutes),
            questions=questions if questions is not None else [mcq_question(), text_question()],
        )
        await self.db.create_item(CONTAINER["EXAMS"], exam.to_document())
        return exam

    async def attempt(self, exam_id="exam-1", student_id="student-1", status=AttemptStatus.IN_PROGRESS):
        attempt_id = attempt_id_for(exam_id, student_id)
        attempt = Attempt(
            id=attempt_id,
            attempt_id=attempt_id,
            exam_id=exam_id,
            student_id=student_id,
            status=status,
            integrity_nonce=issue_nonce(),
        )
        saved = await self.db.create_item(CONTAINER["ATTEMPTS"], attempt.to_document())
        return Attempt.model_validate(saved)

    async def answer(self, attempt_id, question_id, values):
        answer = Answer(
            id=answer_id_for(attempt_id, question_id),
            attempt_id=attempt_id,
            question_id=question_id,
            segments=[AnswerSegment(segment_id=k, content=v) for k, v in values.items()],
        )
        saved = await self.db.create_item(CONTAINER["ATTEMPTS"], answer.to_document())
        return Answer.model_validate(saved)

    async def grade(self, attempt_id, answer_id, score, provenance=GradeProvenance.AUTOMATIC, author=None):
        grade = Grade(
            id=grade_id_for(answer_id),
            attempt_id=attempt_id,
            answer_id=answer_id,
            score=score,
            provenance=provenance,
            author=author,
        )
        saved = await self.db.create_item(CONTAINER["ATTEMPTS"], grade.to_document())
        return Grade.model_validate(saved)


@pytest.fixture(autouse=True)
def reset_rate_limiters():
    submit_limiter.reset()
    proctor_limiter.reset()
    yield
    submit_limiter.reset()
    proctor_limiter.reset()


@pytest.fixture
def db():
    return MockCosmosDB()


@pytest.fixture
def queue():
    return FakeQueue()


@pytest.fixture
def seed(db):
    return Seeder(db)

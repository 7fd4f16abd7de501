import asyncio
import json

import httpx
import pytest

from conftest import FakeQueue, FakeScorer, mcq_question, text_question
from error_utils import ExternalScorerError
from external_scorer import ExternalScorer, build_grading_prompt
from grading_orchestrator import GradingOrchestrator
from grading_worker import GradingJobRunner, GradingWorker
from models import AttemptStatus, GradeProvenance, GradeWriteOutcome, GradingJob


def _graded_setup(seed):
    async def _seed():
        await seed.exam(questions=[mcq_question(), text_question()])
        attempt = await seed.attempt(status=AttemptStatus.SUBMITTED)
        mcq = await seed.answer(attempt.id, "q-mcq", {"B": "true", "D": "true"})
        text = await seed.answer(attempt.id, "q-text", {"s1": "Compare ETags, retry on conflict."})
        return attempt, mcq, text
    return asyncio.run(_seed())


def test_text_answer_is_scored_externally(db, seed):
    attempt, _, text = _graded_setup(seed)
    scorer = FakeScorer(score=3.5)
    runner = GradingJobRunner(db, scorer)

    result = asyncio.run(runner.run(GradingJob(attempt_id=attempt.id, answer_id=text.id, question_id="q-text")))

    assert result.outcome == GradeWriteOutcome.WRITTEN
    assert result.grade.score == 3.5
    assert result.grade.feedback == "Looks fine"
    assert result.grade.rationale == "Matches criteria"
    assert result.grade.author is None
    assert scorer.calls == ["Compare ETags, retry on conflict."]


def test_external_score_is_clamped_to_max_points(db, seed):
    attempt, _, text = _graded_setup(seed)
    runner = GradingJobRunner(db, FakeScorer(score=50))

    result = asyncio.run(runner.run(GradingJob(attempt_id=attempt.id, answer_id=text.id, question_id="q-text")))
    assert result.grade.score == 5.0


def test_mcq_jobs_use_the_deterministic_scorer(db, seed):
    attempt, mcq, _ = _graded_setup(seed)
    scorer = FakeScorer()
    runner = GradingJobRunner(db, scorer)

    result = asyncio.run(runner.run(GradingJob(attempt_id=attempt.id, answer_id=mcq.id, question_id="q-mcq")))

    assert result.grade.score == 4.0
    assert scorer.calls == []


def test_human_graded_answer_skips_the_model_call(db, seed):
    attempt, _, text = _graded_setup(seed)
    asyncio.run(seed.grade(attempt.id, text.id, 4.5, GradeProvenance.HUMAN_OVERRIDE, author="teacher-1"))
    scorer = FakeScorer()

    result = asyncio.run(GradingJobRunner(db, scorer).run(
        GradingJob(attempt_id=attempt.id, answer_id=text.id, question_id="q-text")
    ))

    assert result.outcome == GradeWriteOutcome.SKIPPED
    assert result.grade.score == 4.5
    assert scorer.calls == []


def test_missing_answer_is_skipped(db, seed):
    attempt, _, _ = _graded_setup(seed)
    result = asyncio.run(GradingJobRunner(db, FakeScorer()).run(
        GradingJob(attempt_id=attempt.id, answer_id="gone", question_id="q-text")
    ))
    assert result is None


def test_worker_drains_queue_and_grades_attempt(db, seed, queue):
    attempt, _, _ = _graded_setup(seed)
    asyncio.run(GradingOrchestrator(db, queue).enqueue(attempt.id))
    worker = GradingWorker(GradingJobRunner(db, FakeScorer(score=2)), queue)

    succeeded = asyncio.run(worker.run_once(wait_time_seconds=0))

    assert succeeded == 2
    assert queue.deleted == ["r-1", "r-2"]
    attempt = asyncio.run(GradingJobRunner(db, FakeScorer()).store.get_attempt(attempt.id))
    assert attempt.status == AttemptStatus.GRADED


def test_duplicate_delivery_does_not_double_score(db, seed, queue):
    attempt, _, text = _graded_setup(seed)
    job = GradingJob(attempt_id=attempt.id, answer_id=text.id, question_id="q-text").model_dump(by_alias=True)
    queue.send_messages("ai-grading", [job, job])
    runner = GradingJobRunner(db, FakeScorer(score=2))
    worker = GradingWorker(runner, queue)

    asyncio.run(worker.run_once(wait_time_seconds=0))

    grades = [d for d in db.docs("attempts") if d["doc_type"] == "grade"]
    assert len(grades) == 1
    assert grades[0]["score"] == 2.0


def test_failed_job_leaves_answer_ungraded_and_deletes_message(db, seed, queue):
    attempt, _, text = _graded_setup(seed)
    job = GradingJob(attempt_id=attempt.id, answer_id=text.id, question_id="q-text").model_dump(by_alias=True)
    queue.send_messages("ai-grading", [job])
    worker = GradingWorker(GradingJobRunner(db, FakeScorer(error="timeout")), queue)

    assert asyncio.run(worker.run_once(wait_time_seconds=0)) == 0
    assert queue.deleted == ["r-1"]
    assert not [d for d in db.docs("attempts") if d["doc_type"] == "grade"]


def test_malformed_message_is_dropped(db, queue):
    worker = GradingWorker(GradingJobRunner(db, FakeScorer()), queue)
    ok = asyncio.run(worker.process_message({"MessageId": "m", "ReceiptHandle": "r-x", "Body": "{not json"}))
    assert ok is False
    assert queue.deleted == ["r-x"]


def _completion(payload):
    return {"choices": [{"message": {"content": json.dumps(payload)}}]}


def _scorer(handler, max_retries=2):
    scorer = ExternalScorer(
        endpoint="https://example.openai.azure.com",
        api_key="key",
        deployment="gpt-4o",
        transport=httpx.MockTransport(handler),
        max_retries=max_retries,
    )
    scorer.initial_delay = 0
    return scorer


def test_external_scorer_parses_and_clamps():
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(200, json=_completion({"score": 7, "feedback": "Good", "rationale": "All points"}))

    result = asyncio.run(_scorer(handler).grade("Q?", "rubric", "answer", 5))

    assert result.score == 5
    assert result.feedback == "Good"
    assert seen[0].headers["api-key"] == "key"
    assert "/openai/deployments/gpt-4o/chat/completions" in str(seen[0].url)


def test_external_scorer_retries_transient_errors():
    responses = iter([httpx.Response(429), httpx.Response(503), httpx.Response(200, json=_completion({"score": 1}))])

    result = asyncio.run(_scorer(lambda request: next(responses)).grade("Q?", None, "a", 5))
    assert result.score == 1


def test_external_scorer_gives_up_after_retries():
    with pytest.raises(ExternalScorerError):
        asyncio.run(_scorer(lambda request: httpx.Response(500), max_retries=1).grade("Q?", None, "a", 5))


def test_external_scorer_rejects_malformed_json():
    def handler(request):
        return httpx.Response(200, json={"choices": [{"message": {"content": "score: high"}}]})

    with pytest.raises(ExternalScorerError):
        asyncio.run(_scorer(handler).grade("Q?", None, "a", 5))


def test_unconfigured_scorer_fails():
    with pytest.raises(ExternalScorerError):
        asyncio.run(ExternalScorer(endpoint="", api_key="", deployment="").grade("Q?", None, "a", 5))


def test_prompt_mentions_points_and_answer():
    prompt = build_grading_prompt("Explain CAP.", None, "", 2.5)
    assert "2.5 points max" in prompt
    assert "(empty answer)" in prompt

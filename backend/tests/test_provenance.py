import asyncio

import pytest

from conftest import text_question
from error_utils import NotFoundError, ValidationError
from grading_orchestrator import GradingOrchestrator
from models import AttemptStatus, GradeProvenance, GradeWriteOutcome
from provenance import GradeWriter, clamp_score, next_provenance, parse_score


@pytest.mark.parametrize("prior,human,expected", [
    (None, False, GradeProvenance.AUTOMATIC),
    (None, True, GradeProvenance.HUMAN),
    (GradeProvenance.AUTOMATIC, False, GradeProvenance.AUTOMATIC),
    (GradeProvenance.AUTOMATIC, True, GradeProvenance.HUMAN_OVERRIDE),
    (GradeProvenance.HUMAN, False, None),
    (GradeProvenance.HUMAN, True, GradeProvenance.HUMAN),
    (GradeProvenance.HUMAN_OVERRIDE, False, None),
    (GradeProvenance.HUMAN_OVERRIDE, True, GradeProvenance.HUMAN_OVERRIDE),
])
def test_transition_table(prior, human, expected):
    assert next_provenance(prior, human) == expected


def _submitted_text_answer(seed):
    async def _seed():
        await seed.exam(questions=[text_question()])
        attempt = await seed.attempt(status=AttemptStatus.SUBMITTED)
        answer = await seed.answer(attempt.id, "q-text", {"s1": "Use ETags and retry."})
        return attempt, answer
    return asyncio.run(_seed())


def test_human_lock_is_one_way(db, seed):
    attempt, answer = _submitted_text_answer(seed)
    writer = GradeWriter(db)

    auto = asyncio.run(writer.write_automatic(attempt.id, answer.id, 3.0))
    assert auto.grade.provenance == GradeProvenance.AUTOMATIC
    assert auto.grade.locked is False

    human = asyncio.run(writer.write_human(attempt.id, answer.id, 4, grader_id="teacher-1"))
    assert human.grade.provenance == GradeProvenance.HUMAN_OVERRIDE
    assert human.grade.locked is True

    again = asyncio.run(writer.write_automatic(attempt.id, answer.id, 1.0))
    assert again.outcome == GradeWriteOutcome.SKIPPED
    assert again.grade.score == 4.0

    second_human = asyncio.run(writer.write_human(attempt.id, answer.id, 2.5, grader_id="teacher-2"))
    assert second_human.grade.score == 2.5
    assert second_human.grade.locked is True
    assert second_human.grade.author == "teacher-2"


def test_human_first_grade_is_not_locked_but_blocks_automatic(db, seed):
    attempt, answer = _submitted_text_answer(seed)
    writer = GradeWriter(db)

    human = asyncio.run(writer.write_human(attempt.id, answer.id, 5, grader_id="teacher-1"))
    assert human.grade.provenance == GradeProvenance.HUMAN
    assert human.grade.locked is False

    auto = asyncio.run(writer.write_automatic(attempt.id, answer.id, 0.0))
    assert auto.outcome == GradeWriteOutcome.SKIPPED


def test_forced_regrade_lifts_the_lock(db, seed, queue):
    attempt, answer = _submitted_text_answer(seed)
    writer = GradeWriter(db)
    asyncio.run(writer.write_automatic(attempt.id, answer.id, 3.0))
    asyncio.run(writer.write_human(attempt.id, answer.id, 4, grader_id="teacher-1"))

    result = asyncio.run(GradingOrchestrator(db, queue, grade_writer=writer).enqueue(
        attempt.id, single_answer_id=answer.id, force_regrade=True
    ))
    assert (result.total, result.enqueued, result.skipped) == (1, 1, 0)

    cleared = asyncio.run(writer.store.get_grade(attempt.id, answer.id))
    assert cleared.provenance == GradeProvenance.AUTOMATIC
    assert cleared.author is None
    assert cleared.score == 4.0

    rewritten = asyncio.run(writer.write_automatic(attempt.id, answer.id, 2.0))
    assert rewritten.outcome == GradeWriteOutcome.WRITTEN
    assert rewritten.grade.score == 2.0


def test_human_scores_are_clamped_to_question_points(db, seed):
    attempt, answer = _submitted_text_answer(seed)
    writer = GradeWriter(db)

    high = asyncio.run(writer.write_human(attempt.id, answer.id, 99, grader_id="teacher-1"))
    assert high.grade.score == 5.0
    low = asyncio.run(writer.write_human(attempt.id, answer.id, "-3", grader_id="teacher-1"))
    assert low.grade.score == 0.0


@pytest.mark.parametrize("raw", ["abc", None, True, float("nan"), float("inf"), [1]])
def test_non_numeric_human_scores_are_rejected(raw):
    with pytest.raises(ValidationError):
        parse_score(raw)


def test_human_grade_on_unknown_answer_is_not_found(db, seed):
    attempt, _ = _submitted_text_answer(seed)
    with pytest.raises(NotFoundError):
        asyncio.run(GradeWriter(db).write_human(attempt.id, "nope", 1, grader_id="teacher-1"))


def test_grade_write_recomputes_status(db, seed):
    attempt, answer = _submitted_text_answer(seed)
    writer = GradeWriter(db)
    asyncio.run(writer.write_automatic(attempt.id, answer.id, 3.0))

    refreshed = asyncio.run(writer.store.get_attempt(attempt.id))
    assert refreshed.status == AttemptStatus.GRADED


def test_clamp_score_rounds_and_bounds():
    assert clamp_score(-1, 4) == 0.0
    assert clamp_score(4.567, 10) == 4.57
    assert clamp_score(12, 10) == 10


def test_human_write_landing_mid_automatic_write_keeps_the_lock(db, seed):
    attempt, answer = _submitted_text_answer(seed)
    asyncio.run(seed.grade(attempt.id, answer.id, 2.0))
    machine = GradeWriter(db)
    grader = GradeWriter(db)

    read_grade = machine.store.get_grade
    reads = []

    async def read_then_human_write(attempt_id, answer_id):
        prior = await read_grade(attempt_id, answer_id)
        if not reads:
            await grader.write_human(attempt_id, answer_id, 4, grader_id="teacher-1")
        reads.append(prior)
        return prior

    machine.store.get_grade = read_then_human_write

    result = asyncio.run(machine.write_automatic(attempt.id, answer.id, 1.0))

    assert len(reads) == 2
    assert result.outcome == GradeWriteOutcome.SKIPPED
    assert result.grade.score == 4.0
    assert result.grade.provenance == GradeProvenance.HUMAN_OVERRIDE
    assert result.grade.locked is True
    stored = [d for d in db.docs("attempts") if d["doc_type"] == "grade"]
    assert [(d["score"], d["author"]) for d in stored] == [(4.0, "teacher-1")]

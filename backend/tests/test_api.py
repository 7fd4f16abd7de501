import asyncio

import pytest
from fastapi.testclient import TestClient

from conftest import mcq_question, text_question
from constants import CONTAINER
from main import app
from models import ActorRole
from security import create_access_token


def _auth(subject, role):
    return {"Authorization": f"Bearer {create_access_token(subject, role)}"}


STUDENT = _auth("student-1", ActorRole.STUDENT)
TEACHER = _auth("teacher-1", ActorRole.TEACHER)


@pytest.fixture
def client(db, queue, seed):
    asyncio.run(seed.exam(questions=[mcq_question(), text_question()]))
    app.state.db = db
    app.state.queue = queue
    yield TestClient(app)
    app.state.db = None
    app.state.queue = None


def _start(client):
    response = client.post("/api/attempts", json={"examId": "exam-1"}, headers=STUDENT)
    assert response.status_code == 200
    body = response.json()
    return body["attempt"]["id"], body["nonce"]


def _signed(nonce, request_id):
    return {**STUDENT, "X-Request-Id": request_id, "X-Attempt-Nonce": nonce}


def test_health_reports_wiring(client):
    body = client.get("/health").json()
    assert body == {"status": "healthy", "database": "connected", "queue": "configured"}
    assert client.get("/metrics").json()["service_metrics"] == {"operation_count": 0}


def test_requests_without_token_are_unauthorized(client):
    response = client.post("/api/attempts", json={"examId": "exam-1"})
    assert response.status_code == 401
    assert response.json()["error"] == "UNAUTHORIZED"


def test_roles_are_enforced(client):
    assert client.post("/api/attempts", json={"examId": "exam-1"}, headers=TEACHER).status_code == 403
    assert client.get("/api/proctoring/exams/exam-1", headers=STUDENT).status_code == 403


def test_student_flow_end_to_end(client, queue):
    attempt_id, nonce = _start(client)

    for segment in ("B", "D"):
        response = client.put(
            f"/api/attempts/{attempt_id}/answers",
            json={"questionId": "q-mcq", "segmentId": segment, "content": "true"},
            headers=STUDENT,
        )
        assert response.status_code == 200
    client.put(
        f"/api/attempts/{attempt_id}/answers",
        json={"questionId": "q-text", "segmentId": "s1", "content": "Version checks."},
        headers=STUDENT,
    )

    event = client.post(
        f"/api/attempts/{attempt_id}/proctor-events",
        json={"type": "PASTE", "pasteLength": 40, "isExternal": True},
        headers=_signed(nonce, "proctor-req-1"),
    )
    assert event.json() == {"success": True, "replay": False}

    submitted = client.post(f"/api/attempts/{attempt_id}/submit", headers=_signed(nonce, "submit-req-1"))
    assert submitted.status_code == 200
    body = submitted.json()
    assert body["replay"] is False
    assert body["attempt"]["status"] == "GRADING_IN_PROGRESS"
    assert body["autoScored"][0]["isCorrect"] is True
    assert body["gradingEnqueued"] == 1
    assert "integrity_nonce" not in body["attempt"]

    replay = client.post(f"/api/attempts/{attempt_id}/submit", headers=_signed(nonce, "submit-req-1"))
    assert replay.status_code == 200
    assert replay.json() == {"success": True, "replay": True, "autoScored": []}
    assert len(queue.pending) == 1


def test_submit_integrity_failures(client):
    attempt_id, nonce = _start(client)

    missing = client.post(f"/api/attempts/{attempt_id}/submit", headers={**STUDENT, "X-Attempt-Nonce": nonce})
    assert missing.status_code == 403
    assert missing.json()["error"] == "INTEGRITY"

    forged = client.post(
        f"/api/attempts/{attempt_id}/submit",
        headers=_signed(nonce[:-1] + ("A" if nonce[-1] != "A" else "B"), "submit-req-1"),
    )
    assert forged.status_code == 403


def test_unknown_event_type_is_rejected(client):
    attempt_id, nonce = _start(client)
    response = client.post(
        f"/api/attempts/{attempt_id}/proctor-events",
        json={"type": "TELEPORT"},
        headers=_signed(nonce, "proctor-req-1"),
    )
    assert response.status_code == 422


def test_proctor_event_with_nested_metadata(client, db):
    attempt_id, nonce = _start(client)
    response = client.post(
        f"/api/attempts/{attempt_id}/proctor-events",
        json={"type": "COPY", "metadata": {"selectionLength": 42}},
        headers=_signed(nonce, "proctor-req-1"),
    )
    assert response.status_code == 200

    (stored,) = db.docs(CONTAINER["PROCTOR_EVENTS"])
    assert stored["selection_length"] == 42


def test_teacher_grading_endpoints(client, queue):
    attempt_id, nonce = _start(client)
    client.put(
        f"/api/attempts/{attempt_id}/answers",
        json={"questionId": "q-text", "segmentId": "s1", "content": "Version checks."},
        headers=STUDENT,
    )
    client.post(f"/api/attempts/{attempt_id}/submit", headers=_signed(nonce, "submit-req-1"))
    answer_id = queue.jobs()[0]["answerId"]

    graded = client.post(
        "/api/grading/grades",
        json={"attemptId": attempt_id, "answerId": answer_id, "score": 4, "feedback": "Solid"},
        headers=TEACHER,
    )
    assert graded.status_code == 200
    assert graded.json()["grade"]["provenance"] == "HUMAN"
    assert graded.json()["grade"]["author"] == "teacher-1"

    skipped = client.post(f"/api/grading/attempts/{attempt_id}/enqueue", headers=TEACHER)
    assert skipped.json() == {"total": 1, "enqueued": 0, "skipped": 1}

    forced = client.post(
        f"/api/grading/attempts/{attempt_id}/enqueue",
        json={"singleAnswerId": answer_id, "forceRegrade": True},
        headers=TEACHER,
    )
    assert forced.json() == {"total": 1, "enqueued": 1, "skipped": 0}

    status = client.post(f"/api/grading/attempts/{attempt_id}/recompute", headers=TEACHER)
    assert status.json()["status"] == "GRADED"

    reset = client.post("/api/grading/exams/exam-1/reset-stuck", headers=TEACHER)
    assert reset.json() == {"resetCount": 0}


def test_invalid_human_score(client, queue):
    attempt_id, nonce = _start(client)
    client.put(
        f"/api/attempts/{attempt_id}/answers",
        json={"questionId": "q-text", "segmentId": "s1", "content": "x"},
        headers=STUDENT,
    )
    client.post(f"/api/attempts/{attempt_id}/submit", headers=_signed(nonce, "submit-req-1"))
    answer_id = queue.jobs()[0]["answerId"]

    response = client.post(
        "/api/grading/grades",
        json={"attemptId": attempt_id, "answerId": answer_id, "score": "lots"},
        headers=TEACHER,
    )
    assert response.status_code == 400
    assert response.json()["error"] == "VALIDATION"


def test_enqueue_reports_queue_outage(client, queue):
    attempt_id, nonce = _start(client)
    client.put(
        f"/api/attempts/{attempt_id}/answers",
        json={"questionId": "q-text", "segmentId": "s1", "content": "x"},
        headers=STUDENT,
    )
    client.post(f"/api/attempts/{attempt_id}/submit", headers=_signed(nonce, "submit-req-1"))
    queue.fail = True

    response = client.post(f"/api/grading/attempts/{attempt_id}/enqueue", headers=TEACHER)
    assert response.status_code == 503
    assert response.json()["error"] == "QUEUE_UNAVAILABLE"


def test_exam_grade_all_and_progress(client, queue):
    attempt_id, nonce = _start(client)
    client.put(
        f"/api/attempts/{attempt_id}/answers",
        json={"questionId": "q-text", "segmentId": "s1", "content": "Version checks."},
        headers=STUDENT,
    )
    client.post(f"/api/attempts/{attempt_id}/submit", headers=_signed(nonce, "submit-req-1"))
    queue.pending.clear()

    progress = client.get("/api/grading/exams/exam-1/progress", headers=TEACHER)
    assert progress.status_code == 200
    assert progress.json() == {
        "completed": 0, "total": 1, "percentage": 0, "status": "NOT_STARTED", "attemptCount": 1,
    }

    grade_all = client.post("/api/grading/exams/exam-1/enqueue", headers=TEACHER)
    assert grade_all.json() == {"total": 1, "enqueued": 1, "skipped": 0}
    assert queue.jobs()[0]["attemptId"] == attempt_id

    assert client.post("/api/grading/exams/exam-1/enqueue", headers=STUDENT).status_code == 403
    assert client.get("/api/grading/exams/missing/progress", headers=TEACHER).status_code == 404


def test_proctoring_reports(client):
    attempt_id, nonce = _start(client)
    for n, payload in enumerate([{"type": "TAB_SWITCH"}, {"type": "FOCUS_LOST"}]):
        client.post(
            f"/api/attempts/{attempt_id}/proctor-events",
            json=payload,
            headers=_signed(nonce, f"proctor-req-{n}"),
        )

    report = client.get(f"/api/proctoring/attempts/{attempt_id}", headers=TEACHER).json()
    assert report["baseScore"] == 5
    assert report["eventCounts"] == {"TAB_SWITCH": 1, "FOCUS_LOST": 1}

    rows = client.get("/api/proctoring/exams/exam-1", headers=TEACHER).json()
    assert rows[0]["attemptId"] == attempt_id
    assert rows[0]["suspicionScore"] == 5


def test_analyze_raw_events(client):
    response = client.post(
        "/api/proctoring/analyze",
        json={
            "events": [
                {"type": "FOCUS_LOST", "timestamp": "2026-03-02T09:00:00Z"},
                {"type": "COPY", "selectionLength": 10, "timestamp": "2026-03-02T09:00:01Z"},
                {"type": "PASTE", "pasteLength": 4, "timestamp": "2026-03-02T09:00:02Z"},
            ],
            "answerTimestamps": [{"questionId": "q1", "savedAt": "2026-03-02T09:00:20Z"}],
        },
        headers=TEACHER,
    )
    body = response.json()
    assert response.status_code == 200
    assert body["focusLossPattern"]["flag"] == "HIGHLY_SUSPICIOUS"
    assert body["score"] == 2 + 3 + 30


def test_submit_is_rate_limited(client):
    attempt_id, nonce = _start(client)
    statuses = [
        client.post(f"/api/attempts/{attempt_id}/submit", headers=_signed(nonce, "submit-req-1")).status_code
        for _ in range(11)
    ]
    assert statuses[:10] == [200] * 10
    assert statuses[10] == 429

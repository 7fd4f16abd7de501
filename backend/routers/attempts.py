import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header

from dependencies import get_submission_service
from models import (
    AttemptSummary,
    AutosaveRequest,
    AutosaveResponse,
    ProctorEventPayload,
    ProctorEventResponse,
    StartAttemptRequest,
    StartAttemptResponse,
    SubmitResponse,
)
from security import Actor, require_student
from submission import SubmissionService

router = APIRouter()
logger = logging.getLogger(__name__)


@router.post("", response_model=StartAttemptResponse)
async def start_attempt(
    request: StartAttemptRequest,
    student: Actor = Depends(require_student),
    service: SubmissionService = Depends(get_submission_service),
):
    """Start (or resume) the student's attempt and hand out its integrity nonce"""
    attempt, nonce = await service.start_attempt(request.exam_id, student.id)
    return StartAttemptResponse(attempt=AttemptSummary.from_attempt(attempt), nonce=nonce)


@router.put("/{attempt_id}/answers", response_model=AutosaveResponse)
async def autosave_answer(
    attempt_id: str,
    request: AutosaveRequest,
    student: Actor = Depends(require_student),
    service: SubmissionService = Depends(get_submission_service),
):
    return await service.autosave_answer(
        attempt_id, student.id, request.question_id, request.segment_id, request.content
    )


@router.post("/{attempt_id}/proctor-events", response_model=ProctorEventResponse)
async def record_proctor_event(
    attempt_id: str,
    payload: ProctorEventPayload,
    x_request_id: Optional[str] = Header(None, alias="X-Request-Id"),
    x_attempt_nonce: Optional[str] = Header(None, alias="X-Attempt-Nonce"),
    student: Actor = Depends(require_student),
    service: SubmissionService = Depends(get_submission_service),
):
    return await service.record_proctor_event(attempt_id, student.id, payload.root, x_request_id, x_attempt_nonce)


@router.post("/{attempt_id}/submit", response_model=SubmitResponse, response_model_exclude_none=True)
async def submit_attempt(
    attempt_id: str,
    x_request_id: Optional[str] = Header(None, alias="X-Request-Id"),
    x_attempt_nonce: Optional[str] = Header(None, alias="X-Attempt-Nonce"),
    student: Actor = Depends(require_student),
    service: SubmissionService = Depends(get_submission_service),
):
    """Submit the attempt. Safe to retry with the same X-Request-Id."""
    return await service.submit(attempt_id, student.id, x_request_id, x_attempt_nonce)

import logging
from typing import Optional

from fastapi import APIRouter, Depends

from attempt_status import AttemptStateMachine
from dependencies import get_grade_writer, get_orchestrator, get_state_machine
from grading_orchestrator import GradingOrchestrator
from models import (
    AttemptSummary,
    EnqueueGradingRequest,
    EnqueueResult,
    GradeWriteResult,
    GradingProgress,
    HumanGradeRequest,
    ResetStuckResult,
)
from provenance import GradeWriter
from security import Actor, require_staff

router = APIRouter()
logger = logging.getLogger(__name__)


@router.post("/attempts/{attempt_id}/enqueue", response_model=EnqueueResult)
async def enqueue_grading(
    attempt_id: str,
    request: Optional[EnqueueGradingRequest] = None,
    staff: Actor = Depends(require_staff),
    orchestrator: GradingOrchestrator = Depends(get_orchestrator),
):
    """Queue automatic grading for an attempt, or force a re-grade of one answer"""
    request = request or EnqueueGradingRequest()
    logger.info(f"{staff.id} enqueued grading for attempt {attempt_id}")
    return await orchestrator.enqueue(
        attempt_id,
        single_answer_id=request.single_answer_id,
        force_regrade=request.force_regrade,
    )


@router.post("/grades", response_model=GradeWriteResult)
async def write_human_grade(
    request: HumanGradeRequest,
    staff: Actor = Depends(require_staff),
    writer: GradeWriter = Depends(get_grade_writer),
):
    return await writer.write_human(
        request.attempt_id, request.answer_id, request.score, grader_id=staff.id, feedback=request.feedback
    )


@router.post("/attempts/{attempt_id}/recompute", response_model=AttemptSummary)
async def recompute_status(
    attempt_id: str,
    staff: Actor = Depends(require_staff),
    state_machine: AttemptStateMachine = Depends(get_state_machine),
):
    attempt = await state_machine.recompute_status(attempt_id)
    return AttemptSummary.from_attempt(attempt)


@router.post("/exams/{exam_id}/reset-stuck", response_model=ResetStuckResult)
async def reset_stuck_attempts(
    exam_id: str,
    staff: Actor = Depends(require_staff),
    state_machine: AttemptStateMachine = Depends(get_state_machine),
):
    """Manual recovery for attempts stranded in GRADING_IN_PROGRESS"""
    logger.warning(f"{staff.role.value} {staff.id} resetting stuck attempts for exam {exam_id}")
    return await state_machine.reset_stuck_attempts(exam_id)


@router.post("/exams/{exam_id}/enqueue", response_model=EnqueueResult)
async def enqueue_exam_grading(
    exam_id: str,
    staff: Actor = Depends(require_staff),
    orchestrator: GradingOrchestrator = Depends(get_orchestrator),
):
    """Grade all: queue automatic grading for every submitted attempt of the exam"""
    logger.info(f"{staff.id} enqueued grading for exam {exam_id}")
    return await orchestrator.enqueue_exam(exam_id)


@router.get("/exams/{exam_id}/progress", response_model=GradingProgress)
async def exam_grading_progress(
    exam_id: str,
    staff: Actor = Depends(require_staff),
    orchestrator: GradingOrchestrator = Depends(get_orchestrator),
):
    return await orchestrator.grading_progress(exam_id)

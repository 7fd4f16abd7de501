from typing import List

from fastapi import APIRouter, Depends

import proctoring
from dependencies import get_analyzer
from models import AnalyzeProctoringRequest, ProctoringSummaryRow, SuspicionReport
from proctoring import ProctoringAnalyzer
from security import Actor, require_staff

router = APIRouter()


@router.post("/analyze", response_model=SuspicionReport)
async def analyze_events(request: AnalyzeProctoringRequest, staff: Actor = Depends(require_staff)):
    """Analyze a raw event log without touching the store"""
    return proctoring.analyze(request.events, request.answer_timestamps)


@router.get("/attempts/{attempt_id}", response_model=SuspicionReport)
async def analyze_attempt(
    attempt_id: str,
    staff: Actor = Depends(require_staff),
    analyzer: ProctoringAnalyzer = Depends(get_analyzer),
):
    return await analyzer.analyze_attempt(attempt_id)


@router.get("/exams/{exam_id}", response_model=List[ProctoringSummaryRow])
async def exam_summary(
    exam_id: str,
    staff: Actor = Depends(require_staff),
    analyzer: ProctoringAnalyzer = Depends(get_analyzer),
):
    """Per-attempt suspicion scores for an exam, most suspicious first"""
    return await analyzer.exam_summary(exam_id)

"""FastAPI dependencies wiring the services to the app's Cosmos DB service and queue."""
from typing import Optional

from fastapi import Depends, Request

from error_utils import safe_raise_http
from grading_orchestrator import GradingOrchestrator
from grading_queue import QueueClient
from attempt_status import AttemptStateMachine
from proctoring import ProctoringAnalyzer
from provenance import GradeWriter
from submission import SubmissionService


async def get_cosmosdb(request: Request):
    """Get Cosmos DB service dependency"""
    db = getattr(request.app.state, "db", None)
    if db is None:
        safe_raise_http("Database not available", status_code=503)
    return db


async def get_queue(request: Request) -> Optional[QueueClient]:
    """The grading queue; None when it could not be configured at startup"""
    return getattr(request.app.state, "queue", None)


def get_state_machine(db=Depends(get_cosmosdb)) -> AttemptStateMachine:
    return AttemptStateMachine(db)


def get_grade_writer(db=Depends(get_cosmosdb)) -> GradeWriter:
    return GradeWriter(db)


def get_orchestrator(db=Depends(get_cosmosdb), queue: Optional[QueueClient] = Depends(get_queue)) -> GradingOrchestrator:
    return GradingOrchestrator(db, queue)


def get_submission_service(db=Depends(get_cosmosdb), queue: Optional[QueueClient] = Depends(get_queue)) -> SubmissionService:
    orchestrator = GradingOrchestrator(db, queue) if queue is not None else None
    return SubmissionService(db, orchestrator=orchestrator)


def get_analyzer(db=Depends(get_cosmosdb)) -> ProctoringAnalyzer:
    return ProctoringAnalyzer(db)


from datetime import datetime, timedelta
from enum import Enum
from typing import List, Optional, Any, Dict, Union, Annotated, Literal
from pydantic import BaseModel, Field, ConfigDict, RootModel, computed_field, model_validator, TypeAdapter
import uuid

from constants import DOC_ATTEMPT, DOC_ANSWER, DOC_GRADE, DOC_IDEMPOTENCY
from datetime_utils import now_utc, ensure_aware

# Namespace for deterministic attempt and answer ids
_ID_NAMESPACE = uuid.UUID("6f1c2d4e-8a3b-5c7d-9e0f-1a2b3c4d5e6f")


def attempt_id_for(exam_id: str, student_id: str) -> str:
    """One attempt per (student, exam): concurrent starts converge on the same id."""
    return str(uuid.uuid5(_ID_NAMESPACE, f"attempt:{exam_id}:{student_id}"))


def answer_id_for(attempt_id: str, question_id: str) -> str:
    return str(uuid.uuid5(_ID_NAMESPACE, f"answer:{attempt_id}:{question_id}"))


def grade_id_for(answer_id: str) -> str:
    return f"grade-{answer_id}"


# ===========================
# COSMOS DB SPECIFIC MODELS
# ===========================

class CosmosDocument(BaseModel):
    """Base class for all Cosmos DB documents"""
    model_config = ConfigDict(
        populate_by_name=True,
        extra="ignore"
    )

    id: str = Field(default_factory=lambda: str(uuid.uuid4()), description="Document ID")
    etag: Optional[str] = Field(None, alias="_etag", description="Cosmos DB ETag for optimistic concurrency")

    def to_document(self) -> Dict[str, Any]:
        """Serialize for storage: snake_case keys, ISO datetimes, system fields dropped."""
        return self.model_dump(mode="json", exclude={"etag"})


# ===========================
# ENUMS AND BASE TYPES
# ===========================

class ActorRole(str, Enum):
    STUDENT = "student"
    TEACHER = "teacher"
    ADMIN = "admin"


class AttemptStatus(str, Enum):
    IN_PROGRESS = "IN_PROGRESS"
    SUBMITTED = "SUBMITTED"
    GRADING_IN_PROGRESS = "GRADING_IN_PROGRESS"
    GRADED = "GRADED"


class QuestionType(str, Enum):
    MCQ = "mcq"
    TEXT = "text"


class GradeProvenance(str, Enum):
    """Who produced the current grade, and whether a human pinned it over a machine grade."""
    AUTOMATIC = "AUTOMATIC"
    HUMAN = "HUMAN"
    HUMAN_OVERRIDE = "HUMAN_OVERRIDE"


class GradeWriteOutcome(str, Enum):
    WRITTEN = "written"
    SKIPPED = "skipped"


class ProctorEventType(str, Enum):
    FOCUS_LOST = "FOCUS_LOST"
    FOCUS_GAINED = "FOCUS_GAINED"
    TAB_SWITCH = "TAB_SWITCH"
    FULLSCREEN_EXIT = "FULLSCREEN_EXIT"
    INACTIVITY = "INACTIVITY"
    MULTI_SESSION = "MULTI_SESSION"
    MULTIPLE_FACES = "MULTIPLE_FACES"
    ABSENCE = "ABSENCE"
    NOISE_DETECTED = "NOISE_DETECTED"
    COPY = "COPY"
    PASTE = "PASTE"


class GradingProgressStatus(str, Enum):
    NOT_STARTED = "NOT_STARTED"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"


class FocusLossFlag(str, Enum):
    NONE = "NONE"
    SUSPICIOUS = "SUSPICIOUS"
    HIGHLY_SUSPICIOUS = "HIGHLY_SUSPICIOUS"


# ===========================
# EXAMS CONTAINER MODELS
# ===========================

class QuestionSegment(BaseModel):
    """One selectable option (mcq) or one answer box (text)"""
    id: str
    instruction: str = ""
    max_points: Optional[float] = Field(None, alias="maxPoints")
    is_correct: Optional[bool] = Field(None, alias="isCorrect")

    model_config = ConfigDict(populate_by_name=True)


class Question(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str
    type: QuestionType = QuestionType.TEXT
    content: str = ""
    rubric: Optional[str] = None
    max_points: Optional[float] = Field(None, alias="maxPoints", description="Explicit cap; falls back to the segment sum")
    require_all_correct: bool = Field(False, alias="requireAllCorrect")
    segments: List[QuestionSegment] = Field(default_factory=list)

    @property
    def resolved_max_points(self) -> float:
        if self.max_points is not None:
            return float(self.max_points)
        return float(sum(seg.max_points or 0 for seg in self.segments))


class Exam(CosmosDocument):
    """Exam definition. Read-only for this service."""
    title: str = ""
    start_at: Optional[datetime] = None
    end_at: Optional[datetime] = None
    duration_minutes: Optional[int] = None
    questions: List[Question] = Field(default_factory=list)

    def question(self, question_id: str) -> Optional[Question]:
        for q in self.questions:
            if q.id == question_id:
                return q
        return None

    def ends_at(self) -> Optional[datetime]:
        """Explicit end time, else start plus duration, else open-ended."""
        if self.end_at is not None:
            return ensure_aware(self.end_at)
        if self.start_at is not None and self.duration_minutes:
            return ensure_aware(self.start_at) + timedelta(minutes=self.duration_minutes)
        return None


# ===========================
# ATTEMPTS CONTAINER MODELS
# ===========================
# Attempt, answers, grades and idempotency records share the attempt_id partition.

class Attempt(CosmosDocument):
    attempt_id: str
    doc_type: Literal["attempt"] = DOC_ATTEMPT
    exam_id: str
    student_id: str
    status: AttemptStatus = AttemptStatus.IN_PROGRESS
    started_at: datetime = Field(default_factory=now_utc)
    submitted_at: Optional[datetime] = None
    integrity_nonce: Optional[str] = None
    auto_submitted: bool = False


class AnswerSegment(BaseModel):
    segment_id: str = Field(..., alias="segmentId")
    content: str = ""
    saved_at: datetime = Field(default_factory=now_utc, alias="savedAt")

    model_config = ConfigDict(populate_by_name=True)


class Answer(CosmosDocument):
    attempt_id: str
    doc_type: Literal["answer"] = DOC_ANSWER
    question_id: str
    segments: List[AnswerSegment] = Field(default_factory=list)

    def selections(self) -> Dict[str, str]:
        return {seg.segment_id: seg.content for seg in self.segments}

    def text(self) -> str:
        return "\n\n".join(seg.content for seg in self.segments if seg.content)

    def last_saved_at(self) -> Optional[datetime]:
        if not self.segments:
            return None
        return max(ensure_aware(seg.saved_at) for seg in self.segments)


class Grade(CosmosDocument):
    attempt_id: str
    doc_type: Literal["grade"] = DOC_GRADE
    answer_id: str
    score: float = 0.0
    feedback: Optional[str] = None
    rationale: Optional[str] = None
    author: Optional[str] = Field(None, description="Grader id; null for automatic grades")
    provenance: GradeProvenance = GradeProvenance.AUTOMATIC
    graded_at: datetime = Field(default_factory=now_utc)

    @computed_field
    @property
    def locked(self) -> bool:
        """A human pinned this grade over a machine grade"""
        return self.provenance == GradeProvenance.HUMAN_OVERRIDE


class IdempotencyRecord(CosmosDocument):
    attempt_id: str
    doc_type: Literal["idempotency"] = DOC_IDEMPOTENCY
    request_id: str
    operation: str
    created_at: datetime = Field(default_factory=now_utc)


# ===========================
# PROCTOR EVENTS CONTAINER MODELS
# ===========================

class ProctorEventBase(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    timestamp: datetime = Field(default_factory=now_utc)

    @model_validator(mode="before")
    @classmethod
    def lift_metadata(cls, data: Any) -> Any:
        """Browser clients send details nested as {type, metadata: {...}}; top-level keys win."""
        if isinstance(data, dict) and isinstance(data.get("metadata"), dict):
            data = {**data["metadata"], **{k: v for k, v in data.items() if k != "metadata"}}
        return data


class SignalEvent(ProctorEventBase):
    """Events that carry nothing beyond their type and time"""
    type: Literal[
        "FOCUS_LOST", "FOCUS_GAINED", "TAB_SWITCH", "FULLSCREEN_EXIT", "INACTIVITY",
        "MULTI_SESSION", "MULTIPLE_FACES", "ABSENCE", "NOISE_DETECTED",
    ]


class CopyEvent(ProctorEventBase):
    type: Literal["COPY"]
    selection_length: int = Field(0, ge=0, alias="selectionLength")


class PasteEvent(ProctorEventBase):
    type: Literal["PASTE"]
    paste_length: Optional[int] = Field(None, ge=0, alias="pasteLength")
    is_external: bool = Field(False, alias="isExternal")


ProctorEvent = Annotated[
    Union[SignalEvent, CopyEvent, PasteEvent],
    Field(discriminator="type", description="Tagged proctoring event")
]

proctor_event_list = TypeAdapter(List[ProctorEvent])


class ProctorEventPayload(RootModel[ProctorEvent]):
    """Request body carrying one proctoring event"""


class AnswerTimestamp(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    question_id: str = Field(..., alias="questionId")
    saved_at: datetime = Field(..., alias="savedAt")


# ===========================
# PROCTORING REPORT MODELS
# ===========================

class CopyPasteAnalysis(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    total_pairs: int = Field(0, alias="totalPairs")
    suspicious_pairs: int = Field(0, alias="suspiciousPairs")
    strong_pairs: int = Field(0, alias="strongPairs")


class FocusLossPattern(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    matches: int = 0
    total_answers: int = Field(0, alias="totalAnswers")
    ratio: float = 0.0
    flag: FocusLossFlag = FocusLossFlag.NONE


class ExternalPasteAnalysis(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    external_pastes: int = Field(0, alias="externalPastes")
    internal_pastes: int = Field(0, alias="internalPastes")


class SuspicionReport(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    event_counts: Dict[str, int] = Field(default_factory=dict, alias="eventCounts")
    copy_paste: CopyPasteAnalysis = Field(default_factory=CopyPasteAnalysis, alias="copyPaste")
    focus_loss_pattern: FocusLossPattern = Field(default_factory=FocusLossPattern, alias="focusLossPattern")
    external_pastes: ExternalPasteAnalysis = Field(default_factory=ExternalPasteAnalysis, alias="externalPastes")
    base_score: int = Field(0, alias="baseScore")
    copy_paste_score: int = Field(0, alias="copyPasteScore")
    pattern_bonus: int = Field(0, alias="patternBonus")
    external_paste_score: int = Field(0, alias="externalPasteScore")
    score: int = 0


class ProctoringSummaryRow(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    attempt_id: str = Field(..., alias="attemptId")
    student_id: str = Field(..., alias="studentId")
    status: AttemptStatus
    suspicion_score: int = Field(0, alias="suspicionScore")
    focus_loss_flag: FocusLossFlag = Field(FocusLossFlag.NONE, alias="focusLossFlag")
    event_count: int = Field(0, alias="eventCount")


# ===========================
# SCORING / GRADING MODELS
# ===========================

class AutoScore(BaseModel):
    score: float
    is_correct: bool = Field(..., alias="isCorrect")
    selected: List[str] = Field(default_factory=list)
    correct: List[str] = Field(default_factory=list)

    model_config = ConfigDict(populate_by_name=True)


class ExternalScore(BaseModel):
    """Score returned by the external grading model"""
    score: float
    feedback: Optional[str] = None
    rationale: Optional[str] = None


class GradingJob(BaseModel):
    """Payload of one queued grading job"""
    model_config = ConfigDict(populate_by_name=True)

    attempt_id: str = Field(..., alias="attemptId")
    answer_id: str = Field(..., alias="answerId")
    question_id: str = Field(..., alias="questionId")
    force_regrade: bool = Field(False, alias="forceRegrade")


class GradeWriteResult(BaseModel):
    outcome: GradeWriteOutcome
    grade: Optional[Grade] = None


# ===========================
# REQUEST/RESPONSE MODELS
# ===========================

class SubmissionGate(BaseModel):
    accept: bool
    replay: bool = False


class AttemptSummary(BaseModel):
    """Attempt as returned to clients. The nonce is only handed out once, at start."""
    model_config = ConfigDict(populate_by_name=True)

    id: str
    exam_id: str = Field(..., alias="examId")
    student_id: str = Field(..., alias="studentId")
    status: AttemptStatus
    started_at: datetime = Field(..., alias="startedAt")
    submitted_at: Optional[datetime] = Field(None, alias="submittedAt")
    auto_submitted: bool = Field(False, alias="autoSubmitted")

    @classmethod
    def from_attempt(cls, attempt: Attempt) -> "AttemptSummary":
        return cls(
            id=attempt.id,
            exam_id=attempt.exam_id,
            student_id=attempt.student_id,
            status=attempt.status,
            started_at=attempt.started_at,
            submitted_at=attempt.submitted_at,
            auto_submitted=attempt.auto_submitted,
        )


class StartAttemptRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    exam_id: str = Field(..., alias="examId")


class StartAttemptResponse(BaseModel):
    attempt: AttemptSummary
    nonce: str


class AutosaveRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    question_id: str = Field(..., alias="questionId")
    segment_id: str = Field(..., alias="segmentId")
    content: str = Field("", max_length=100_000)


class AutosaveResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    answer_id: str = Field(..., alias="answerId")
    saved_at: datetime = Field(..., alias="savedAt")


class AutoScoredAnswer(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    answer_id: str = Field(..., alias="answerId")
    question_id: str = Field(..., alias="questionId")
    score: float
    is_correct: bool = Field(..., alias="isCorrect")
    written: bool = True


class SubmitResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    success: bool = True
    replay: bool = False
    attempt: Optional[AttemptSummary] = None
    auto_scored: List[AutoScoredAnswer] = Field(default_factory=list, alias="autoScored")
    grading_enqueued: Optional[int] = Field(None, alias="gradingEnqueued", description="Null when enqueueing was skipped or failed")


class ProctorEventResponse(BaseModel):
    success: bool = True
    replay: bool = False


class EnqueueGradingRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    single_answer_id: Optional[str] = Field(None, alias="singleAnswerId")
    force_regrade: bool = Field(False, alias="forceRegrade")


class EnqueueResult(BaseModel):
    total: int = 0
    enqueued: int = 0
    skipped: int = 0


class HumanGradeRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    attempt_id: str = Field(..., alias="attemptId")
    answer_id: str = Field(..., alias="answerId")
    score: Any = Field(..., description="Validated as a finite number by the write path")
    feedback: Optional[str] = Field(None, max_length=10_000)


class GradingProgress(BaseModel):
    """Exam-wide share of submitted answers that carry a grade"""
    model_config = ConfigDict(populate_by_name=True)

    completed: int = 0
    total: int = 0
    percentage: int = 100
    status: GradingProgressStatus = GradingProgressStatus.COMPLETED
    attempt_count: int = Field(0, alias="attemptCount")


class ResetStuckResult(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    reset_count: int = Field(0, alias="resetCount")


class AnalyzeProctoringRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    events: List[ProctorEvent] = Field(default_factory=list)
    answer_timestamps: List[AnswerTimestamp] = Field(default_factory=list, alias="answerTimestamps")

"""
Proctoring pattern analysis.

Turns an attempt's proctoring event log into a suspicion score:

    score = 2 x FOCUS_LOST + 3 x TAB_SWITCH
          + 3 x suspicious copy/paste pairs + 7 x strong pairs
          + 15 (SUSPICIOUS) or 30 (HIGHLY_SUSPICIOUS) focus-loss pattern bonus
          + 5 x external pastes

Read-only: nothing here writes attempt or grade state.
"""
import logging
from collections import Counter
from datetime import timedelta
from typing import Dict, List, Sequence

from attempt_store import AttemptStore
from constants import CONTAINER, FOCUS_WINDOW_SECONDS, HIGHLY_SUSPICIOUS_RATIO, SUSPICIOUS_RATIO
from datetime_utils import ensure_aware
from models import (
    AnswerTimestamp,
    CopyPasteAnalysis,
    ExternalPasteAnalysis,
    FocusLossFlag,
    FocusLossPattern,
    ProctorEvent,
    ProctorEventType,
    ProctoringSummaryRow,
    SuspicionReport,
    proctor_event_list,
)

logger = logging.getLogger(__name__)

FOCUS_LOST_WEIGHT = 2
TAB_SWITCH_WEIGHT = 3
SUSPICIOUS_PAIR_WEIGHT = 3
STRONG_PAIR_WEIGHT = 7
SUSPICIOUS_PATTERN_BONUS = 15
HIGHLY_SUSPICIOUS_PATTERN_BONUS = 30
EXTERNAL_PASTE_WEIGHT = 5

FOCUS_CHANGE_TYPES = (ProctorEventType.FOCUS_LOST, ProctorEventType.TAB_SWITCH)


def sort_events(events: Sequence[ProctorEvent]) -> List[ProctorEvent]:
    """Stable sort by timestamp; ties keep arrival order."""
    return sorted(events, key=lambda e: ensure_aware(e.timestamp))


def tally_events(events: Sequence[ProctorEvent]) -> Dict[str, int]:
    return dict(Counter(str(e.type) for e in events))


def analyze_copy_paste(events: Sequence[ProctorEvent]) -> CopyPasteAnalysis:
    """
    Pair each copy with the next paste that reports a length. Equal lengths are
    benign; a mismatch is suspicious, or strong if focus left the page in between.
    """
    result = CopyPasteAnalysis()
    pending_copy = None  # (index, selection_length)

    for index, event in enumerate(events):
        if event.type == ProctorEventType.COPY:
            if event.selection_length > 0:
                pending_copy = (index, event.selection_length)
        elif event.type == ProctorEventType.PASTE and pending_copy is not None:
            if event.paste_length is None:
                continue
            copy_index, copy_length = pending_copy
            result.total_pairs += 1
            if copy_length != event.paste_length:
                between = events[copy_index + 1:index]
                if any(e.type in FOCUS_CHANGE_TYPES for e in between):
                    result.strong_pairs += 1
                else:
                    result.suspicious_pairs += 1
            pending_copy = None

    return result


def analyze_focus_loss(events: Sequence[ProctorEvent], answer_timestamps: Sequence[AnswerTimestamp],
                       window_seconds: int = FOCUS_WINDOW_SECONDS) -> FocusLossPattern:
    """Share of answer saves preceded by a FOCUS_LOST within the window (bounds inclusive)."""
    total = len(answer_timestamps)
    if total == 0:
        return FocusLossPattern(matches=0, total_answers=0, ratio=0.0, flag=FocusLossFlag.NONE)

    window = timedelta(seconds=window_seconds)
    focus_lost = [ensure_aware(e.timestamp) for e in events if e.type == ProctorEventType.FOCUS_LOST]

    matches = 0
    for answer in answer_timestamps:
        saved_at = ensure_aware(answer.saved_at)
        if any(saved_at - window <= t <= saved_at for t in focus_lost):
            matches += 1

    ratio = matches / total
    if ratio >= HIGHLY_SUSPICIOUS_RATIO:
        flag = FocusLossFlag.HIGHLY_SUSPICIOUS
    elif ratio >= SUSPICIOUS_RATIO:
        flag = FocusLossFlag.SUSPICIOUS
    else:
        flag = FocusLossFlag.NONE
    return FocusLossPattern(matches=matches, total_answers=total, ratio=ratio, flag=flag)


def analyze_external_pastes(events: Sequence[ProctorEvent]) -> ExternalPasteAnalysis:
    result = ExternalPasteAnalysis()
    for event in events:
        if event.type != ProctorEventType.PASTE:
            continue
        if event.is_external:
            result.external_pastes += 1
        else:
            result.internal_pastes += 1
    return result


def analyze(events: Sequence[ProctorEvent], answer_timestamps: Sequence[AnswerTimestamp]) -> SuspicionReport:
    ordered = sort_events(events)
    counts = tally_events(ordered)
    copy_paste = analyze_copy_paste(ordered)
    focus_pattern = analyze_focus_loss(ordered, answer_timestamps)
    pastes = analyze_external_pastes(ordered)

    base_score = (
        FOCUS_LOST_WEIGHT * counts.get(ProctorEventType.FOCUS_LOST.value, 0)
        + TAB_SWITCH_WEIGHT * counts.get(ProctorEventType.TAB_SWITCH.value, 0)
    )
    copy_paste_score = (
        SUSPICIOUS_PAIR_WEIGHT * copy_paste.suspicious_pairs
        + STRONG_PAIR_WEIGHT * copy_paste.strong_pairs
    )
    if focus_pattern.flag == FocusLossFlag.HIGHLY_SUSPICIOUS:
        pattern_bonus = HIGHLY_SUSPICIOUS_PATTERN_BONUS
    elif focus_pattern.flag == FocusLossFlag.SUSPICIOUS:
        pattern_bonus = SUSPICIOUS_PATTERN_BONUS
    else:
        pattern_bonus = 0
    external_paste_score = EXTERNAL_PASTE_WEIGHT * pastes.external_pastes

    return SuspicionReport(
        event_counts=counts,
        copy_paste=copy_paste,
        focus_loss_pattern=focus_pattern,
        external_pastes=pastes,
        base_score=base_score,
        copy_paste_score=copy_paste_score,
        pattern_bonus=pattern_bonus,
        external_paste_score=external_paste_score,
        score=base_score + copy_paste_score + pattern_bonus + external_paste_score,
    )


class ProctoringAnalyzer:
    """Loads event logs and answer save times from the store and analyzes them."""

    def __init__(self, db):
        self.db = db
        self.store = AttemptStore(db)

    async def _events(self, attempt_id: str) -> List[ProctorEvent]:
        docs = await self.db.find_many(CONTAINER["PROCTOR_EVENTS"], {"attempt_id": attempt_id}, partition_key=attempt_id)
        return proctor_event_list.validate_python(docs)

    async def _answer_timestamps(self, attempt_id: str) -> List[AnswerTimestamp]:
        stamps = []
        for answer in await self.store.list_answers(attempt_id):
            saved_at = answer.last_saved_at()
            if saved_at is not None:
                stamps.append(AnswerTimestamp(question_id=answer.question_id, saved_at=saved_at))
        return stamps

    async def analyze_attempt(self, attempt_id: str) -> SuspicionReport:
        await self.store.get_attempt(attempt_id)
        events = await self._events(attempt_id)
        return analyze(events, await self._answer_timestamps(attempt_id))

    async def exam_summary(self, exam_id: str) -> List[ProctoringSummaryRow]:
        """One row per attempt, most suspicious first."""
        await self.store.get_exam(exam_id)
        rows = []
        for attempt in await self.store.list_attempts(exam_id=exam_id):
            events = await self._events(attempt.id)
            report = analyze(events, await self._answer_timestamps(attempt.id))
            rows.append(ProctoringSummaryRow(
                attempt_id=attempt.id,
                student_id=attempt.student_id,
                status=attempt.status,
                suspicion_score=report.score,
                focus_loss_flag=report.focus_loss_pattern.flag,
                event_count=len(events),
            ))
        rows.sort(key=lambda r: r.suspicion_score, reverse=True)
        logger.info(f"Proctoring summary for exam {exam_id}: {len(rows)} attempts")
        return rows

from typing import Dict, Optional

from constants import SCORE_PRECISION
from models import AutoScore, Question


def is_selected(value: Optional[str]) -> bool:
    """Checkbox answers are stored as strings; empty and "false" both mean unchecked."""
    if not isinstance(value, str):
        return False
    value = value.strip()
    return bool(value) and value.lower() != "false"


def score(question: Question, selections: Dict[str, Optional[str]]) -> AutoScore:
    """
    Deterministic score for a multiple-choice question.

    All-or-nothing questions earn full points only on an exact match.
    Otherwise each wrong pick cancels a right one and the result is floored at 0.
    """
    selected = {seg_id for seg_id, value in selections.items() if is_selected(value)}
    correct = {seg.id for seg in question.segments if seg.is_correct}
    # Ignore selections for segments the question does not have
    selected &= {seg.id for seg in question.segments}

    max_points = question.resolved_max_points
    is_correct = selected == correct

    if not correct:
        points = 0.0
    elif question.require_all_correct:
        points = max_points if is_correct else 0.0
    else:
        correct_selected = len(selected & correct)
        incorrect_selected = len(selected - correct)
        points = max(0.0, (correct_selected - incorrect_selected) / len(correct) * max_points)

    return AutoScore(
        score=round(points, SCORE_PRECISION),
        is_correct=is_correct and bool(correct),
        selected=sorted(selected),
        correct=sorted(correct),
    )

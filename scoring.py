# scoring.py
# Grades a finished attempt against the canonical correct option ids.
# Pass/fail is a reporting concern; nothing here decides it for the client.

import os
from typing import Any, Dict, List, Optional, Sequence

PASSING_SCORE = int(os.getenv("QUIZ_PASSING_SCORE") or 70)


def _percent(correct: int, total: int) -> int:
    # round-half-up on integers
    if total <= 0:
        return 0
    return (200 * correct + total) // (2 * total)


def normalize_answers(raw: Any) -> List[Dict[str, Any]]:
    """
    Accepts a list of {question_id, selected_option_id, time_spent, marked_for_review}
    (camelCase tolerated) or a {question_id: option_id} mapping. Last answer per question wins.
    """
    items: List[Dict[str, Any]] = []
    if isinstance(raw, dict):
        items = [{"question_id": k, "selected_option_id": v} for k, v in raw.items()]
    elif isinstance(raw, (list, tuple)):
        items = [a for a in raw if isinstance(a, dict)]

    by_q: Dict[str, Dict[str, Any]] = {}
    for a in items:
        qid = a.get("question_id") or a.get("questionId")
        if not qid:
            continue
        sel = a.get("selected_option_id")
        if sel is None:
            sel = a.get("selectedOptionId", a.get("answer"))
        try:
            spent = max(0, int(a.get("time_spent") or a.get("timeSpent") or 0))
        except (TypeError, ValueError):
            spent = 0
        by_q[str(qid)] = {
            "question_id": str(qid),
            "selected_option_id": (str(sel) if sel not in (None, "") else None),
            "time_spent": spent,
            "marked_for_review": bool(a.get("marked_for_review") or a.get("markedForReview")),
        }
    return list(by_q.values())


def grade_answers(answers: Sequence[Dict[str, Any]],
                  questions: Sequence[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """One response row per answered question that exists in the quiz."""
    correct_by_q = {str(q["id"]): str(q.get("correct_option_id")) for q in questions}
    out: List[Dict[str, Any]] = []
    for a in answers:
        qid = str(a.get("question_id"))
        if qid not in correct_by_q:
            continue
        sel = a.get("selected_option_id")
        out.append({
            "question_id": qid,
            "selected_option_id": sel,
            "is_correct": sel is not None and sel == correct_by_q[qid],
            "time_spent": int(a.get("time_spent") or 0),
            "marked_for_review": bool(a.get("marked_for_review")),
        })
    return out


def score(answers: Sequence[Dict[str, Any]],
          questions: Sequence[Dict[str, Any]]) -> Dict[str, int]:
    """{correct_count, total, percentage}; unanswered questions count as incorrect."""
    graded = grade_answers(answers, questions)
    correct = sum(1 for r in graded if r["is_correct"])
    total = len(questions)
    return {"correct_count": correct, "total": total, "percentage": _percent(correct, total)}


def passed(percentage: Optional[float], threshold: int = PASSING_SCORE) -> bool:
    return percentage is not None and float(percentage) >= threshold

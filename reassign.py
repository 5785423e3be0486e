# reassign.py
# -----------------------------------------------------------------------------
# Reassignment: a fresh enrollment that ignores the cohort window.
#   reassignment_eligibility / eligibility_report   pure, over fetched rows
#   reassign_students                               the only mutation
# Originals are never edited, except that a lapsed (never-taken, window
# closed) original is closed in the same transaction as its reassignment.
# -----------------------------------------------------------------------------

import uuid
from collections import defaultdict
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Sequence

from availability import ENDED, GRACE_PERIOD_SECONDS, availability, as_utc, utcnow
from errors import NoEligibleStudents, QuizNotFound, QuizNotPublished
from notify import safe_notify

REASON_NO_ENROLLMENT = "No original enrollment"
REASON_PENDING = "Has pending reassignment"
REASON_IN_PROGRESS = "Attempt in progress"
REASON_STILL_OPEN = "Original enrollment still open"
REASON_ELIGIBLE = "Eligible for reassignment"
REASON_ELIGIBLE_LAPSED = "Eligible for reassignment (missed original window)"


def _enrolled_ts(row: Dict[str, Any]) -> float:
    at = as_utc(row.get("enrolled_at"))
    return at.timestamp() if at else 0.0


def _newest_first(rows: Sequence[Dict[str, Any]]) -> List[Dict[str, Any]]:
    return sorted(rows, key=lambda r: (_enrolled_ts(r), str(r.get("id"))), reverse=True)


def reassignment_eligibility(enrollments: Sequence[Dict[str, Any]], attempts: Sequence[Dict[str, Any]],
                             quiz: Dict[str, Any], now: Optional[datetime] = None,
                             grace_seconds: int = GRACE_PERIOD_SECONDS) -> Dict[str, Any]:
    """
    Eligibility of one student, given all of their enrollments and attempts for the quiz.
    Returns {eligible, reason, original_status, reassignment_count,
             parent_enrollment_id, close_enrollment_id}.
    """
    now = as_utc(now) or utcnow()
    rows = _newest_first(enrollments)
    originals = [r for r in rows if not r.get("is_reassignment")]
    out: Dict[str, Any] = {
        "eligible": False,
        "reason": REASON_NO_ENROLLMENT,
        "original_status": originals[-1]["status"] if originals else None,
        "reassignment_count": sum(1 for r in rows if r.get("is_reassignment")),
        "parent_enrollment_id": rows[0]["id"] if rows else None,
        "close_enrollment_id": None,
    }
    if not rows:
        return out

    active = next((r for r in rows if r.get("status") != "completed"), None)
    if active is None:
        out.update(eligible=True, reason=REASON_ELIGIBLE)
        return out
    if active.get("is_reassignment"):
        out["reason"] = REASON_PENDING
        return out
    if any(a.get("status") == "in_progress" and str(a.get("enrollment_id")) == str(active["id"])
           for a in attempts):
        out["reason"] = REASON_IN_PROGRESS
        return out
    window = availability(quiz, now, for_submit=True, grace_seconds=grace_seconds)
    if window["status"] != ENDED:
        out["reason"] = REASON_STILL_OPEN
        return out
    out.update(eligible=True, reason=REASON_ELIGIBLE_LAPSED, close_enrollment_id=active["id"])
    return out


def eligibility_report(quiz: Dict[str, Any], enrollments: Sequence[Dict[str, Any]],
                       attempts: Sequence[Dict[str, Any]], now: Optional[datetime] = None,
                       grace_seconds: int = GRACE_PERIOD_SECONDS) -> Dict[str, Any]:
    by_student: Dict[str, List[Dict[str, Any]]] = defaultdict(list)
    for e in enrollments:
        by_student[str(e["student_id"])].append(e)
    attempts_by_student: Dict[str, List[Dict[str, Any]]] = defaultdict(list)
    for a in attempts:
        attempts_by_student[str(a["student_id"])].append(a)

    students = []
    for sid in sorted(by_student):
        info = reassignment_eligibility(by_student[sid], attempts_by_student.get(sid, []),
                                        quiz, now, grace_seconds)
        students.append(dict(info, student_id=sid))
    return {
        "quiz_id": str(quiz["id"]),
        "students": students,
        "summary": {
            "total": len(students),
            "eligible": sum(1 for s in students if s["eligible"]),
            "completed": sum(1 for s in students
                             if any(e.get("status") == "completed" and not e.get("closed_reason")
                                    for e in by_student[s["student_id"]])),
            "pending_reassignment": sum(1 for s in students if s["reason"] == REASON_PENDING),
        },
    }


def reassign_students(store, quiz_id: str, educator_id: str, student_ids: Optional[List[str]] = None,
                      reason: Optional[str] = None, notify: bool = True,
                      notifier: Optional[Callable] = None, now: Optional[datetime] = None,
                      grace_seconds: int = GRACE_PERIOD_SECONDS) -> Dict[str, Any]:
    """student_ids=None reassigns every eligible student."""
    now = as_utc(now) or utcnow()
    quiz = store.get_quiz(quiz_id)
    if not quiz or str(quiz.get("educator_id")) != str(educator_id):
        raise QuizNotFound()
    if quiz.get("status") != "published":
        raise QuizNotPublished("Only published quizzes can be reassigned.")

    report = eligibility_report(quiz, store.list_quiz_enrollments(quiz_id),
                                store.list_quiz_attempts(quiz_id), now, grace_seconds)
    info_by_student = {s["student_id"]: s for s in report["students"]}
    if student_ids is None:
        targets = [s["student_id"] for s in report["students"] if s["eligible"]]
    else:
        targets = list(dict.fromkeys(str(s) for s in student_ids if s))

    results: List[Dict[str, Any]] = []
    eligible = []
    for sid in targets:
        info = info_by_student.get(sid)
        if info is None or not info["eligible"]:
            results.append({"student_id": sid, "status": "skipped",
                            "reason": info["reason"] if info else REASON_NO_ENROLLMENT})
        else:
            eligible.append(info)
    if not eligible:
        raise NoEligibleStudents(results=results)

    group_id = str(uuid.uuid4())
    reassigned = 0
    for info in eligible:
        sid = info["student_id"]
        row = {
            "id": str(uuid.uuid4()),
            "quiz_id": quiz_id,
            "student_id": sid,
            "enrolled_at": now,
            "is_reassignment": True,
            "parent_enrollment_id": info["parent_enrollment_id"],
            "group_enrollment_id": group_id,
            "reassignment_reason": reason,
            "reassigned_by": str(educator_id),
        }
        created = store.insert_reassignment(row, info["close_enrollment_id"], now)
        if created is None:
            results.append({"student_id": sid, "status": "skipped", "reason": "Concurrent enrollment exists"})
            continue
        reassigned += 1
        results.append({"student_id": sid, "status": "reassigned", "enrollment_id": created["id"],
                        "parent_enrollment_id": info["parent_enrollment_id"]})
        print(f"[reassign] quiz={quiz_id} student={sid} enrollment={created['id']}", flush=True)
        if notify:
            safe_notify(notifier, "enrollment.reassigned", {
                "quiz_id": quiz_id, "quiz_title": quiz.get("title"), "student_id": sid,
                "enrollment_id": created["id"], "reason": reason,
            })

    return {
        "ok": True,
        "reassigned": reassigned,
        "skipped": len(results) - reassigned,
        "group_enrollment_id": group_id,
        "results": results,
    }

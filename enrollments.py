# enrollments.py
# -----------------------------------------------------------------------------
# Enrollment transitions. At most one non-completed enrollment per
# (quiz, student); the store enforces it, these functions only decide.
#   enroll / bulk_enroll     educator actions (require an educator-student link)
#   ensure_enrolled          implicit enrollment on share-link access
#   resolve_active_enrollment  the student's current enrollment for a quiz
# -----------------------------------------------------------------------------

import uuid
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional

from availability import ENDED, availability, utcnow
from errors import (
    AlreadyEnrolled, BadRequest, EnrollmentWindowClosed, NoActiveEnrollment,
    QuizNotFound, QuizNotPublished, StudentNotLinked,
)
from notify import safe_notify

_REASSIGN_HINT = "Use reassignment to give students access to an expired quiz."


def active_enrollment(rows: Iterable[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    for r in rows or []:
        if r.get("status") != "completed":
            return r
    return None


def _owned_published_quiz(store, quiz_id: str, educator_id: Optional[str]) -> Dict[str, Any]:
    quiz = store.get_quiz(quiz_id)
    if not quiz or (educator_id is not None and str(quiz.get("educator_id")) != str(educator_id)):
        raise QuizNotFound()
    if quiz.get("status") != "published":
        raise QuizNotPublished("Quiz must be published before enrolling students.")
    return quiz


def _new_enrollment(quiz_id: str, student_id: str, now: datetime, **extra: Any) -> Dict[str, Any]:
    row = {
        "id": str(uuid.uuid4()),
        "quiz_id": quiz_id,
        "student_id": str(student_id),
        "status": "enrolled",
        "enrolled_at": now,
        "is_reassignment": False,
    }
    row.update(extra)
    return row


def enroll(store, quiz_id: str, student_id: str, educator_id: Optional[str] = None,
           now: Optional[datetime] = None, notifier: Optional[Callable] = None) -> Dict[str, Any]:
    now = now or utcnow()
    quiz = _owned_published_quiz(store, quiz_id, educator_id)
    if availability(quiz, now)["status"] == ENDED:
        raise EnrollmentWindowClosed(hint=_REASSIGN_HINT)
    if educator_id is not None and not store.is_educator_student(educator_id, student_id):
        raise StudentNotLinked()
    if active_enrollment(store.list_enrollments(quiz_id, student_id)):
        raise AlreadyEnrolled()

    created = store.insert_enrollment(_new_enrollment(quiz_id, student_id, now))
    if created is None:
        raise AlreadyEnrolled()
    print(f"[enroll] student {student_id} enrolled in quiz {quiz_id}", flush=True)
    safe_notify(notifier, "enrollment.created", {
        "quiz_id": quiz_id, "quiz_title": quiz.get("title"),
        "student_id": str(student_id), "enrollment_id": created["id"],
    })
    return created


def bulk_enroll(store, quiz_id: str, educator_id: str, student_ids: Optional[List[str]] = None,
                enroll_all: bool = False, notify: bool = True, now: Optional[datetime] = None,
                notifier: Optional[Callable] = None) -> Dict[str, Any]:
    """
    Set difference against every existing enrollment for the quiz; only new
    students get a row. Notification failures never undo an enrollment.
    """
    now = now or utcnow()
    quiz = _owned_published_quiz(store, quiz_id, educator_id)
    if availability(quiz, now)["status"] == ENDED:
        raise EnrollmentWindowClosed(hint=_REASSIGN_HINT)

    linked = store.list_educator_students(educator_id)
    not_linked: List[str] = []
    if enroll_all:
        candidates = list(linked)
    else:
        linked_set = set(linked)
        candidates = []
        for sid in dict.fromkeys(str(s) for s in (student_ids or []) if s):
            (candidates if sid in linked_set else not_linked).append(sid)
    if not candidates:
        raise BadRequest("No valid students found to enroll.")

    existing = {str(r["student_id"]) for r in store.list_quiz_enrollments(quiz_id)}
    created: List[Dict[str, Any]] = []
    already = [sid for sid in candidates if sid in existing]
    for sid in candidates:
        if sid in existing:
            continue
        row = store.insert_enrollment(_new_enrollment(quiz_id, sid, now))
        if row is None:
            already.append(sid)
            continue
        created.append(row)

    notified = 0
    if notify:
        for row in created:
            if safe_notify(notifier, "enrollment.created", {
                "quiz_id": quiz_id, "quiz_title": quiz.get("title"),
                "student_id": row["student_id"], "enrollment_id": row["id"],
            }):
                notified += 1

    print(f"[enroll] bulk quiz={quiz_id} new={len(created)} already={len(already)} "
          f"not_linked={len(not_linked)}", flush=True)
    return {
        "enrolled": len(created),
        "already_enrolled": len(already),
        "not_linked": len(not_linked),
        "notified": notified,
        "enrollment_ids": [r["id"] for r in created],
    }


def ensure_enrolled(store, quiz: Dict[str, Any], student_id: str,
                    now: Optional[datetime] = None) -> Dict[str, Any]:
    """
    Share-link access: link the student to the quiz's educator and open an
    enrollment. Idempotent under concurrent calls; the loser of the insert race
    reads back the winner's row.
    """
    now = now or utcnow()
    if quiz.get("status") != "published":
        raise QuizNotPublished()
    quiz_id = str(quiz["id"])
    store.ensure_educator_student(str(uuid.uuid4()), str(quiz["educator_id"]), str(student_id), now)
    created = store.insert_enrollment(_new_enrollment(quiz_id, student_id, now))
    if created is not None:
        print(f"[enroll] auto-enrolled student {student_id} in quiz {quiz_id} via share link", flush=True)
        return created
    current = active_enrollment(store.list_enrollments(quiz_id, student_id))
    if current is None:
        raise NoActiveEnrollment()
    return current


def resolve_active_enrollment(store, quiz_id: str, student_id: str, now: Optional[datetime] = None,
                              quiz: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    rows = store.list_enrollments(quiz_id, student_id)
    current = active_enrollment(rows)
    if current is not None:
        return current
    if rows:
        # every enrollment is completed; a retake needs a reassignment
        raise NoActiveEnrollment()
    quiz = quiz or store.get_quiz(quiz_id)
    if not quiz:
        raise QuizNotFound()
    return ensure_enrolled(store, quiz, student_id, now)


def enrollment_summary(store, quiz_id: str, educator_id: Optional[str] = None) -> Dict[str, Any]:
    quiz = store.get_quiz(quiz_id)
    if not quiz or (educator_id is not None and str(quiz.get("educator_id")) != str(educator_id)):
        raise QuizNotFound()
    rows = store.list_quiz_enrollments(quiz_id)
    by_status: Dict[str, int] = {"enrolled": 0, "in_progress": 0, "completed": 0}
    items = []
    for r in rows:
        by_status[r["status"]] = by_status.get(r["status"], 0) + 1
        items.append({
            "enrollment_id": r["id"],
            "student_id": r["student_id"],
            "status": r["status"],
            "enrolled_at": r.get("enrolled_at"),
            "completed_at": r.get("completed_at"),
            "is_reassignment": bool(r.get("is_reassignment")),
            "parent_enrollment_id": r.get("parent_enrollment_id"),
            "reassignment_reason": r.get("reassignment_reason"),
            "closed_reason": r.get("closed_reason"),
        })
    return {
        "quiz_id": quiz_id,
        "total": len(rows),
        "students": len({r["student_id"] for r in rows}),
        "by_status": by_status,
        "enrollments": items,
    }

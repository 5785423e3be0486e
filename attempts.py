# attempts.py
# -----------------------------------------------------------------------------
# Attempt state machine: NONE -> in_progress -> {completed | abandoned}
# - start is idempotent: a duplicate start resumes the same attempt
# - the realized question order is stored once, at creation
# - autosave overwrites one tagged snapshot; submit wins over autosave
# - submit never returns the score or per-question correctness
# -----------------------------------------------------------------------------

import os
import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional

from availability import (
    ENDED, GRACE_PERIOD_SECONDS, NOT_SCHEDULED, NOT_STARTED,
    as_utc, availability, display_window, time_until, utcnow, window_end,
)
from enrollments import resolve_active_enrollment
from errors import (
    AlreadyCompleted, AttemptNotActive, BadRequest, InvalidAttempt, QuizEnded,
    QuizHasNoQuestions, QuizNotFound, QuizNotPublished, QuizNotScheduled,
    QuizNotStarted, QuizTimeExpired,
)
from scoring import grade_answers, normalize_answers, score
from shuffle import attempt_seed, build_question_order

GRACE_SECONDS = int(os.getenv("QUIZ_GRACE_SECONDS") or GRACE_PERIOD_SECONDS)
AUTOSAVE_INTERVAL_SECONDS = int(os.getenv("QUIZ_AUTOSAVE_INTERVAL_SECONDS") or 30)


# ---- snapshot (tagged union stored in quiz_attempts.snapshot) ---------------
def autosave_snapshot(answers: List[Dict[str, Any]], current_question_index: int,
                      time_remaining: int, saved_at: datetime) -> Dict[str, Any]:
    return {
        "kind": "autosave",
        "answers": answers,
        "current_question_index": int(current_question_index),
        "time_remaining": int(time_remaining),
        "saved_at": saved_at.isoformat(),
    }


def snapshot_answers(snapshot: Optional[Dict[str, Any]]) -> List[Dict[str, Any]]:
    if not isinstance(snapshot, dict):
        return []
    if snapshot.get("kind") in ("answers", "autosave"):
        return normalize_answers(snapshot.get("answers"))
    return []


# ---- helpers ----------------------------------------------------------------
def _elapsed_seconds(attempt: Dict[str, Any], now: datetime) -> int:
    start = as_utc(attempt.get("start_time")) or now
    return max(0, int((now - start).total_seconds()))


def _remaining_seconds(quiz: Dict[str, Any], attempt: Dict[str, Any], now: datetime,
                       is_reassignment: bool = False, grace_seconds: int = GRACE_SECONDS) -> int:
    """
    Time budget left on the attempt. Window-bound attempts are also capped by
    the submit deadline (window end plus grace); reassignments only by budget.
    """
    remaining = int(quiz.get("duration") or 0) * 60 - _elapsed_seconds(attempt, now)
    if not is_reassignment:
        end = window_end(quiz, for_submit=True, grace_seconds=grace_seconds)
        if end is not None:
            remaining = min(remaining, int((end - now).total_seconds()))
    return remaining


def _owned_attempt(store, attempt_id: str, student_id: str,
                   quiz_id: Optional[str] = None) -> Dict[str, Any]:
    attempt = store.get_attempt(attempt_id) if attempt_id else None
    # other students' attempts look exactly like missing ones
    if not attempt or str(attempt.get("student_id")) != str(student_id):
        raise InvalidAttempt()
    if quiz_id is not None and str(attempt.get("quiz_id")) != str(quiz_id):
        raise InvalidAttempt()
    return attempt


def _response_rows(graded: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    return [dict(r, id=str(uuid.uuid4())) for r in graded]


def _complete(store, attempt: Dict[str, Any], answers: List[Dict[str, Any]],
              questions: List[Dict[str, Any]], time_spent: int, now: datetime) -> bool:
    graded = grade_answers(answers, questions)
    result = score(answers, questions)
    fields = {
        "answers": answers,
        "score": result["percentage"],
        "total_correct": result["correct_count"],
        "total_questions": result["total"],
        "time_spent": int(time_spent),
    }
    return store.complete_attempt(attempt["id"], fields, _response_rows(graded),
                                  attempt["enrollment_id"], now)


def _expire(store, quiz: Dict[str, Any], attempt: Dict[str, Any],
            questions: Optional[List[Dict[str, Any]]], now: datetime) -> bool:
    """Auto-submit from the last auto-saved answers."""
    if questions is None:
        questions = store.list_questions(quiz["id"])
    budget = int(quiz.get("duration") or 0) * 60
    spent = min(_elapsed_seconds(attempt, now), budget)
    return _complete(store, attempt, snapshot_answers(attempt.get("snapshot")),
                     questions, spent, now)


def _close_expired(store, quiz: Dict[str, Any], attempt: Dict[str, Any], cache, now: datetime,
                   questions: Optional[List[Dict[str, Any]]] = None, where: str = "on resume") -> None:
    _expire(store, quiz, attempt, questions, now)
    if cache is not None:
        cache.forget(str(attempt["student_id"]), quiz["id"], attempt["id"])
    print(f"[quiz] attempt {attempt['id']} expired {where}; auto-submitted", flush=True)


def _client_questions(order: List[Dict[str, Any]], questions: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    by_id = {str(q["id"]): q for q in questions}
    out: List[Dict[str, Any]] = []
    for item in order or []:
        q = by_id.get(str(item.get("question_id")))
        if q is None:
            continue  # deleted after the attempt started
        options = item.get("options") or [{"id": str(o.get("id")), "text": o.get("text") or ""}
                                           for o in (q.get("options") or [])]
        out.append({
            "id": str(q["id"]),
            "question_text": q.get("question_text"),
            "options": [{"id": o["id"], "text": o.get("text")} for o in options],
        })
    return out


def _start_payload(quiz: Dict[str, Any], enrollment: Dict[str, Any], attempt: Dict[str, Any],
                   order: List[Dict[str, Any]], questions: List[Dict[str, Any]],
                   remaining: int, resumed: bool) -> Dict[str, Any]:
    window = display_window(quiz)
    client_questions = _client_questions(order, questions)
    payload: Dict[str, Any] = {
        "ok": True,
        "quiz": {
            "id": str(quiz["id"]),
            "title": quiz.get("title"),
            "duration": int(quiz.get("duration") or 0),
            "total_questions": len(client_questions),
            "timezone": window["timezone"],
            "start_time": window["start_time"],
            "end_time": window["end_time"],
            "display_start": window["display_start"],
        },
        "questions": client_questions,
        "attempt_id": str(attempt["id"]),
        "enrollment_id": str(enrollment["id"]),
        "remaining_time_seconds": max(0, int(remaining)),
        "resumed": resumed,
        "is_reassignment": bool(enrollment.get("is_reassignment")),
        "reassignment_reason": enrollment.get("reassignment_reason"),
        "autosave_interval_seconds": AUTOSAVE_INTERVAL_SECONDS,
    }
    snap = attempt.get("snapshot")
    if resumed and isinstance(snap, dict) and snap.get("kind") == "autosave":
        payload["saved_state"] = {
            "answers": snapshot_answers(snap),
            "current_question_index": snap.get("current_question_index", 0),
            "saved_at": snap.get("saved_at"),
        }
    return payload


def _check_start_window(quiz: Dict[str, Any], now: datetime) -> None:
    status = availability(quiz, now)["status"]
    if status == NOT_SCHEDULED:
        raise QuizNotScheduled()
    if status == NOT_STARTED:
        start = as_utc(quiz.get("start_time"))
        raise QuizNotStarted(
            f"Quiz starts {time_until(quiz, now)}.",
            start_time=start.isoformat(),
            time_until_start=max(0, int((start - now).total_seconds())),
        )
    if status == ENDED:
        raise QuizEnded(hint="Ask your educator for a reassignment.")


# ---- start / resume ---------------------------------------------------------
def _resume(store, quiz, enrollment, attempt, cache, now) -> Dict[str, Any]:
    student_id = str(attempt["student_id"])
    remaining = _remaining_seconds(quiz, attempt, now, bool(enrollment.get("is_reassignment")))
    questions = store.list_questions(quiz["id"])
    if remaining <= 0:
        _close_expired(store, quiz, attempt, cache, now, questions)
        raise QuizTimeExpired()

    order = attempt.get("question_order")
    if not order:
        # attempts created before the realized order was stored
        shuffle = bool(enrollment.get("is_reassignment") or quiz.get("shuffle_questions"))
        order = build_question_order(questions, str(attempt["id"]), shuffle)
    if cache is not None:
        cache.track(student_id, quiz["id"], attempt["id"], enrollment["id"],
                    started_at=attempt.get("start_time"), now=now)
    print(f"[quiz] attempt {attempt['id']} resumed ({remaining}s left)", flush=True)
    return _start_payload(quiz, enrollment, attempt, order, questions, remaining, resumed=True)


def _cached_attempt(store, cache, student_id, quiz_id, enrollment, now) -> Optional[Dict[str, Any]]:
    if cache is None:
        return None
    hit = cache.lookup(student_id, quiz_id, now)
    if not hit:
        return None
    attempt = store.get_attempt(hit["attempt_id"])
    if (attempt and attempt.get("status") == "in_progress"
            and str(attempt.get("enrollment_id")) == str(enrollment["id"])
            and str(attempt.get("student_id")) == str(student_id)):
        return attempt
    print(f"[cache] stale entry for student {student_id} quiz {quiz_id}; dropped", flush=True)
    cache.forget(student_id, quiz_id, hit["attempt_id"])
    return None


def start_attempt(store, quiz_id: str, student_id: str, cache=None,
                  now: Optional[datetime] = None) -> Dict[str, Any]:
    now = as_utc(now) or utcnow()
    quiz = store.get_quiz(quiz_id)
    if not quiz:
        raise QuizNotFound()
    if quiz.get("status") != "published":
        raise QuizNotPublished()

    enrollment = resolve_active_enrollment(store, quiz_id, student_id, now, quiz=quiz)
    is_reassignment = bool(enrollment.get("is_reassignment"))

    attempt = _cached_attempt(store, cache, student_id, quiz_id, enrollment, now)
    if attempt is not None:
        return _resume(store, quiz, enrollment, attempt, cache, now)

    existing = store.list_attempts(enrollment["id"])
    if any(a.get("status") == "completed" for a in existing):
        raise AlreadyCompleted()
    for a in existing:
        if a.get("status") == "in_progress":
            return _resume(store, quiz, enrollment, a, cache, now)

    if not is_reassignment:
        _check_start_window(quiz, now)

    questions = store.list_questions(quiz_id)
    if not questions:
        raise QuizHasNoQuestions()

    attempt_id = str(uuid.uuid4())
    seed = attempt_seed(attempt_id, enrollment["id"], is_reassignment)
    order = build_question_order(questions, seed, is_reassignment or bool(quiz.get("shuffle_questions")))
    created = store.insert_attempt({
        "id": attempt_id,
        "quiz_id": quiz_id,
        "student_id": str(student_id),
        "enrollment_id": enrollment["id"],
        "start_time": now,
        "shuffle_seed": seed,
        "question_order": order,
    })
    if created is None:
        # lost the race to a concurrent start (or a submit closed the enrollment)
        for a in store.list_attempts(enrollment["id"]):
            if a.get("status") == "completed":
                raise AlreadyCompleted()
            if a.get("status") == "in_progress":
                return _resume(store, quiz, enrollment, a, cache, now)
        raise AttemptNotActive()

    if cache is not None:
        cache.track(student_id, quiz_id, attempt_id, enrollment["id"], started_at=now, now=now)
    print(f"[quiz] attempt {attempt_id} created for student {student_id} quiz {quiz_id}"
          f"{' (reassignment)' if is_reassignment else ''}", flush=True)
    remaining = _remaining_seconds(quiz, created, now, is_reassignment)
    return _start_payload(quiz, enrollment, created, order, questions, remaining, resumed=False)


# ---- autosave / recovery ----------------------------------------------------
def autosave(store, attempt_id: str, student_id: str, answers: Any,
             current_question_index: Any = 0, time_remaining: Any = 0,
             quiz_id: Optional[str] = None, cache=None,
             now: Optional[datetime] = None) -> Dict[str, Any]:
    now = as_utc(now) or utcnow()
    attempt = _owned_attempt(store, attempt_id, student_id, quiz_id)
    if attempt.get("status") != "in_progress":
        raise AttemptNotActive()
    try:
        index = int(current_question_index or 0)
        remaining = int(time_remaining or 0)
    except (TypeError, ValueError):
        raise BadRequest("current_question_index and time_remaining must be integers.")
    if index < 0:
        raise BadRequest("current_question_index must be >= 0.")

    snap = autosave_snapshot(normalize_answers(answers), index, max(0, remaining), now)
    if not store.save_snapshot(attempt["id"], snap, now):
        raise AttemptNotActive()
    if cache is not None:
        cache.touch(student_id, attempt["quiz_id"], attempt["id"], now)
    return {"ok": True, "saved_at": snap["saved_at"]}


def _recovery_attempt(store, quiz_id: str, student_id: str, cache, now: datetime) -> Optional[Dict[str, Any]]:
    if cache is not None:
        hit = cache.lookup(student_id, quiz_id, now)
        if hit:
            attempt = store.get_attempt(hit["attempt_id"])
            if (attempt and attempt.get("status") == "in_progress"
                    and str(attempt.get("student_id")) == str(student_id)
                    and str(attempt.get("quiz_id")) == str(quiz_id)):
                return attempt
            cache.forget(student_id, quiz_id, hit["attempt_id"])
    rows = store.list_in_progress(quiz_id, student_id)
    return rows[0] if rows else None


def recovery_read(store, quiz_id: str, student_id: str, cache=None,
                  now: Optional[datetime] = None) -> Dict[str, Any]:
    now = as_utc(now) or utcnow()
    attempt = _recovery_attempt(store, quiz_id, student_id, cache, now)
    if attempt is None:
        return {"ok": True, "has_auto_save": False}
    snap = attempt.get("snapshot")
    if not isinstance(snap, dict) or snap.get("kind") != "autosave":
        return {"ok": True, "has_auto_save": False}

    quiz = store.get_quiz(quiz_id) or {}
    enrollment = store.get_enrollment(attempt["enrollment_id"]) or {}
    remaining = _remaining_seconds(quiz, attempt, now, bool(enrollment.get("is_reassignment")))
    return {
        "ok": True,
        "has_auto_save": True,
        "auto_save_data": {
            "attempt_id": str(attempt["id"]),
            "answers": snapshot_answers(snap),
            "current_question_index": snap.get("current_question_index", 0),
            "time_remaining": snap.get("time_remaining"),
            "remaining_time_seconds": max(0, remaining),
            "last_saved": snap.get("saved_at"),
            "question_order": [str(i.get("question_id")) for i in (attempt.get("question_order") or [])],
        },
    }


# ---- submit -----------------------------------------------------------------
def submit_attempt(store, attempt_id: str, student_id: str, answers: Any,
                   time_spent: Any = None, quiz_id: Optional[str] = None, cache=None,
                   now: Optional[datetime] = None, grace_seconds: int = GRACE_SECONDS) -> Dict[str, Any]:
    now = as_utc(now) or utcnow()
    attempt = _owned_attempt(store, attempt_id, student_id, quiz_id)
    if attempt.get("status") == "completed":
        raise AlreadyCompleted()
    if attempt.get("status") != "in_progress":
        raise AttemptNotActive()

    quiz = store.get_quiz(attempt["quiz_id"])
    if not quiz:
        raise QuizNotFound()
    enrollment = store.get_enrollment(attempt["enrollment_id"]) or {}
    questions = store.list_questions(quiz["id"])
    if not enrollment.get("is_reassignment"):
        status = availability(quiz, now, for_submit=True, grace_seconds=grace_seconds)["status"]
        if status == NOT_SCHEDULED:
            raise QuizNotScheduled()
        if status == NOT_STARTED:
            raise QuizNotStarted()
        if status == ENDED:
            # late answers are discarded; the last autosave is graded instead
            _close_expired(store, quiz, attempt, cache, now, questions, where="at late submit")
            raise QuizEnded("The submission window for this quiz has closed.")

    elapsed = _elapsed_seconds(attempt, now)
    if elapsed > int(quiz.get("duration") or 0) * 60 + int(grace_seconds):
        _close_expired(store, quiz, attempt, cache, now, questions, where="at late submit")
        raise QuizTimeExpired()

    try:
        spent = min(max(0, int(time_spent)), elapsed) if time_spent is not None else elapsed
    except (TypeError, ValueError):
        spent = elapsed

    if not _complete(store, attempt, normalize_answers(answers), questions, spent, now):
        current = store.get_attempt(attempt["id"]) or {}
        if current.get("status") == "completed":
            raise AlreadyCompleted()
        raise AttemptNotActive()

    if cache is not None:
        cache.forget(student_id, quiz["id"], attempt["id"])
    print(f"[quiz] attempt {attempt['id']} submitted", flush=True)
    return {
        "ok": True,
        "attempt_id": str(attempt["id"]),
        "acknowledged": True,
        "message": "Quiz submitted successfully. Results will be available once your educator releases them.",
    }


# ---- abandon ----------------------------------------------------------------
def abandon_attempt(store, attempt_id: str, student_id: str, quiz_id: Optional[str] = None,
                    cache=None, now: Optional[datetime] = None) -> Dict[str, Any]:
    now = as_utc(now) or utcnow()
    attempt = _owned_attempt(store, attempt_id, student_id, quiz_id)
    n = 0
    if attempt.get("status") == "in_progress" and store.abandon_attempt(attempt["id"], now):
        n = 1
        print(f"[quiz] attempt {attempt['id']} abandoned", flush=True)
    if cache is not None:
        cache.forget(student_id, attempt["quiz_id"], attempt["id"])
    return {"ok": True, "abandoned": n}


def clear_session(store, quiz_id: str, student_id: str, cache=None,
                  now: Optional[datetime] = None) -> Dict[str, Any]:
    """'Start fresh': abandon every in_progress attempt; completed ones are untouched."""
    now = as_utc(now) or utcnow()
    n = 0
    for a in store.list_in_progress(quiz_id, student_id):
        if store.abandon_attempt(a["id"], now):
            n += 1
    if cache is not None:
        cache.forget(student_id, quiz_id)
    if n:
        print(f"[quiz] cleared session for student {student_id} quiz {quiz_id} ({n} abandoned)", flush=True)
    return {"ok": True, "abandoned": n}


# ---- sweep ------------------------------------------------------------------
def sweep_expired(store, now: Optional[datetime] = None, grace_seconds: int = GRACE_SECONDS,
                  cache=None) -> Dict[str, int]:
    """
    Auto-submits in_progress attempts whose time budget is spent, and
    non-reassignment attempts whose quiz window (plus grace) has closed.
    """
    now = as_utc(now) or utcnow()
    quizzes: Dict[str, Optional[Dict[str, Any]]] = {}
    questions: Dict[str, List[Dict[str, Any]]] = {}
    checked = completed = 0
    for a in store.list_open_attempts():
        checked += 1
        qid = str(a["quiz_id"])
        if qid not in quizzes:
            quizzes[qid] = store.get_quiz(qid)
        quiz = quizzes[qid]
        if not quiz:
            continue
        expired = _remaining_seconds(quiz, a, now, bool(a.get("is_reassignment")), grace_seconds) <= 0
        if not expired:
            continue
        if qid not in questions:
            questions[qid] = store.list_questions(qid)
        if _expire(store, quiz, a, questions[qid], now):
            completed += 1
            if cache is not None:
                cache.forget(a["student_id"], qid, a["id"])
    print(f"[sweep] checked={checked} completed={completed}", flush=True)
    return {"checked": checked, "completed": completed}

# quiz_api.py
# -----------------------------------------------------------------------------
# HTTP surface for the attempt engine (JSON only).
# - Student routes:  /quiz/<quiz_id>/{start, autosave, submit, abandon, clear-session}
# - Educator routes: /educator/quiz/<quiz_id>/{enroll, bulk-enroll, enrollments, reassign}
# - Identity comes from g.user_id / g.user_role (attached by the app's before_request)
# - Every QuizEngineError renders as {"ok": False, "error": code, "message": ...}
# -----------------------------------------------------------------------------

from typing import Any, Callable, Dict, Optional

import psycopg
from flask import Blueprint, request, jsonify, g

import attempts
import enrollments
import reassign
from availability import utcnow
from errors import BadRequest, QuizEngineError, QuizNotFound, Unauthorized
from notify import NotificationDispatcher
from recovery_cache import RecoveryCache
from store import PgStore


# -----------------------------------------------------------------------------
# Blueprint factory
# -----------------------------------------------------------------------------
def create_quiz_blueprint(base_path: str, deps: Dict[str, Any], name: str = "quiz") -> Blueprint:
    """
    Factory that returns a Blueprint mounted at base_path (e.g. "" or "/app").
    Required deps: store  -or-  fetch_one, fetch_all, execute, execute_returning, transaction
    Optional deps: cache (RecoveryCache), notifier (callable(event, payload)), now (clock)
    """
    bp = Blueprint(name, __name__, url_prefix=base_path or None)

    store = deps.get("store") or PgStore(deps)
    cache: RecoveryCache = deps.get("cache") or RecoveryCache()
    notifier: Optional[Callable] = deps.get("notifier")
    if notifier is None:
        notifier = NotificationDispatcher()
    clock: Callable = deps.get("now") or utcnow
    grace_seconds = int(deps.get("grace_seconds") or attempts.GRACE_SECONDS)

    # ---- errors --------------------------------------------------------------
    @bp.errorhandler(QuizEngineError)
    def _engine_error(e: QuizEngineError):
        return jsonify(e.to_dict()), e.status

    @bp.errorhandler(psycopg.OperationalError)
    def _db_unavailable(e):
        print(f"[db] operational error on {request.path}: {e}", flush=True)
        return jsonify({"ok": False, "error": "temporarily_unavailable", "retry": True}), 503

    # ---- identity ------------------------------------------------------------
    def _caller(role: str) -> str:
        uid = getattr(g, "user_id", None)
        if not uid or getattr(g, "user_role", None) != role:
            raise Unauthorized()
        return str(uid)

    def _body() -> Dict[str, Any]:
        data = request.get_json(silent=True)
        if data is None:
            return {}
        if not isinstance(data, dict):
            raise BadRequest("JSON object body required.")
        return data

    def _owned_quiz(quiz_id: str, educator_id: str) -> Dict[str, Any]:
        quiz = store.get_quiz(quiz_id)
        if not quiz or str(quiz.get("educator_id")) != educator_id:
            raise QuizNotFound()
        return quiz

    # --------------------------------- student --------------------------------
    @bp.post("/quiz/<quiz_id>/start")
    def quiz_start(quiz_id: str):
        student_id = _caller("student")
        return jsonify(attempts.start_attempt(store, quiz_id, student_id, cache=cache, now=clock()))

    @bp.post("/quiz/<quiz_id>/autosave")
    def quiz_autosave(quiz_id: str):
        student_id = _caller("student")
        data = _body()
        try:
            out = attempts.autosave(
                store, str(data.get("attempt_id") or ""), student_id, data.get("answers") or [],
                current_question_index=data.get("current_question_index", 0),
                time_remaining=data.get("time_remaining", 0),
                quiz_id=quiz_id, cache=cache, now=clock(),
            )
        except psycopg.Error as e:
            # the client keeps its timer and shows a degraded-save indicator
            print(f"[quiz] autosave failed for attempt {data.get('attempt_id')}: {e}", flush=True)
            return jsonify({"ok": False, "error": "autosave_failed", "degraded": True}), 503
        return jsonify(out)

    @bp.get("/quiz/<quiz_id>/autosave")
    def quiz_recovery(quiz_id: str):
        student_id = _caller("student")
        return jsonify(attempts.recovery_read(store, quiz_id, student_id, cache=cache, now=clock()))

    @bp.post("/quiz/<quiz_id>/submit")
    def quiz_submit(quiz_id: str):
        student_id = _caller("student")
        data = _body()
        out = attempts.submit_attempt(
            store, str(data.get("attempt_id") or ""), student_id, data.get("answers") or [],
            time_spent=data.get("time_spent"), quiz_id=quiz_id, cache=cache,
            now=clock(), grace_seconds=grace_seconds,
        )
        return jsonify(out)

    @bp.post("/quiz/<quiz_id>/abandon")
    def quiz_abandon(quiz_id: str):
        student_id = _caller("student")
        data = _body()
        return jsonify(attempts.abandon_attempt(store, str(data.get("attempt_id") or ""), student_id,
                                                quiz_id=quiz_id, cache=cache, now=clock()))

    @bp.post("/quiz/<quiz_id>/clear-session")
    def quiz_clear_session(quiz_id: str):
        student_id = _caller("student")
        return jsonify(attempts.clear_session(store, quiz_id, student_id, cache=cache, now=clock()))

    # --------------------------------- educator -------------------------------
    @bp.post("/educator/quiz/<quiz_id>/enroll")
    def educator_enroll(quiz_id: str):
        educator_id = _caller("educator")
        data = _body()
        student_id = str(data.get("student_id") or "").strip()
        if not student_id:
            raise BadRequest("student_id is required.")
        row = enrollments.enroll(store, quiz_id, student_id, educator_id=educator_id,
                                 now=clock(), notifier=notifier)
        return jsonify({"ok": True, "enrollment_id": row["id"], "student_id": row["student_id"],
                        "status": row["status"]}), 201

    @bp.post("/educator/quiz/<quiz_id>/bulk-enroll")
    def educator_bulk_enroll(quiz_id: str):
        educator_id = _caller("educator")
        data = _body()
        enroll_all = bool(data.get("enroll_all"))
        student_ids = data.get("student_ids")
        if not enroll_all and not isinstance(student_ids, list):
            raise BadRequest("Provide student_ids (list) or enroll_all=true.")
        out = enrollments.bulk_enroll(store, quiz_id, educator_id, student_ids=student_ids,
                                      enroll_all=enroll_all, notify=bool(data.get("notify", True)),
                                      now=clock(), notifier=notifier)
        return jsonify(dict(out, ok=True))

    @bp.get("/educator/quiz/<quiz_id>/enrollments")
    def educator_enrollments(quiz_id: str):
        educator_id = _caller("educator")
        out = enrollments.enrollment_summary(store, quiz_id, educator_id=educator_id)
        return jsonify(dict(out, ok=True))

    @bp.get("/educator/quiz/<quiz_id>/reassign")
    def educator_reassign_report(quiz_id: str):
        educator_id = _caller("educator")
        quiz = _owned_quiz(quiz_id, educator_id)
        report = reassign.eligibility_report(quiz, store.list_quiz_enrollments(quiz_id),
                                             store.list_quiz_attempts(quiz_id), clock(), grace_seconds)
        for s in report["students"]:
            s.pop("close_enrollment_id", None)
        return jsonify(dict(report, ok=True))

    @bp.post("/educator/quiz/<quiz_id>/reassign")
    def educator_reassign(quiz_id: str):
        educator_id = _caller("educator")
        data = _body()
        if data.get("all_eligible"):
            student_ids = None
        else:
            student_ids = data.get("student_ids")
            if not isinstance(student_ids, list) or not student_ids:
                raise BadRequest("Provide student_ids (non-empty list) or all_eligible=true.")
        reason = (str(data.get("reason") or "").strip() or None)
        out = reassign.reassign_students(store, quiz_id, educator_id, student_ids=student_ids,
                                         reason=reason, notify=bool(data.get("notify", True)),
                                         notifier=notifier, now=clock(), grace_seconds=grace_seconds)
        return jsonify(out)

    return bp

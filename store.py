# store.py
# -----------------------------------------------------------------------------
# PgStore: the only layer that issues SQL for the attempt engine.
# Built from the same deps dict the blueprints receive:
#   fetch_one, fetch_all, execute, execute_returning, transaction
# Uniqueness is enforced by partial unique indexes (see db.SCHEMA_SQL); inserts
# that lose a race come back as None instead of raising.
# -----------------------------------------------------------------------------

import json
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Sequence

_QUIZ_COLS = """
    id, educator_id, title, total_questions, duration, start_time, timezone,
    status, shuffle_questions, passing_score
"""

_ENROLLMENT_COLS = """
    id, quiz_id, student_id, status, enrolled_at, started_at, completed_at,
    is_reassignment, parent_enrollment_id, group_enrollment_id,
    reassignment_reason, reassigned_by, closed_reason
"""

_ATTEMPT_COLS = """
    id, quiz_id, student_id, enrollment_id, status, start_time, end_time,
    shuffle_seed, question_order, answers, snapshot, score, total_correct,
    total_questions, time_spent, updated_at
"""


def _jsonb(value: Any) -> Optional[str]:
    if value is None:
        return None
    return json.dumps(value, ensure_ascii=False, default=str)


def _loads(value: Any) -> Any:
    # jsonb normally arrives decoded; text columns or old rows may not
    if isinstance(value, (str, bytes)):
        try:
            return json.loads(value)
        except ValueError:
            return None
    return value


def _attempt(row: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if not row:
        return None
    row = dict(row)
    for k in ("question_order", "answers", "snapshot"):
        row[k] = _loads(row.get(k))
    if row.get("answers") is None:
        row["answers"] = []
    return row


def _question(row: Dict[str, Any]) -> Dict[str, Any]:
    row = dict(row)
    row["options"] = _loads(row.get("options")) or []
    return row


class PgStore:
    def __init__(self, deps: Dict[str, Any]):
        self.fetch_one: Callable = deps["fetch_one"]
        self.fetch_all: Callable = deps["fetch_all"]
        self.execute: Callable = deps["execute"]
        self.execute_returning: Callable = deps["execute_returning"]
        self.transaction: Callable = deps["transaction"]

    # ---- quizzes / questions (read-only) ------------------------------------
    def get_quiz(self, quiz_id: str) -> Optional[Dict[str, Any]]:
        return self.fetch_one(f"SELECT {_QUIZ_COLS} FROM quizzes WHERE id = %s;", (quiz_id,))

    def list_questions(self, quiz_id: str) -> List[Dict[str, Any]]:
        rows = self.fetch_all("""
            SELECT id, quiz_id, question_text, options, correct_option_id, order_index
              FROM questions
             WHERE quiz_id = %s
             ORDER BY order_index, id;
        """, (quiz_id,))
        return [_question(r) for r in (rows or [])]

    # ---- educator <-> student links -----------------------------------------
    def is_educator_student(self, educator_id: str, student_id: str) -> bool:
        row = self.fetch_one("""
            SELECT 1 AS ok
              FROM educator_students
             WHERE educator_id = %s AND student_id = %s AND status = 'active';
        """, (educator_id, student_id))
        return bool(row)

    def list_educator_students(self, educator_id: str) -> List[str]:
        rows = self.fetch_all("""
            SELECT student_id
              FROM educator_students
             WHERE educator_id = %s AND status = 'active'
             ORDER BY enrolled_at, student_id;
        """, (educator_id,))
        return [str(r["student_id"]) for r in (rows or [])]

    def ensure_educator_student(self, link_id: str, educator_id: str, student_id: str,
                                now: datetime) -> None:
        self.execute("""
            INSERT INTO educator_students (id, educator_id, student_id, status, enrolled_at)
            VALUES (%s, %s, %s, 'active', %s)
            ON CONFLICT (educator_id, student_id) DO NOTHING;
        """, (link_id, educator_id, student_id, now))

    # ---- enrollments ---------------------------------------------------------
    def get_enrollment(self, enrollment_id: str) -> Optional[Dict[str, Any]]:
        return self.fetch_one(f"SELECT {_ENROLLMENT_COLS} FROM enrollments WHERE id = %s;",
                              (enrollment_id,))

    def list_enrollments(self, quiz_id: str, student_id: str) -> List[Dict[str, Any]]:
        """Newest first."""
        return self.fetch_all(f"""
            SELECT {_ENROLLMENT_COLS}
              FROM enrollments
             WHERE quiz_id = %s AND student_id = %s
             ORDER BY enrolled_at DESC, id DESC;
        """, (quiz_id, student_id)) or []

    def list_quiz_enrollments(self, quiz_id: str) -> List[Dict[str, Any]]:
        return self.fetch_all(f"""
            SELECT {_ENROLLMENT_COLS}
              FROM enrollments
             WHERE quiz_id = %s
             ORDER BY enrolled_at DESC, id DESC;
        """, (quiz_id,)) or []

    def insert_enrollment(self, row: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """None when (quiz, student) already holds a non-completed enrollment."""
        rows = self.execute_returning(f"""
            INSERT INTO enrollments
                   (id, quiz_id, student_id, status, enrolled_at, is_reassignment,
                    parent_enrollment_id, group_enrollment_id, reassignment_reason, reassigned_by)
            VALUES (%s, %s, %s, 'enrolled', %s, %s, %s, %s, %s, %s)
            ON CONFLICT DO NOTHING
            RETURNING {_ENROLLMENT_COLS};
        """, (row["id"], row["quiz_id"], row["student_id"], row["enrolled_at"],
              bool(row.get("is_reassignment")), row.get("parent_enrollment_id"),
              row.get("group_enrollment_id"), row.get("reassignment_reason"),
              row.get("reassigned_by")))
        return rows[0] if rows else None

    def insert_reassignment(self, row: Dict[str, Any], close_enrollment_id: Optional[str],
                            now: datetime) -> Optional[Dict[str, Any]]:
        """Closes a lapsed enrollment (if given) and inserts the reassignment atomically."""
        with self.transaction() as tx:
            if close_enrollment_id:
                tx.execute("""
                    UPDATE enrollments e
                       SET status = 'completed', completed_at = %s, closed_reason = 'lapsed'
                     WHERE e.id = %s
                       AND e.status <> 'completed'
                       AND NOT EXISTS (SELECT 1 FROM quiz_attempts a
                                        WHERE a.enrollment_id = e.id AND a.status = 'in_progress');
                """, (now, close_enrollment_id))
            return tx.fetch_one(f"""
                INSERT INTO enrollments
                       (id, quiz_id, student_id, status, enrolled_at, is_reassignment,
                        parent_enrollment_id, group_enrollment_id, reassignment_reason, reassigned_by)
                VALUES (%s, %s, %s, 'enrolled', %s, TRUE, %s, %s, %s, %s)
                ON CONFLICT DO NOTHING
                RETURNING {_ENROLLMENT_COLS};
            """, (row["id"], row["quiz_id"], row["student_id"], row["enrolled_at"],
                  row.get("parent_enrollment_id"), row.get("group_enrollment_id"),
                  row.get("reassignment_reason"), row.get("reassigned_by")))

    # ---- attempts ------------------------------------------------------------
    def get_attempt(self, attempt_id: str) -> Optional[Dict[str, Any]]:
        return _attempt(self.fetch_one(f"SELECT {_ATTEMPT_COLS} FROM quiz_attempts WHERE id = %s;",
                                       (attempt_id,)))

    def list_attempts(self, enrollment_id: str) -> List[Dict[str, Any]]:
        rows = self.fetch_all(f"""
            SELECT {_ATTEMPT_COLS}
              FROM quiz_attempts
             WHERE enrollment_id = %s
             ORDER BY start_time DESC;
        """, (enrollment_id,))
        return [_attempt(r) for r in (rows or [])]

    def list_quiz_attempts(self, quiz_id: str) -> List[Dict[str, Any]]:
        rows = self.fetch_all("""
            SELECT id, quiz_id, student_id, enrollment_id, status, start_time, end_time
              FROM quiz_attempts
             WHERE quiz_id = %s;
        """, (quiz_id,))
        return [dict(r) for r in (rows or [])]

    def list_in_progress(self, quiz_id: str, student_id: str) -> List[Dict[str, Any]]:
        rows = self.fetch_all(f"""
            SELECT {_ATTEMPT_COLS}
              FROM quiz_attempts
             WHERE quiz_id = %s AND student_id = %s AND status = 'in_progress'
             ORDER BY start_time DESC;
        """, (quiz_id, student_id))
        return [_attempt(r) for r in (rows or [])]

    def list_open_attempts(self) -> List[Dict[str, Any]]:
        """Every in_progress attempt, with its enrollment's reassignment flag."""
        rows = self.fetch_all("""
            SELECT a.id, a.quiz_id, a.student_id, a.enrollment_id, a.status,
                   a.start_time, a.snapshot, e.is_reassignment
              FROM quiz_attempts a
              JOIN enrollments e ON e.id = a.enrollment_id
             WHERE a.status = 'in_progress'
             ORDER BY a.start_time;
        """, ())
        return [_attempt(r) for r in (rows or [])]

    def insert_attempt(self, row: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """
        Creates the attempt and flips the enrollment to in_progress in one transaction.
        None when the enrollment is closed, already has a completed attempt, or
        already has an in_progress one (uq_attempts_in_progress).
        """
        with self.transaction() as tx:
            created = tx.fetch_one(f"""
                INSERT INTO quiz_attempts
                       (id, quiz_id, student_id, enrollment_id, status, start_time,
                        shuffle_seed, question_order, answers, snapshot, updated_at)
                SELECT %s, e.quiz_id, e.student_id, e.id, 'in_progress', %s,
                       %s, %s::jsonb, '[]'::jsonb, NULL::jsonb, %s
                  FROM enrollments e
                 WHERE e.id = %s
                   AND e.status <> 'completed'
                   AND NOT EXISTS (SELECT 1 FROM quiz_attempts c
                                    WHERE c.enrollment_id = e.id AND c.status = 'completed')
                ON CONFLICT DO NOTHING
                RETURNING {_ATTEMPT_COLS};
            """, (row["id"], row["start_time"], row.get("shuffle_seed"),
                  _jsonb(row.get("question_order")), row["start_time"], row["enrollment_id"]))
            if not created:
                return None
            tx.execute("""
                UPDATE enrollments
                   SET status = 'in_progress', started_at = COALESCE(started_at, %s)
                 WHERE id = %s AND status <> 'completed';
            """, (row["start_time"], row["enrollment_id"]))
        return _attempt(created)

    def save_snapshot(self, attempt_id: str, snapshot: Dict[str, Any], now: datetime) -> bool:
        """Last write wins; rejected once the attempt has left in_progress."""
        rows = self.execute_returning("""
            UPDATE quiz_attempts
               SET snapshot = %s::jsonb, updated_at = %s
             WHERE id = %s AND status = 'in_progress'
            RETURNING id;
        """, (_jsonb(snapshot), now, attempt_id))
        return bool(rows)

    def complete_attempt(self, attempt_id: str, fields: Dict[str, Any],
                         responses: Sequence[Dict[str, Any]], enrollment_id: str,
                         now: datetime) -> bool:
        """
        in_progress -> completed, responses written, enrollment completed; all or nothing.
        False when another writer already moved the attempt out of in_progress.
        """
        with self.transaction() as tx:
            done = tx.fetch_one("""
                UPDATE quiz_attempts
                   SET status = 'completed', end_time = %s, answers = %s::jsonb,
                       snapshot = %s::jsonb, score = %s, total_correct = %s,
                       total_questions = %s, time_spent = %s, updated_at = %s
                 WHERE id = %s AND status = 'in_progress'
                RETURNING id;
            """, (now, _jsonb(fields.get("answers") or []),
                  _jsonb({"kind": "answers", "answers": fields.get("answers") or []}),
                  fields.get("score"), fields.get("total_correct"), fields.get("total_questions"),
                  fields.get("time_spent"), now, attempt_id))
            if not done:
                return False
            tx.execute_many("""
                INSERT INTO question_responses
                       (id, attempt_id, question_id, selected_option_id, is_correct,
                        time_spent, marked_for_review, answered_at)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                ON CONFLICT (attempt_id, question_id) DO NOTHING;
            """, [(r["id"], attempt_id, r["question_id"], r.get("selected_option_id"),
                   bool(r.get("is_correct")), int(r.get("time_spent") or 0),
                   bool(r.get("marked_for_review")), now) for r in responses])
            tx.execute("""
                UPDATE enrollments
                   SET status = 'completed', completed_at = %s
                 WHERE id = %s;
            """, (now, enrollment_id))
        return True

    def abandon_attempt(self, attempt_id: str, now: datetime) -> bool:
        rows = self.execute_returning("""
            UPDATE quiz_attempts
               SET status = 'abandoned', end_time = %s, answers = '[]'::jsonb,
                   snapshot = NULL, updated_at = %s
             WHERE id = %s AND status = 'in_progress'
            RETURNING id;
        """, (now, now, attempt_id))
        return bool(rows)

import copy
import sys
import threading
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))


T0 = datetime(2026, 1, 15, 15, 0, tzinfo=timezone.utc)


class MemoryStore:
    """
    In-memory stand-in for PgStore. Enforces the same uniqueness rules as the
    partial unique indexes and hands out copies, like rows from a cursor.
    """

    def __init__(self):
        self._lock = threading.RLock()
        self.quizzes = {}
        self.questions = {}
        self.links = set()
        self.enrollments = {}
        self.attempts = {}
        self.responses = []
        self.fail_saves = None  # exception to raise from save_snapshot

    # ---- fixtures helpers ----------------------------------------------------
    def add_quiz(self, quiz_id="quiz-1", educator_id="edu-1", n_questions=4, **kw):
        quiz = {
            "id": quiz_id,
            "educator_id": educator_id,
            "title": "Quiz " + quiz_id,
            "total_questions": n_questions,
            "duration": 30,
            "start_time": T0,
            "timezone": "UTC",
            "status": "published",
            "shuffle_questions": False,
            "passing_score": 70,
        }
        quiz.update(kw)
        self.quizzes[quiz_id] = quiz
        self.questions[quiz_id] = [
            {
                "id": f"{quiz_id}-q{i}",
                "quiz_id": quiz_id,
                "question_text": f"Question {i}?",
                "options": [{"id": f"{quiz_id}-q{i}-o{k}", "text": f"Option {k}"} for k in range(4)],
                "correct_option_id": f"{quiz_id}-q{i}-o0",
                "order_index": i,
            }
            for i in range(n_questions)
        ]
        return quiz

    def link(self, educator_id, student_id):
        self.links.add((educator_id, student_id))

    def add_enrollment(self, quiz_id, student_id, status="enrolled", enrolled_at=None, **kw):
        row = {
            "id": kw.pop("id", f"enr-{len(self.enrollments) + 1}"),
            "quiz_id": quiz_id,
            "student_id": student_id,
            "status": status,
            "enrolled_at": enrolled_at or T0 - timedelta(days=1),
            "started_at": None,
            "completed_at": None,
            "is_reassignment": False,
            "parent_enrollment_id": None,
            "group_enrollment_id": None,
            "reassignment_reason": None,
            "reassigned_by": None,
            "closed_reason": None,
        }
        row.update(kw)
        self.enrollments[row["id"]] = row
        return copy.deepcopy(row)

    def add_attempt(self, enrollment_id, status="completed", start_time=None, **kw):
        e = self.enrollments[enrollment_id]
        row = {
            "id": kw.pop("id", f"att-{len(self.attempts) + 1}"),
            "quiz_id": e["quiz_id"],
            "student_id": e["student_id"],
            "enrollment_id": enrollment_id,
            "status": status,
            "start_time": start_time or T0,
            "end_time": None,
            "shuffle_seed": None,
            "question_order": None,
            "answers": [],
            "snapshot": None,
            "score": None,
            "total_correct": None,
            "total_questions": None,
            "time_spent": None,
            "updated_at": start_time or T0,
        }
        row.update(kw)
        self.attempts[row["id"]] = row
        return copy.deepcopy(row)

    # ---- quizzes / questions -------------------------------------------------
    def get_quiz(self, quiz_id):
        return copy.deepcopy(self.quizzes.get(quiz_id))

    def list_questions(self, quiz_id):
        return copy.deepcopy(sorted(self.questions.get(quiz_id, []),
                                    key=lambda q: (q["order_index"], q["id"])))

    # ---- links ---------------------------------------------------------------
    def is_educator_student(self, educator_id, student_id):
        return (educator_id, student_id) in self.links

    def list_educator_students(self, educator_id):
        return sorted(s for e, s in self.links if e == educator_id)

    def ensure_educator_student(self, link_id, educator_id, student_id, now):
        with self._lock:
            self.links.add((educator_id, student_id))

    # ---- enrollments ---------------------------------------------------------
    def _sorted_enrollments(self, rows):
        return sorted(rows, key=lambda r: (r["enrolled_at"], r["id"]), reverse=True)

    def get_enrollment(self, enrollment_id):
        return copy.deepcopy(self.enrollments.get(enrollment_id))

    def list_enrollments(self, quiz_id, student_id):
        with self._lock:
            rows = [r for r in self.enrollments.values()
                    if r["quiz_id"] == quiz_id and r["student_id"] == student_id]
            return copy.deepcopy(self._sorted_enrollments(rows))

    def list_quiz_enrollments(self, quiz_id):
        with self._lock:
            rows = [r for r in self.enrollments.values() if r["quiz_id"] == quiz_id]
            return copy.deepcopy(self._sorted_enrollments(rows))

    def _active_conflict(self, quiz_id, student_id):
        return any(r["quiz_id"] == quiz_id and r["student_id"] == student_id and r["status"] != "completed"
                   for r in self.enrollments.values())

    def _insert_enrollment(self, row):
        if row["id"] in self.enrollments or self._active_conflict(row["quiz_id"], row["student_id"]):
            return None
        full = {
            "status": "enrolled", "started_at": None, "completed_at": None,
            "is_reassignment": False, "parent_enrollment_id": None, "group_enrollment_id": None,
            "reassignment_reason": None, "reassigned_by": None, "closed_reason": None,
        }
        full.update(row)
        full["status"] = "enrolled"
        self.enrollments[full["id"]] = full
        return copy.deepcopy(full)

    def insert_enrollment(self, row):
        with self._lock:
            return self._insert_enrollment(row)

    def insert_reassignment(self, row, close_enrollment_id, now):
        with self._lock:
            if close_enrollment_id:
                e = self.enrollments.get(close_enrollment_id)
                busy = any(a["enrollment_id"] == close_enrollment_id and a["status"] == "in_progress"
                           for a in self.attempts.values())
                if e and e["status"] != "completed" and not busy:
                    e.update(status="completed", completed_at=now, closed_reason="lapsed")
            return self._insert_enrollment(dict(row, is_reassignment=True))

    # ---- attempts ------------------------------------------------------------
    def get_attempt(self, attempt_id):
        return copy.deepcopy(self.attempts.get(attempt_id))

    def list_attempts(self, enrollment_id):
        with self._lock:
            rows = [a for a in self.attempts.values() if a["enrollment_id"] == enrollment_id]
            return copy.deepcopy(sorted(rows, key=lambda a: a["start_time"], reverse=True))

    def list_quiz_attempts(self, quiz_id):
        with self._lock:
            return copy.deepcopy([a for a in self.attempts.values() if a["quiz_id"] == quiz_id])

    def list_in_progress(self, quiz_id, student_id):
        with self._lock:
            rows = [a for a in self.attempts.values()
                    if a["quiz_id"] == quiz_id and a["student_id"] == student_id
                    and a["status"] == "in_progress"]
            return copy.deepcopy(sorted(rows, key=lambda a: a["start_time"], reverse=True))

    def list_open_attempts(self):
        with self._lock:
            out = []
            for a in self.attempts.values():
                if a["status"] == "in_progress":
                    out.append(dict(copy.deepcopy(a),
                                    is_reassignment=self.enrollments[a["enrollment_id"]]["is_reassignment"]))
            return sorted(out, key=lambda a: a["start_time"])

    def insert_attempt(self, row):
        with self._lock:
            e = self.enrollments.get(row["enrollment_id"])
            if not e or e["status"] == "completed":
                return None
            for a in self.attempts.values():
                if a["enrollment_id"] == e["id"] and a["status"] in ("in_progress", "completed"):
                    return None
            full = {
                "id": row["id"], "quiz_id": e["quiz_id"], "student_id": e["student_id"],
                "enrollment_id": e["id"], "status": "in_progress", "start_time": row["start_time"],
                "end_time": None, "shuffle_seed": row.get("shuffle_seed"),
                "question_order": copy.deepcopy(row.get("question_order")), "answers": [],
                "snapshot": None, "score": None, "total_correct": None, "total_questions": None,
                "time_spent": None, "updated_at": row["start_time"],
            }
            self.attempts[full["id"]] = full
            e["status"] = "in_progress"
            e["started_at"] = e["started_at"] or row["start_time"]
            return copy.deepcopy(full)

    def save_snapshot(self, attempt_id, snapshot, now):
        if self.fail_saves is not None:
            raise self.fail_saves
        with self._lock:
            a = self.attempts.get(attempt_id)
            if not a or a["status"] != "in_progress":
                return False
            a["snapshot"] = copy.deepcopy(snapshot)
            a["updated_at"] = now
            return True

    def complete_attempt(self, attempt_id, fields, responses, enrollment_id, now):
        with self._lock:
            a = self.attempts.get(attempt_id)
            if not a or a["status"] != "in_progress":
                return False
            a.update(status="completed", end_time=now, updated_at=now,
                     answers=copy.deepcopy(fields.get("answers") or []),
                     snapshot={"kind": "answers", "answers": copy.deepcopy(fields.get("answers") or [])},
                     score=fields.get("score"), total_correct=fields.get("total_correct"),
                     total_questions=fields.get("total_questions"), time_spent=fields.get("time_spent"))
            for r in responses:
                self.responses.append(dict(r, attempt_id=attempt_id))
            self.enrollments[enrollment_id].update(status="completed", completed_at=now)
            return True

    def abandon_attempt(self, attempt_id, now):
        with self._lock:
            a = self.attempts.get(attempt_id)
            if not a or a["status"] != "in_progress":
                return False
            a.update(status="abandoned", end_time=now, answers=[], snapshot=None, updated_at=now)
            return True


class RecordingNotifier:
    def __init__(self, fail=False):
        self.events = []
        self.fail = fail

    def __call__(self, event, payload):
        if self.fail:
            raise RuntimeError("notification service down")
        self.events.append((event, payload))


@pytest.fixture
def store():
    s = MemoryStore()
    s.add_quiz()
    return s


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def t0():
    return T0

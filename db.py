# db.py: psycopg3 pool, query helpers and schema for the quiz attempt engine.
# Target resolution order: FORCE_TCP -> DATABASE_URL_LOCAL (local only) -> DATABASE_URL
# -> Cloud SQL socket (managed runtime) -> TCP from DB_* vars.

import os
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Optional, Sequence
from urllib.parse import urlparse, parse_qs, unquote

from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

INSTANCE_CONNECTION_NAME = os.getenv("INSTANCE_CONNECTION_NAME")
DB_USER = os.getenv("DB_USER")
DB_PASS = os.getenv("DB_PASS") or os.getenv("DB_PASSWORD")
DB_NAME = os.getenv("DB_NAME")
DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_URL_LOCAL = os.getenv("DATABASE_URL_LOCAL")
DB_HOST_OVERRIDE = os.getenv("DB_HOST")
DB_PORT_OVERRIDE = os.getenv("DB_PORT")
FORCE_TCP = os.getenv("FORCE_TCP", "").lower() in {"1", "true", "yes"}
DB_POOL_MIN = int(os.getenv("DB_POOL_MIN") or 1)
DB_POOL_MAX = int(os.getenv("DB_POOL_MAX") or 10)

_BASE_OPTS = {"connect_timeout": 10, "options": "-c search_path=public"}


def _on_managed_runtime() -> bool:
    return os.getenv("GAE_ENV", "").startswith("standard") or bool(os.getenv("K_SERVICE"))


def _describe(kwargs: dict, origin: str) -> None:
    host = kwargs.get("host", "localhost")
    if isinstance(host, str) and host.startswith("/cloudsql/"):
        print(f"[db] {origin}: unix socket -> {host}", flush=True)
    else:
        print(f"[db] {origin}: tcp -> {host}:{kwargs.get('port', 5432)}", flush=True)


def parse_database_url(url: str) -> dict:
    if not url:
        raise ValueError("Empty DATABASE_URL")
    for prefix in ("postgresql+psycopg://", "postgres+psycopg://",
                   "postgresql+psycopg2://", "postgres+psycopg2://"):
        if url.startswith(prefix):
            url = "postgresql://" + url.split("://", 1)[1]
            break
    p = urlparse(url)
    if p.scheme not in ("postgresql", "postgres"):
        raise ValueError(f"Unsupported scheme '{p.scheme}'")
    qs = parse_qs(p.query or "", keep_blank_values=True)
    host = (qs.get("host") or [p.hostname])[0]
    dbname = (p.path or "").lstrip("/") or (qs.get("dbname") or [""])[0]
    if not dbname:
        raise ValueError("DATABASE_URL missing dbname")
    kwargs = dict(_BASE_OPTS, dbname=dbname,
                  user=unquote(p.username or ""), password=unquote(p.password or ""))
    if host:
        kwargs["host"] = host
    if p.port and not (isinstance(host, str) and host.startswith("/")):
        kwargs["port"] = p.port
    if qs.get("sslmode"):
        kwargs["sslmode"] = qs["sslmode"][0]
    return kwargs


def _tcp_kwargs() -> dict:
    if not all([DB_NAME, DB_USER, DB_PASS]):
        raise RuntimeError("DB_NAME, DB_USER, DB_PASS must be set for TCP mode.")
    return dict(_BASE_OPTS, host=DB_HOST_OVERRIDE or "127.0.0.1", port=int(DB_PORT_OVERRIDE or "5432"),
                dbname=DB_NAME, user=DB_USER, password=DB_PASS, sslmode="disable")


def _socket_kwargs() -> dict:
    if not all([INSTANCE_CONNECTION_NAME, DB_NAME, DB_USER, DB_PASS]):
        raise RuntimeError("INSTANCE_CONNECTION_NAME, DB_NAME, DB_USER, DB_PASS must be set for socket mode.")
    return dict(_BASE_OPTS, host=f"/cloudsql/{INSTANCE_CONNECTION_NAME}",
                dbname=DB_NAME, user=DB_USER, password=DB_PASS)


def connection_kwargs() -> dict:
    managed = _on_managed_runtime()
    if FORCE_TCP and not managed:
        kwargs = _tcp_kwargs(); _describe(kwargs, "FORCE_TCP"); return kwargs
    if not managed and DATABASE_URL_LOCAL:
        try:
            kwargs = parse_database_url(DATABASE_URL_LOCAL)
            _describe(kwargs, "DATABASE_URL_LOCAL")
            return kwargs
        except ValueError as e:
            print(f"[db] ignoring DATABASE_URL_LOCAL: {e}", flush=True)
    if DATABASE_URL:
        try:
            kwargs = parse_database_url(DATABASE_URL)
            host = kwargs.get("host")
            if not managed and isinstance(host, str) and host.startswith("/cloudsql/"):
                print("[db] DATABASE_URL targets /cloudsql/ but we are local; using TCP.", flush=True)
            else:
                _describe(kwargs, "DATABASE_URL")
                return kwargs
        except ValueError as e:
            print(f"[db] ignoring DATABASE_URL: {e}", flush=True)
    if managed:
        kwargs = _socket_kwargs(); _describe(kwargs, "managed runtime"); return kwargs
    kwargs = _tcp_kwargs(); _describe(kwargs, "local dev"); return kwargs


def to_conninfo(kwargs: dict) -> str:
    parts = []
    for k, v in kwargs.items():
        if v is None:
            continue
        s = str(v)
        if any(ch.isspace() for ch in s) or "'" in s or '"' in s:
            s = "'" + s.replace("\\", "\\\\").replace("'", "\\'") + "'"
        parts.append(f"{k}={s}")
    return " ".join(parts)


# =============================================================================
# Pool + helpers
# =============================================================================
_pg_pool: Optional[ConnectionPool] = None


def init_pool() -> ConnectionPool:
    global _pg_pool
    if _pg_pool is None:
        _pg_pool = ConnectionPool(conninfo=to_conninfo(connection_kwargs()),
                                  min_size=DB_POOL_MIN, max_size=DB_POOL_MAX, open=True)
    return _pg_pool


def close_pool() -> None:
    global _pg_pool
    if _pg_pool is not None:
        _pg_pool.close()
        _pg_pool = None


@contextmanager
def get_conn():
    with init_pool().connection() as conn:
        yield conn


def fetch_all(q: str, params: Optional[Sequence[Any]] = None) -> List[Dict[str, Any]]:
    with get_conn() as conn:
        with conn.cursor(row_factory=dict_row) as cur:
            cur.execute(q, params or ())
            return cur.fetchall()


def fetch_one(q: str, params: Optional[Sequence[Any]] = None) -> Optional[Dict[str, Any]]:
    rows = fetch_all(q, params)
    return rows[0] if rows else None


def execute(q: str, params: Optional[Sequence[Any]] = None) -> int:
    with get_conn() as conn:
        with conn.cursor(row_factory=dict_row) as cur:
            cur.execute(q, params or ())
            n = cur.rowcount
        conn.commit()
        return n


def execute_returning(q: str, params: Optional[Sequence[Any]] = None) -> List[Dict[str, Any]]:
    with get_conn() as conn:
        with conn.cursor(row_factory=dict_row) as cur:
            cur.execute(q, params or ())
            rows = cur.fetchall()
        conn.commit()
        return rows


class Tx:
    """Query helpers bound to one connection inside one transaction."""

    def __init__(self, cur):
        self._cur = cur

    def fetch_all(self, q: str, params: Optional[Sequence[Any]] = None) -> List[Dict[str, Any]]:
        self._cur.execute(q, params or ())
        return self._cur.fetchall()

    def fetch_one(self, q: str, params: Optional[Sequence[Any]] = None) -> Optional[Dict[str, Any]]:
        rows = self.fetch_all(q, params)
        return rows[0] if rows else None

    def execute(self, q: str, params: Optional[Sequence[Any]] = None) -> int:
        self._cur.execute(q, params or ())
        return self._cur.rowcount

    def execute_many(self, q: str, seq: Sequence[Sequence[Any]]) -> None:
        if seq:
            self._cur.executemany(q, seq)


@contextmanager
def transaction() -> Iterator[Tx]:
    """Commit on clean exit, roll back on any exception (which propagates)."""
    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor(row_factory=dict_row) as cur:
                yield Tx(cur)


# =============================================================================
# Schema
# =============================================================================
SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS quizzes (
  id                TEXT PRIMARY KEY,
  educator_id       TEXT NOT NULL,
  title             TEXT NOT NULL,
  total_questions   INTEGER NOT NULL DEFAULT 0,
  duration          INTEGER NOT NULL,                       -- minutes
  start_time        TIMESTAMPTZ,                            -- NULL until scheduled
  timezone          TEXT NOT NULL DEFAULT 'UTC',            -- display only
  status            TEXT NOT NULL DEFAULT 'draft'
                    CHECK (status IN ('draft','published','archived')),
  shuffle_questions BOOLEAN NOT NULL DEFAULT FALSE,
  passing_score     REAL DEFAULT 70,
  created_at        TIMESTAMPTZ NOT NULL DEFAULT now()
);

CREATE TABLE IF NOT EXISTS questions (
  id                TEXT PRIMARY KEY,
  quiz_id           TEXT NOT NULL REFERENCES quizzes(id) ON DELETE CASCADE,
  question_text     TEXT NOT NULL,
  options           JSONB NOT NULL,                         -- [{"id","text"}]
  correct_option_id TEXT NOT NULL,
  order_index       INTEGER NOT NULL DEFAULT 0
);
CREATE INDEX IF NOT EXISTS idx_questions_quiz ON questions(quiz_id, order_index);

CREATE TABLE IF NOT EXISTS educator_students (
  id          TEXT PRIMARY KEY,
  educator_id TEXT NOT NULL,
  student_id  TEXT NOT NULL,
  status      TEXT NOT NULL DEFAULT 'active',
  enrolled_at TIMESTAMPTZ NOT NULL DEFAULT now()
);
CREATE UNIQUE INDEX IF NOT EXISTS uq_educator_students ON educator_students(educator_id, student_id);

CREATE TABLE IF NOT EXISTS enrollments (
  id                   TEXT PRIMARY KEY,
  quiz_id              TEXT NOT NULL REFERENCES quizzes(id) ON DELETE CASCADE,
  student_id           TEXT NOT NULL,
  status               TEXT NOT NULL DEFAULT 'enrolled'
                       CHECK (status IN ('enrolled','in_progress','completed')),
  enrolled_at          TIMESTAMPTZ NOT NULL DEFAULT now(),
  started_at           TIMESTAMPTZ,
  completed_at         TIMESTAMPTZ,
  is_reassignment      BOOLEAN NOT NULL DEFAULT FALSE,
  parent_enrollment_id TEXT REFERENCES enrollments(id),
  group_enrollment_id  TEXT,
  reassignment_reason  TEXT,
  reassigned_by        TEXT,
  closed_reason        TEXT
);
CREATE UNIQUE INDEX IF NOT EXISTS uq_enrollments_active
    ON enrollments(quiz_id, student_id) WHERE status <> 'completed';
CREATE INDEX IF NOT EXISTS idx_enrollments_student ON enrollments(quiz_id, student_id, enrolled_at DESC);

CREATE TABLE IF NOT EXISTS quiz_attempts (
  id              TEXT PRIMARY KEY,
  quiz_id         TEXT NOT NULL REFERENCES quizzes(id) ON DELETE CASCADE,
  student_id      TEXT NOT NULL,
  enrollment_id   TEXT NOT NULL REFERENCES enrollments(id) ON DELETE CASCADE,
  status          TEXT NOT NULL DEFAULT 'in_progress'
                  CHECK (status IN ('in_progress','completed','abandoned')),
  start_time      TIMESTAMPTZ NOT NULL,
  end_time        TIMESTAMPTZ,
  shuffle_seed    TEXT,
  question_order  JSONB,                                    -- realized order
  answers         JSONB NOT NULL DEFAULT '[]'::jsonb,       -- final graded answers
  snapshot        JSONB,                                    -- {"kind": "answers"|"autosave", ...}
  score           INTEGER,
  total_correct   INTEGER,
  total_questions INTEGER,
  time_spent      INTEGER,
  updated_at      TIMESTAMPTZ NOT NULL DEFAULT now()
);
CREATE UNIQUE INDEX IF NOT EXISTS uq_attempts_in_progress
    ON quiz_attempts(enrollment_id) WHERE status = 'in_progress';
CREATE UNIQUE INDEX IF NOT EXISTS uq_attempts_completed
    ON quiz_attempts(enrollment_id) WHERE status = 'completed';
CREATE INDEX IF NOT EXISTS idx_attempts_active
    ON quiz_attempts(student_id, quiz_id, start_time DESC) WHERE status = 'in_progress';

CREATE TABLE IF NOT EXISTS question_responses (
  id                 TEXT PRIMARY KEY,
  attempt_id         TEXT NOT NULL REFERENCES quiz_attempts(id) ON DELETE CASCADE,
  question_id        TEXT NOT NULL REFERENCES questions(id) ON DELETE CASCADE,
  selected_option_id TEXT,
  is_correct         BOOLEAN NOT NULL DEFAULT FALSE,
  time_spent         INTEGER NOT NULL DEFAULT 0,
  marked_for_review  BOOLEAN NOT NULL DEFAULT FALSE,
  answered_at        TIMESTAMPTZ NOT NULL DEFAULT now()
);
CREATE UNIQUE INDEX IF NOT EXISTS uq_responses_attempt_question
    ON question_responses(attempt_id, question_id);
"""


def init_schema() -> None:
    # multi-statement script: must go through the simple query protocol (no params)
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(SCHEMA_SQL)
        conn.commit()
    print("[db] schema ensured", flush=True)

# main.py: quiz attempt engine app, BASE_PATH-aware (psycopg3 + pooling)
# Identity is attached upstream (auth proxy); this app only reads it.

import os
from typing import Optional

from flask import Flask, request, g, jsonify

from db import fetch_one, fetch_all, execute, execute_returning, transaction, init_schema
from quiz_api import create_quiz_blueprint
from recovery_cache import RecoveryCache
from notify import NotificationDispatcher
from store import PgStore
import attempts

# =============================================================================
# BASE_PATH & Flask app
# =============================================================================
BASE_PATH = (os.getenv("BASE_PATH", "") or "").rstrip("/")

app = Flask(__name__)
app.url_map.strict_slashes = False

# =============================================================================
# Auth mode
# =============================================================================
AUTH_REQUIRED = os.getenv("AUTH_REQUIRED", "1").lower() in {"1", "true", "yes"}

USER_ID_HEADER = "X-Authenticated-User-Id"
USER_ROLE_HEADER = "X-Authenticated-User-Role"
ROLES = {"student", "educator"}


def _header_identity() -> Optional[tuple]:
    uid = (request.headers.get(USER_ID_HEADER) or "").strip()
    role = (request.headers.get(USER_ROLE_HEADER) or "").strip().lower()
    if not uid or role not in ROLES:
        return None
    return uid, role


def _is_public_path(path: str) -> bool:
    return path in {"/healthz", f"{BASE_PATH}/healthz"}


@app.before_request
def attach_identity():
    if _is_public_path(request.path):
        return
    ident = _header_identity()
    if ident:
        g.user_id, g.user_role = ident
        return
    if AUTH_REQUIRED:
        return jsonify({"ok": False, "error": "unauthorized", "message": "Unauthorized."}), 401


# =============================================================================
# Health
# =============================================================================
@app.get("/healthz")
def healthz():
    try:
        row = fetch_one("SELECT 1 AS ok;")
        ok = bool(row and row.get("ok") == 1)
        return ("ok" if ok else "db-fail", 200 if ok else 500)
    except Exception as e:
        return (f"error: {e}", 500)


if BASE_PATH:
    app.add_url_rule(f"{BASE_PATH}/healthz", endpoint="healthz_bp", view_func=healthz, methods=["GET"])

# =============================================================================
# Engine wiring
# =============================================================================
_quiz_deps = {
    "fetch_one": fetch_one,
    "fetch_all": fetch_all,
    "execute": execute,
    "execute_returning": execute_returning,
    "transaction": transaction,
}
store = PgStore(_quiz_deps)
recovery_cache = RecoveryCache()
notifier = NotificationDispatcher()

_engine_deps = dict(_quiz_deps, store=store, cache=recovery_cache, notifier=notifier)
app.register_blueprint(create_quiz_blueprint("", _engine_deps, name="quiz"))
if BASE_PATH:
    app.register_blueprint(create_quiz_blueprint(BASE_PATH, _engine_deps, name="quiz_alias"))

# =============================================================================
# CLI (flask --app main <command>)
# =============================================================================
@app.cli.command("init-db")
def init_db_command():
    """Create tables and indexes if missing."""
    init_schema()


@app.cli.command("sweep-expired")
def sweep_expired_command():
    """Auto-submit attempts whose time or quiz window has run out."""
    out = attempts.sweep_expired(store, cache=recovery_cache)
    purged = recovery_cache.purge_expired()
    print(f"[sweep] done: {out['completed']} completed of {out['checked']} open; "
          f"{purged} cache entries purged", flush=True)


# =============================================================================
# Local dev entry
# =============================================================================
if __name__ == "__main__":
    port = int(os.environ.get("PORT", 8080))
    app.run(host="0.0.0.0", port=port, debug=True)

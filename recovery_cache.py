# recovery_cache.py
# -----------------------------------------------------------------------------
# Ephemeral, process-local cache of in-flight attempts keyed by (student, quiz).
# Never authoritative: every hit is re-checked against the attempt row by id.
# Losing the whole cache only costs resume latency.
# -----------------------------------------------------------------------------

import os
import threading
from collections import OrderedDict
from datetime import datetime, timedelta
from typing import Any, Dict, Optional, Tuple

from availability import utcnow

DEFAULT_TTL_SECONDS = int(os.getenv("QUIZ_RECOVERY_TTL_SECONDS") or 10800)
DEFAULT_MAX_ENTRIES = 5000

Key = Tuple[str, str]


class RecoveryCache:
    def __init__(self, ttl_seconds: int = DEFAULT_TTL_SECONDS, max_entries: int = DEFAULT_MAX_ENTRIES):
        self.ttl = timedelta(seconds=int(ttl_seconds))
        self.max_entries = int(max_entries)
        self._lock = threading.Lock()
        self._entries: "OrderedDict[Key, Dict[str, Any]]" = OrderedDict()

    @staticmethod
    def _key(student_id: str, quiz_id: str) -> Key:
        return (str(student_id), str(quiz_id))

    def track(self, student_id: str, quiz_id: str, attempt_id: str, enrollment_id: str,
              started_at: Optional[datetime] = None, now: Optional[datetime] = None) -> None:
        now = now or utcnow()
        entry = {
            "attempt_id": str(attempt_id),
            "enrollment_id": str(enrollment_id),
            "started_at": started_at,
            "expires_at": now + self.ttl,
        }
        with self._lock:
            key = self._key(student_id, quiz_id)
            self._entries[key] = entry
            self._entries.move_to_end(key)
            while len(self._entries) > self.max_entries:
                self._entries.popitem(last=False)

    def lookup(self, student_id: str, quiz_id: str, now: Optional[datetime] = None) -> Optional[Dict[str, Any]]:
        now = now or utcnow()
        with self._lock:
            key = self._key(student_id, quiz_id)
            entry = self._entries.get(key)
            if entry is None:
                return None
            if entry["expires_at"] <= now:
                del self._entries[key]
                return None
            self._entries.move_to_end(key)
            return dict(entry)

    def touch(self, student_id: str, quiz_id: str, attempt_id: str,
              now: Optional[datetime] = None) -> bool:
        """Pushes back expiry of an entry that already tracks this attempt."""
        now = now or utcnow()
        with self._lock:
            key = self._key(student_id, quiz_id)
            entry = self._entries.get(key)
            if not entry or entry["attempt_id"] != str(attempt_id):
                return False
            entry["expires_at"] = now + self.ttl
            self._entries.move_to_end(key)
            return True

    def forget(self, student_id: str, quiz_id: str, attempt_id: Optional[str] = None) -> bool:
        with self._lock:
            key = self._key(student_id, quiz_id)
            entry = self._entries.get(key)
            if entry is None:
                return False
            if attempt_id is not None and entry["attempt_id"] != str(attempt_id):
                return False
            del self._entries[key]
            return True

    def purge_expired(self, now: Optional[datetime] = None) -> int:
        now = now or utcnow()
        with self._lock:
            stale = [k for k, e in self._entries.items() if e["expires_at"] <= now]
            for k in stale:
                del self._entries[k]
        return len(stale)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

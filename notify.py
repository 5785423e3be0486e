# notify.py
# Best-effort notification dispatch (enrollment / reassignment emails are sent
# by an external notification service). Calls never block or fail the caller.

import os
import threading
from typing import Any, Callable, Dict, Optional

import requests

NOTIFY_URL = (os.getenv("NOTIFY_URL") or "").strip()
NOTIFY_TIMEOUT_SECONDS = float(os.getenv("NOTIFY_TIMEOUT_SECONDS") or 5)


class NotificationDispatcher:
    """Callable: dispatcher(event, payload). POSTs {"event", "payload"} on a daemon thread."""

    def __init__(self, url: Optional[str] = None, timeout: float = NOTIFY_TIMEOUT_SECONDS,
                 session: Optional[requests.Session] = None, background: bool = True):
        self.url = (url if url is not None else NOTIFY_URL).strip()
        self.timeout = timeout
        self.session = session or requests.Session()
        self.background = background

    @property
    def enabled(self) -> bool:
        return bool(self.url)

    def _post(self, event: str, payload: Dict[str, Any]) -> None:
        try:
            r = self.session.post(self.url, json={"event": event, "payload": payload}, timeout=self.timeout)
            r.raise_for_status()
        except requests.RequestException as e:
            print(f"[notify] {event} dispatch failed: {e}", flush=True)

    def __call__(self, event: str, payload: Dict[str, Any]) -> None:
        if not self.enabled:
            return
        if not self.background:
            self._post(event, payload)
            return
        t = threading.Thread(target=self._post, args=(event, dict(payload)), daemon=True)
        t.start()


def safe_notify(notifier: Optional[Callable[[str, Dict[str, Any]], None]],
                event: str, payload: Dict[str, Any]) -> bool:
    """Shields the enrollment/attempt path from any notifier failure."""
    if notifier is None:
        return False
    try:
        notifier(event, payload)
        return True
    except Exception as e:
        print(f"[notify] {event} notifier raised: {e}", flush=True)
        return False

# availability.py
# -----------------------------------------------------------------------------
# Quiz time-window policy. Admission uses server UTC only; the quiz/user
# timezone is for display strings and never enters a comparison.
#   start:  [start_time, start_time + duration]
#   submit: [start_time, start_time + duration + grace]
# Reassigned enrollments are exempt from both windows.
# -----------------------------------------------------------------------------

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

GRACE_PERIOD_SECONDS = 300

NOT_SCHEDULED = "not_scheduled"
NOT_STARTED = "not_started"
OPEN = "open"
ENDED = "ended"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(dt: Optional[datetime]) -> Optional[datetime]:
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def window_end(quiz: Dict[str, Any], for_submit: bool = False,
               grace_seconds: int = GRACE_PERIOD_SECONDS) -> Optional[datetime]:
    start = as_utc(quiz.get("start_time"))
    if start is None:
        return None
    end = start + timedelta(minutes=int(quiz.get("duration") or 0))
    if for_submit:
        end += timedelta(seconds=int(grace_seconds))
    return end


def availability(quiz: Dict[str, Any], now: Optional[datetime] = None, *,
                 for_submit: bool = False, is_reassignment: bool = False,
                 grace_seconds: int = GRACE_PERIOD_SECONDS) -> Dict[str, Any]:
    """
    Returns {"status": not_scheduled|not_started|open|ended, "start_time"?, "end_time"?}.
    `for_submit` widens the end by the grace period; starting never gets grace.
    """
    now = as_utc(now) or utcnow()
    start = as_utc(quiz.get("start_time"))

    if is_reassignment:
        out: Dict[str, Any] = {"status": OPEN, "reassigned": True}
        if start is not None:
            out["start_time"] = start
            out["end_time"] = window_end(quiz, for_submit, grace_seconds)
        return out

    if start is None:
        return {"status": NOT_SCHEDULED}

    end = window_end(quiz, for_submit, grace_seconds)
    if now < start:
        status = NOT_STARTED
    elif now <= end:
        status = OPEN
    else:
        status = ENDED
    return {"status": status, "start_time": start, "end_time": end}


def _zone(tz_name: Optional[str]):
    try:
        return ZoneInfo(tz_name or "UTC")
    except (ZoneInfoNotFoundError, ValueError):
        return timezone.utc


def display_window(quiz: Dict[str, Any], tz_name: Optional[str] = None) -> Dict[str, Any]:
    """Display-only view of the window in the quiz (or caller-preferred) timezone."""
    name = tz_name or quiz.get("timezone") or "UTC"
    start = as_utc(quiz.get("start_time"))
    if start is None:
        return {"timezone": name, "start_time": None, "end_time": None, "display_start": "Not scheduled"}
    end = window_end(quiz)
    local = start.astimezone(_zone(name))
    return {
        "timezone": name,
        "start_time": start.isoformat(),
        "end_time": end.isoformat() if end else None,
        "display_start": local.strftime("%b %d, %Y, %I:%M %p %Z"),
    }


def time_until(quiz: Dict[str, Any], now: Optional[datetime] = None) -> str:
    """Human hint for a not-yet-started quiz ("in 2 hours and 5 minutes")."""
    start = as_utc(quiz.get("start_time"))
    now = as_utc(now) or utcnow()
    if start is None or start <= now:
        return "starting soon"
    secs = int((start - now).total_seconds())
    hours, minutes = secs // 3600, (secs % 3600) // 60
    if hours > 0:
        return (f"in {hours} hour{'s' if hours > 1 else ''} and "
                f"{minutes} minute{'s' if minutes != 1 else ''}")
    if minutes > 0:
        return f"in {minutes} minute{'s' if minutes != 1 else ''}"
    return "starting soon"

import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from availability import (  # noqa: E402
    ENDED, NOT_SCHEDULED, NOT_STARTED, OPEN, availability, display_window, time_until, window_end,
)

T = datetime(2026, 1, 15, 15, 0, tzinfo=timezone.utc)
QUIZ = {"start_time": T, "duration": 30, "timezone": "UTC"}


def test_start_window_edges():
    assert availability(QUIZ, T - timedelta(seconds=1))["status"] == NOT_STARTED
    assert availability(QUIZ, T)["status"] == OPEN
    assert availability(QUIZ, T + timedelta(minutes=30))["status"] == OPEN
    assert availability(QUIZ, T + timedelta(minutes=30, seconds=1))["status"] == ENDED


def test_submit_window_has_grace():
    assert availability(QUIZ, T + timedelta(minutes=34), for_submit=True)["status"] == OPEN
    assert availability(QUIZ, T + timedelta(minutes=36), for_submit=True)["status"] == ENDED
    # starting never gets the grace period
    assert availability(QUIZ, T + timedelta(minutes=34))["status"] == ENDED


def test_not_scheduled():
    assert availability({"start_time": None, "duration": 30}, T) == {"status": NOT_SCHEDULED}


def test_reassignment_is_always_open():
    out = availability(QUIZ, T + timedelta(days=30), is_reassignment=True)
    assert out["status"] == OPEN
    assert out["reassigned"] is True
    assert availability({"start_time": None, "duration": 30}, T, is_reassignment=True)["status"] == OPEN


def test_naive_datetimes_are_utc():
    naive = {"start_time": datetime(2026, 1, 15, 15, 0), "duration": 30}
    assert availability(naive, T + timedelta(minutes=1))["status"] == OPEN


def test_window_end():
    assert window_end(QUIZ) == T + timedelta(minutes=30)
    assert window_end(QUIZ, for_submit=True, grace_seconds=60) == T + timedelta(minutes=31)
    assert window_end({"start_time": None}) is None


def test_display_window_uses_zone_for_display_only():
    out = display_window(dict(QUIZ, timezone="America/New_York"))
    assert out["timezone"] == "America/New_York"
    assert "10:00 AM" in out["display_start"]
    assert out["start_time"] == T.isoformat()


def test_display_window_unknown_zone_falls_back_to_utc():
    out = display_window(dict(QUIZ, timezone="Mars/Olympus_Mons"))
    assert "03:00 PM" in out["display_start"]


def test_display_window_unscheduled():
    out = display_window({"start_time": None, "duration": 30})
    assert out["display_start"] == "Not scheduled"


def test_time_until():
    assert time_until(QUIZ, T - timedelta(hours=2, minutes=5)) == "in 2 hours and 5 minutes"
    assert time_until(QUIZ, T - timedelta(minutes=1)) == "in 1 minute"
    assert time_until(QUIZ, T + timedelta(minutes=1)) == "starting soon"

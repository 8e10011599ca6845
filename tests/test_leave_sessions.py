import sys
from datetime import datetime, timedelta
from pathlib import Path

ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(ROOT))

from backend.services.leave_sessions import PendingLeaveStore


class _Clock:
    def __init__(self):
        self.now = datetime(2026, 3, 2, 10, 0, 0)

    def __call__(self):
        return self.now


def test_record_get_clear(pending):
    assert pending.get("TCI_EMP002", "TECHCORP_IN") is None
    pending.record("TCI_EMP002", "TECHCORP_IN", requested_days=2)
    marker = pending.get("TCI_EMP002", "TECHCORP_IN")
    assert marker.requested_days == 2
    pending.clear("TCI_EMP002", "TECHCORP_IN")
    assert pending.get("TCI_EMP002", "TECHCORP_IN") is None


def test_markers_are_keyed_by_user_and_organization(pending):
    pending.record("TCI_EMP002", "TECHCORP_IN")
    assert pending.get("TCI_EMP002", "GLOBALSOFT") is None
    assert pending.get("TCI_EMP003", "TECHCORP_IN") is None


def test_last_writer_wins(pending):
    pending.record("TCI_EMP002", "TECHCORP_IN", requested_days=1)
    pending.record("TCI_EMP002", "TECHCORP_IN", requested_days=4)
    assert pending.get("TCI_EMP002", "TECHCORP_IN").requested_days == 4


def test_marker_expires(store):
    clock = _Clock()
    pending = PendingLeaveStore(store, ttl_seconds=60, clock=clock)
    pending.ensure_schema()
    pending.record("TCI_EMP002", "TECHCORP_IN")
    clock.now += timedelta(seconds=59)
    assert pending.get("TCI_EMP002", "TECHCORP_IN") is not None
    clock.now += timedelta(seconds=1)
    assert pending.get("TCI_EMP002", "TECHCORP_IN") is None


def test_requested_days_at_least_one(pending):
    assert pending.record("TCI_EMP002", "TECHCORP_IN", requested_days=0).requested_days == 1

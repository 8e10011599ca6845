import sys
from pathlib import Path

ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(ROOT))

from backend.services.config import MailSettings
from backend.services.notifier import EmailNotifier, render_leave_email


def test_render_approval_email():
    subject, body = render_leave_email("Rahul Verma", "approve", "Earned Leave", "Vipraco")
    assert subject == "Leave Request Approved"
    assert body.startswith("Dear Rahul Verma,")
    assert "Your request for Earned Leave has been approved." in body
    assert body.endswith("HR Team\nVipraco")


def test_render_rejection_email():
    subject, body = render_leave_email("Amit Patel", "reject", "Sick Leave")
    assert subject == "Leave Request Rejected"
    assert "has been rejected" in body


def test_log_only_mode_does_not_send(store, monkeypatch):
    sent = []
    notifier = EmailNotifier(store, MailSettings(server=None))
    monkeypatch.setattr(notifier, "_send_smtp", lambda **kw: sent.append(kw))
    notifier.notify("TCI_EMP002", "approve", "Earned Leave", "TECHCORP_IN")
    assert sent == []


def test_smtp_mode_sends_to_employee(store, monkeypatch):
    sent = []
    notifier = EmailNotifier(store, MailSettings(server="smtp.example.com"))
    monkeypatch.setattr(notifier, "_send_smtp", lambda **kw: sent.append(kw))
    notifier.notify("TCI_EMP003", "reject", "Sick Leave", "TECHCORP_IN")
    assert len(sent) == 1
    assert sent[0]["to_email"] == "amit.patel@techcorp.in"
    assert sent[0]["subject"] == "Leave Request Rejected"


def test_recipient_outside_organization_is_skipped(store, monkeypatch):
    sent = []
    notifier = EmailNotifier(store, MailSettings(server="smtp.example.com"))
    monkeypatch.setattr(notifier, "_send_smtp", lambda **kw: sent.append(kw))
    notifier.notify("GS_EMP001", "approve", "leave", "TECHCORP_IN")
    assert sent == []


def test_failures_are_swallowed(store, monkeypatch):
    notifier = EmailNotifier(store, MailSettings(server="smtp.example.com"))

    def _boom(**kw):
        raise OSError("connection refused")

    monkeypatch.setattr(notifier, "_send_smtp", _boom)
    notifier.notify("TCI_EMP003", "reject", "Sick Leave", "TECHCORP_IN")

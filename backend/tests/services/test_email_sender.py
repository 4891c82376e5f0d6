import smtplib

import pytest

from expense_tracker.services.email_sender import EmailSender, SmtpConfig, UnknownEmailKindError, render_email


class FakeSMTP:
    def __init__(self, fail=False):
        self.fail = fail
        self.sent = []
        self.logins = []
        self.closed = False

    def login(self, user, password):
        self.logins.append(user)

    def send_message(self, msg):
        if self.fail:
            raise smtplib.SMTPRecipientsRefused({msg["To"]: (550, b"no such user")})
        self.sent.append(msg)

    def quit(self):
        self.closed = True


def test_templates_cover_every_kind():
    subject, body = render_email("budget-alert", {
        "user_name": "Sam",
        "alert": {"category_name": "Food & Dining", "budget_amount": 200, "spent": 150, "percentage": 75},
    })
    assert subject == "Budget alert: Food & Dining"
    assert "150.00 of your 200.00" in body

    for kind in ("welcome", "monthly-report", "password-reset"):
        assert render_email(kind, {})[0]

    with pytest.raises(UnknownEmailKindError):
        render_email("newsletter", {})


def test_send_delivers_message():
    smtp = FakeSMTP()
    sender = EmailSender(SmtpConfig(host="smtp.local", user="bot", password="pw"), smtp_factory=lambda _: smtp)

    assert sender.send("welcome", "sam@example.com", {"user_name": "Sam"}) is True
    assert smtp.logins == ["bot"]
    assert smtp.sent[0]["To"] == "sam@example.com"
    assert smtp.closed


def test_send_reports_failure_instead_of_raising():
    sender = EmailSender(SmtpConfig(host="smtp.local"), smtp_factory=lambda _: FakeSMTP(fail=True))
    assert sender.send("welcome", "sam@example.com", {}) is False


def test_send_without_smtp_host_fails():
    assert EmailSender(SmtpConfig(host=None)).send("welcome", "sam@example.com", {}) is False

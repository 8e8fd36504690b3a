import smtplib

from drscreen import mailer as mailer_mod
from drscreen.mailer import Mailer, render_findings_email


class FakeSMTP:
    instances = []
    fail = None

    def __init__(self, host, port, context=None):
        self.host = host
        self.port = port
        self.logged_in = None
        self.sent = []
        FakeSMTP.instances.append(self)

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def starttls(self, context=None):
        pass

    def login(self, user, password):
        self.logged_in = (user, password)

    def send_message(self, msg):
        if FakeSMTP.fail:
            raise FakeSMTP.fail
        self.sent.append(msg)


def configured(settings):
    settings.smtp_host = "smtp.clinic.test"
    settings.smtp_port = 465
    settings.smtp_user = "reports@clinic.test"
    settings.smtp_password = "pw"
    settings.smtp_sender = "reports@clinic.test"
    return settings


def test_render_findings_email_escapes_and_skips_blanks():
    body = render_findings_email({"name": "<Asha>", "message": {"greet": "Your results", "drr": "Mild NPDR", "drl": ""}})
    assert "&lt;Asha&gt;" in body
    assert "right eye is Mild NPDR" in body
    assert "left eye is" not in body


def test_unconfigured_mailer(settings):
    result = Mailer(settings).send_email("p@x.test", "Results", "<p>hi</p>")
    assert result == {"success": False, "error": "SMTP is not configured"}


def test_send_email(settings, monkeypatch):
    FakeSMTP.instances = []
    FakeSMTP.fail = None
    monkeypatch.setattr(mailer_mod.smtplib, "SMTP_SSL", FakeSMTP)
    result = Mailer(configured(settings)).send_email("p@x.test", "Results", "<p>hi</p>")
    assert result["success"] is True
    assert result["messageId"]
    server = FakeSMTP.instances[0]
    assert server.logged_in == ("reports@clinic.test", "pw")
    assert server.sent[0]["To"] == "p@x.test"


def test_send_email_failure_is_reported(settings, monkeypatch):
    FakeSMTP.instances = []
    FakeSMTP.fail = smtplib.SMTPRecipientsRefused({"p@x.test": (550, b"no such user")})
    monkeypatch.setattr(mailer_mod.smtplib, "SMTP_SSL", FakeSMTP)
    result = Mailer(configured(settings)).send_email("p@x.test", "Results", "<p>hi</p>")
    assert result["success"] is False
    assert result["error"]
    FakeSMTP.fail = None

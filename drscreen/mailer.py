import html
import smtplib
import ssl
from email.message import EmailMessage
from email.utils import make_msgid
from typing import Any, Dict, Mapping

from .config import Settings
from .utils import json_log

FINDING_LINES = [
    ("drr", "That your ETDRS grade for right eye is"),
    ("drl", "That your ETDRS grade for left eye is"),
    ("mer", "That your Macular Edema for right eye is"),
    ("mel", "That your Macular Edema for left eye is"),
    ("octr", "That your OCT Finding for right eye is"),
    ("octl", "That your OCT Finding for left eye is"),
]


def render_findings_email(template_data: Mapping[str, Any]) -> str:
    name = html.escape(str(template_data.get("name") or ""))
    message = template_data.get("message") or {}
    parts = [f"<h1>Hello {name}!</h1>"]
    if message.get("greet"):
        parts.append(f"<p>{html.escape(str(message['greet']))}</p>")
    for key, text in FINDING_LINES:
        value = message.get(key)
        if value not in (None, ""):
            parts.append(f"<p>{text} {html.escape(str(value))}</p>")
    parts.append("<p>Thank you for using our service.</p>")
    return "\n".join(parts)


class Mailer:
    def __init__(self, settings: Settings):
        self.settings = settings

    def send_email(self, recipient: str, subject: str, html_body: str) -> Dict[str, Any]:
        """Send an HTML email. SMTP problems are reported in the result, not raised."""
        s = self.settings
        if not s.smtp_host:
            return {"success": False, "error": "SMTP is not configured"}
        msg = EmailMessage()
        msg["From"] = s.smtp_sender or s.smtp_user
        msg["To"] = recipient
        msg["Subject"] = subject
        msg["Message-ID"] = make_msgid()
        msg.set_content("This message contains HTML content. Please view it in an HTML-capable client.")
        msg.add_alternative(html_body, subtype="html")
        try:
            if s.smtp_ssl:
                with smtplib.SMTP_SSL(s.smtp_host, s.smtp_port, context=ssl.create_default_context()) as server:
                    self._deliver(server, msg)
            else:
                with smtplib.SMTP(s.smtp_host, s.smtp_port) as server:
                    server.starttls(context=ssl.create_default_context())
                    self._deliver(server, msg)
        except (smtplib.SMTPException, OSError) as e:
            json_log("email_failed", recipient=recipient, error=str(e))
            return {"success": False, "error": str(e)}
        json_log("email_sent", recipient=recipient, message_id=msg["Message-ID"])
        return {"success": True, "messageId": msg["Message-ID"]}

    def _deliver(self, server: smtplib.SMTP, msg: EmailMessage):
        if self.settings.smtp_user:
            server.login(self.settings.smtp_user, self.settings.smtp_password)
        server.send_message(msg)

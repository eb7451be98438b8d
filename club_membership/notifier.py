"""
Club Membership -- Outbound Email

    Messenger         -- protocol: send(message) returns None or raises
    SmtpMessenger     -- real delivery over SMTP + STARTTLS
    LoggingMessenger  -- test mode: logs (and keeps) what would be sent
    OperatorNotifier  -- alerts to the membership-automation address

Operator alerts go out on unrecoverable batch errors, audit table
corruption, audit persistence failures and invalid queue rows.  Failing
to deliver an alert is logged and never raised.
"""

from __future__ import annotations

import logging
import smtplib
import ssl
import traceback
from datetime import datetime
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Protocol

from .config import SMTPSettings
from .models import Message
from .templates import build_environment

logger = logging.getLogger(__name__)


class Messenger(Protocol):
    def send(self, message: Message) -> None: ...


# ---------------------------------------------------------------------------
# SMTP
# ---------------------------------------------------------------------------

def build_mime_message(message: Message, sender: str) -> MIMEMultipart:
    """Build a MIME message ready for SMTP sending."""
    msg = MIMEMultipart("mixed")
    msg["From"] = sender
    msg["To"] = message.to
    if message.reply_to:
        msg["Reply-To"] = message.reply_to
    msg["Subject"] = message.subject
    msg["Date"] = datetime.now().strftime("%a, %d %b %Y %H:%M:%S +0000")
    msg.attach(MIMEText(message.html_body, "html", "utf-8"))
    return msg


class SmtpMessenger:
    """Sends each message over its own SMTP connection."""

    def __init__(self, settings: SMTPSettings, default_sender: str = "") -> None:
        self.settings = settings
        self.sender = settings.sender or default_sender or settings.username

    def send(self, message: Message) -> None:
        """Deliver *message*.

        Raises:
            ValueError: If the message has no recipient.
            smtplib.SMTPException / OSError: On delivery failure.
        """
        if not message.to:
            raise ValueError("Message has no recipient")

        msg = build_mime_message(message, self.sender)
        context = ssl.create_default_context()
        with smtplib.SMTP(self.settings.host, self.settings.port) as server:
            if self.settings.use_tls:
                server.starttls(context=context)
            if self.settings.username:
                server.login(self.settings.username, self.settings.password)
            server.sendmail(self.sender, [message.to], msg.as_string())
        logger.info("Sent '%s' to %s", message.subject, message.to)


class LoggingMessenger:
    """Test mode: nothing leaves the machine."""

    def __init__(self) -> None:
        self.sent: list[Message] = []

    def send(self, message: Message) -> None:
        self.sent.append(message)
        logger.info("testEmails: would have sent '%s' to %s", message.subject, message.to)


# ---------------------------------------------------------------------------
# Operator alerts
# ---------------------------------------------------------------------------

_EXCEPTION_TEMPLATE = """\
<h3>{{ context }} failed</h3>
<p><strong>Time:</strong> {{ when }}</p>
<p><strong>Error:</strong> {{ error }}</p>
<p><strong>Stack Trace:</strong></p>
<pre>{{ trace }}</pre>
<h4>Recommended Actions:</h4>
<ul>
  <li>Check the run log for this invocation</li>
  <li>Verify ActiveMembers, ExpirySchedule and ExpirationFIFO sheet integrity</li>
  <li>Check for any blocked email addresses</li>
</ul>
<p><em>This is an automated notification from the membership engine.</em></p>
"""

_LIST_TEMPLATE = """\
<h3>{{ title }}</h3>
<p><strong>Time:</strong> {{ when }}</p>
{% if intro %}<p>{{ intro }}</p>{% endif %}
<ul>
{% for item in items %}
  <li>{{ item }}</li>
{% endfor %}
</ul>
"""


class OperatorNotifier:
    """Sends alerts to the operator address.  Never raises."""

    def __init__(self, messenger: Messenger, operator_email: str, reply_to: str = "") -> None:
        self.messenger = messenger
        self.operator_email = operator_email
        self.reply_to = reply_to
        self.env = build_environment(autoescape=True)

    def alert(self, subject: str, html_body: str) -> bool:
        """Send one alert; returns whether it went out."""
        message = Message(
            to=self.operator_email,
            subject=subject,
            html_body=html_body,
            reply_to=self.reply_to,
        )
        try:
            self.messenger.send(message)
        except Exception:
            logger.exception("CRITICAL: could not deliver operator alert '%s'", subject)
            return False
        logger.info("Operator alert sent to %s: %s", self.operator_email, subject)
        return True

    def report_exception(self, context: str, exc: BaseException) -> bool:
        body = self.env.from_string(_EXCEPTION_TEMPLATE).render(
            context=context,
            when=datetime.now().strftime("%Y-%m-%d %H:%M:%S"),
            error=str(exc) or type(exc).__name__,
            trace="".join(traceback.format_exception(type(exc), exc, exc.__traceback__)),
        )
        return self.alert(f"Membership automation: {context} failed", body)

    def report_problems(self, title: str, items: list[str], intro: str = "") -> bool:
        if not items:
            return False
        body = self.env.from_string(_LIST_TEMPLATE).render(
            title=title,
            when=datetime.now().strftime("%Y-%m-%d %H:%M:%S"),
            intro=intro,
            items=items,
        )
        return self.alert(f"Membership automation: {title}", body)

"""
Completion notifications.

The worker decides when to notify and which terminal facts to pass. A
Notifier decides how the message is composed and delivered. Delivery
failures raise NotificationError; the worker logs them and never changes
the job's status because of them.
"""

import logging
import smtplib
from abc import ABC, abstractmethod
from dataclasses import dataclass
from email.message import EmailMessage
from pathlib import Path
from typing import Optional

from jinja2 import Environment, FileSystemLoader, StrictUndefined, TemplateError, select_autoescape

from seqjobs.config import SmtpSettings
from seqjobs.errors import NotificationError
from seqjobs.schemas import Status, Tool

logger = logging.getLogger(__name__)


TEMPLATES_DIR = Path(__file__).parent / "templates"

# Long transcripts are cut to their tail in emails
MAX_TRANSCRIPT_CHARS = 20_000


@dataclass(frozen=True)
class Notification:
    """
    Terminal facts about one job.

    Attributes:
        recipient: Email address from the job metadata
        job_id: Job id
        tool: Tool that ran
        outcome: done or error
        transcript: Combined step output
        commands: Command lines that were run
        error: Failure message for error outcomes
    """
    recipient: str
    job_id: str
    tool: Tool
    outcome: Status
    transcript: str = ""
    commands: tuple[str, ...] = ()
    error: Optional[str] = None


def _environment() -> Environment:
    return Environment(
        loader=FileSystemLoader(str(TEMPLATES_DIR)),
        autoescape=select_autoescape(["html", "htm"]),
        undefined=StrictUndefined,
        keep_trailing_newline=True,
    )


def render_template(template_name: str, variables: dict[str, str]) -> str:
    """
    Render a Jinja2 template from TEMPLATES_DIR.

    Raises:
        NotificationError: If the template is missing or uses an undefined variable
    """
    try:
        template = _environment().get_template(template_name)
        return template.render(**variables)
    except TemplateError as e:
        raise NotificationError(f"Could not render {template_name}: {e}") from e


def _tail(text: str, limit: int = MAX_TRANSCRIPT_CHARS) -> str:
    if len(text) <= limit:
        return text
    return "...(truncated)...\n" + text[-limit:]


def compose_message(notification: Notification) -> tuple[str, str]:
    """Return (subject, body) for a notification."""
    tool_name = notification.tool.display_name
    succeeded = notification.outcome == Status.DONE
    template = "job_done.txt" if succeeded else "job_error.txt"
    body = render_template(template, {
        "tool": tool_name,
        "job_id": notification.job_id,
        "commands": "\n".join(notification.commands) or "(none)",
        "transcript": _tail(notification.transcript) or "(no output)",
        "error": notification.error or "unknown error",
    })
    verb = "completed" if succeeded else "failed"
    subject = f"{tool_name} job {notification.job_id} {verb}"
    return subject, body


class Notifier(ABC):
    """Abstract base class for notification delivery."""

    @abstractmethod
    def send(self, notification: Notification) -> None:
        """
        Deliver one notification.

        Raises:
            NotificationError: If delivery failed
        """
        pass


class LogNotifier(Notifier):
    """Writes notifications to the log instead of sending them."""

    def __init__(self):
        self.sent: list[Notification] = []

    def send(self, notification: Notification) -> None:
        subject, _ = compose_message(notification)
        self.sent.append(notification)
        logger.info(
            f"Notification for {notification.recipient}: {subject}",
            extra={"job_id": notification.job_id, "event": "notification_logged"},
        )


class SmtpNotifier(Notifier):
    """Sends notifications as plain-text email over SMTP."""

    def __init__(self, settings: SmtpSettings, timeout: float = 30.0):
        if not settings.configured:
            raise NotificationError("Email credentials are not configured")
        self.settings = settings
        self.timeout = timeout

    def _connect(self) -> smtplib.SMTP:
        s = self.settings
        if s.secure:
            return smtplib.SMTP_SSL(s.host, s.port, timeout=self.timeout)
        smtp = smtplib.SMTP(s.host, s.port, timeout=self.timeout)
        smtp.starttls()
        return smtp

    def send(self, notification: Notification) -> None:
        subject, body = compose_message(notification)
        message = EmailMessage()
        message["From"] = self.settings.sender or self.settings.user
        message["To"] = notification.recipient
        message["Subject"] = subject
        message.set_content(body)

        try:
            with self._connect() as smtp:
                smtp.login(self.settings.user, self.settings.password)
                smtp.send_message(message)
        except (smtplib.SMTPException, OSError) as e:
            raise NotificationError(f"Failed to email {notification.recipient}: {e}") from e

        logger.info(
            f"Emailed {notification.recipient}: {subject}",
            extra={"job_id": notification.job_id, "event": "notification_sent"},
        )


def build_notifier(kind: str, settings: SmtpSettings) -> Notifier:
    if kind == "smtp":
        return SmtpNotifier(settings)
    return LogNotifier()

"""
Email notifications and the documents they carry.
"""

import asyncio
import logging
import os
import smtplib
from email.message import EmailMessage
from typing import List, Optional, Protocol

from jinja2 import Environment, FileSystemLoader, select_autoescape

from opswatch.src.config import get_settings
from opswatch.src.services.errors import UpstreamError

logger = logging.getLogger(__name__)

TEMPLATE_DIR = os.path.join(os.path.dirname(os.path.dirname(__file__)), "templates")

_env = Environment(
    loader=FileSystemLoader(TEMPLATE_DIR),
    autoescape=select_autoescape(["html"]),
)

class NotificationGateway(Protocol):
    async def send_html(self, subject: str, html_body: str, recipients: List[str]) -> None:
        ...

def render_authorization_request(request) -> str:
    """Render an AuthorizationRequestResponse-shaped object to HTML."""
    return _env.get_template("authorization_request.html").render(request=request)

def render_execution_history(history) -> str:
    """Render an ExecutionHistoryResponse-shaped object to HTML."""
    return _env.get_template("execution_history.html").render(history=history)

class EmailNotifier:
    """Sends HTML email over SMTP."""

    def __init__(
        self,
        host: Optional[str] = None,
        port: Optional[int] = None,
        username: Optional[str] = None,
        password: Optional[str] = None,
        sender: Optional[str] = None,
        starttls: Optional[bool] = None,
    ):
        settings = get_settings()
        self.host = host if host is not None else settings.smtp_host
        self.port = port if port is not None else settings.smtp_port
        self.username = username if username is not None else settings.smtp_username
        self.password = password if password is not None else settings.smtp_password
        self.sender = sender if sender is not None else settings.smtp_from
        self.starttls = starttls if starttls is not None else settings.smtp_starttls

    def build_message(self, subject: str, html_body: str, recipients: List[str]) -> EmailMessage:
        message = EmailMessage()
        message["From"] = self.sender
        message["To"] = ", ".join(recipients)
        message["Subject"] = subject
        message.set_content("This message requires an HTML capable mail client.")
        message.add_alternative(html_body, subtype="html")
        return message

    def _deliver(self, message: EmailMessage):
        with smtplib.SMTP(self.host, self.port, timeout=30) as smtp:
            if self.starttls:
                smtp.starttls()
            if self.username:
                smtp.login(self.username, self.password)
            smtp.send_message(message)

    async def send_html(self, subject: str, html_body: str, recipients: List[str]) -> None:
        recipients = [r for r in recipients if r]
        if not recipients:
            raise UpstreamError(f"No recipients for '{subject}'")

        if not self.host:
            logger.warning(f"SMTP not configured, skipping email '{subject}' to {recipients}")
            return

        message = self.build_message(subject, html_body, recipients)
        try:
            await asyncio.to_thread(self._deliver, message)
        except (smtplib.SMTPException, OSError) as e:
            raise UpstreamError(f"Failed to send email '{subject}': {e}")

        logger.info(f"HTML email sent with subject: {subject}")

import logging
import smtplib
from email.message import EmailMessage
from pathlib import Path
from typing import Optional

from jinja2 import Environment, FileSystemLoader, select_autoescape

from config import get_settings


logger = logging.getLogger(__name__)

TEMPLATES_DIR = Path(__file__).resolve().parent / "templates" / "emails"


def format_amount(cents: int) -> str:
    return f"{cents / 100:.2f}"


_env = Environment(
    loader=FileSystemLoader(str(TEMPLATES_DIR)),
    autoescape=select_autoescape(["html"]),
)
_env.filters["amount"] = format_amount


def render_email(template_name: str, **context: object) -> str:
    return _env.get_template(f"{template_name}.html").render(**context)


class EmailNotifier:
    def __init__(
        self,
        host: Optional[str] = None,
        port: Optional[int] = None,
        *,
        sender: Optional[str] = None,
        username: Optional[str] = None,
        password: Optional[str] = None,
        starttls: Optional[bool] = None,
        timeout: Optional[float] = None,
    ) -> None:
        settings = get_settings()
        self.host = host or settings.smtp_host
        self.port = port or settings.smtp_port
        self.sender = sender or settings.smtp_sender
        self.username = username or settings.smtp_username
        self.password = password or settings.smtp_password
        self.starttls = settings.smtp_starttls if starttls is None else starttls
        self.timeout = timeout or settings.smtp_timeout_secs

    def send(self, recipient: str, subject: str, rendered_body: str) -> bool:
        message = EmailMessage()
        message["From"] = self.sender
        message["To"] = recipient
        message["Subject"] = subject
        message.set_content("This message requires an HTML capable mail client.")
        message.add_alternative(rendered_body, subtype="html")
        try:
            with smtplib.SMTP(self.host, self.port, timeout=self.timeout) as smtp:
                if self.starttls:
                    smtp.starttls()
                if self.username and self.password:
                    smtp.login(self.username, self.password)
                smtp.send_message(message)
        except (smtplib.SMTPException, OSError) as exc:
            logger.error(f"email_failed: to={recipient} subject={subject!r} error={exc}")
            return False
        logger.info(f"email_sent: to={recipient} subject={subject!r}")
        return True

import asyncio
import logging
import smtplib
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from html import escape
from typing import List, Optional

from journey_engine.config import SMTP_FROM_NAME, SMTP_HOST, SMTP_PASSWORD, SMTP_PORT, SMTP_USERNAME
from journey_engine.services.errors import ExecutionFailure

logger = logging.getLogger(__name__)


def convert_text_to_html(plain_text: str, links: Optional[List[dict]] = None) -> str:
    """
    Convert a plain text email body to HTML and append configured links as buttons.
    """
    if not plain_text:
        return ""

    html_content = escape(plain_text).replace("\n", "<br>")

    for link in links or []:
        text = link.get("text", "").strip()
        url = link.get("url", "").strip()
        if text and url:
            html_content += (
                f'<div style="margin: 25px 0; text-align: center;">'
                f'<a href="{escape(url, quote=True)}" style="display: inline-block; padding: 15px 30px; '
                f'border-radius: 25px; text-decoration: none;">{escape(text)}</a></div>'
            )
    return html_content


class SmtpEmailSender:
    """Sends journey emails over SMTP with STARTTLS."""

    def __init__(
        self,
        host: str = SMTP_HOST,
        port: int = SMTP_PORT,
        username: Optional[str] = SMTP_USERNAME,
        password: Optional[str] = SMTP_PASSWORD,
        from_name: str = SMTP_FROM_NAME,
    ):
        self.host = host
        self.port = port
        self.username = username
        self.password = password
        self.from_name = from_name

    def build_message(self, to: str, subject: str, body: str, links: Optional[List[dict]] = None) -> MIMEMultipart:
        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = f"{self.from_name} <{self.username}>"
        msg["To"] = to
        msg["Reply-To"] = self.username or ""
        msg["List-Unsubscribe"] = f"<mailto:{self.username}?subject=unsubscribe>"
        msg.attach(MIMEText(body, "plain"))
        msg.attach(MIMEText(convert_text_to_html(body, links), "html"))
        return msg

    def _send(self, msg: MIMEMultipart) -> None:
        logger.debug(f"[EMAIL] Connecting to {self.host}:{self.port}")
        with smtplib.SMTP(self.host, self.port) as server:
            server.starttls()
            server.login(self.username, self.password)
            server.send_message(msg)

    async def send_email(self, tenant_id: str, to: str, subject: str, body: str, links: Optional[List[dict]] = None) -> dict:
        if not to or not to.strip():
            raise ValueError("Recipient email is required")
        if not subject or not subject.strip():
            raise ValueError("Email subject is required")
        if not self.username or not self.password:
            logger.error(f"[EMAIL] SMTP_USERNAME: {'SET' if self.username else 'MISSING'}")
            logger.error(f"[EMAIL] SMTP_PASSWORD: {'SET' if self.password else 'MISSING'}")
            raise ExecutionFailure("Missing SMTP credentials", retryable=False)

        logger.info(f"[EMAIL] Sending '{subject}' to {to} for tenant {tenant_id}")
        msg = self.build_message(to, subject, body, links)
        try:
            await asyncio.to_thread(self._send, msg)
        except smtplib.SMTPAuthenticationError as e:
            logger.error(f"[EMAIL] SMTP Authentication failed: {e}")
            raise
        except smtplib.SMTPRecipientsRefused as e:
            logger.error(f"[EMAIL] SMTP Recipients refused for {to}: {e}")
            raise
        except smtplib.SMTPException as e:
            logger.error(f"[EMAIL] SMTP Exception for {to}: {e}")
            raise
        logger.info(f"[EMAIL] Email sent to {to}")
        return {"success": True, "to": to, "subject": subject}

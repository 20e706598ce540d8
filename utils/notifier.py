import asyncio
import json
import logging
import smtplib
from datetime import datetime, timezone
from email.message import EmailMessage
from html import escape
from typing import Any, List, Optional

import httpx

logger = logging.getLogger(__name__)


def _error_text(error: Any) -> str:
    return str(error) or error.__class__.__name__


class Notifier:
    """Sink for stage outcome notifications. The base class drops everything."""

    enabled = False

    async def notify_success(self, stage_name: str, result: Any) -> None:
        return None

    async def notify_failure(self, stage_name: str, error: Any) -> None:
        return None


class NullNotifier(Notifier):
    pass


class EmailNotifier(Notifier):
    """Mails stage outcomes to the configured sender address."""

    enabled = True

    def __init__(self, host: str, port: int, username: str, password: str,
                 from_email: Optional[str] = None, timeout: float = 10.0):
        self.host = host
        self.port = port
        self.username = username
        self.password = password
        self.from_email = from_email or username
        self.timeout = timeout

    def _send(self, subject: str, html: str) -> None:
        message = EmailMessage()
        message["Subject"] = subject
        message["From"] = self.from_email
        message["To"] = self.from_email
        message.set_content(html, subtype="html")

        smtp_cls = smtplib.SMTP_SSL if self.port == 465 else smtplib.SMTP
        with smtp_cls(self.host, self.port, timeout=self.timeout) as smtp:
            if smtp_cls is smtplib.SMTP:
                smtp.starttls()
            smtp.login(self.username, self.password)
            smtp.send_message(message)

    async def send_email(self, subject: str, html: str) -> None:
        try:
            await asyncio.to_thread(self._send, subject, html)
            logger.info(f"Email sent: {subject}")
        except Exception as e:
            logger.error(f"Failed to send email: {e}")

    async def notify_success(self, stage_name: str, result: Any) -> None:
        html = (
            "<h1>Function Executed Successfully</h1>"
            f"<p><strong>Function:</strong> {escape(stage_name)}</p>"
            f"<p><strong>Time:</strong> {datetime.now(timezone.utc).isoformat()}</p>"
            f"<pre>{escape(json.dumps(result, indent=2, default=str))}</pre>"
        )
        await self.send_email(f"[SUCCESS] Function: {stage_name}", html)

    async def notify_failure(self, stage_name: str, error: Any) -> None:
        html = (
            "<h1>Function Execution Failed</h1>"
            f"<p><strong>Function:</strong> {escape(stage_name)}</p>"
            f"<p><strong>Time:</strong> {datetime.now(timezone.utc).isoformat()}</p>"
            f"<p><strong>Error:</strong> {escape(_error_text(error))}</p>"
        )
        await self.send_email(f"[ERROR] Function: {stage_name}", html)


class WebhookNotifier(Notifier):
    """Posts a JSON message (Slack-compatible ``text`` field) to a webhook."""

    enabled = True

    def __init__(self, url: str, timeout: float = 10.0,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self.url = url
        self.timeout = timeout
        self.transport = transport

    async def _post(self, payload: dict) -> None:
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                response = await client.post(self.url, json=payload)
                response.raise_for_status()
        except Exception as e:
            logger.error(f"Failed to post notification webhook: {e}")

    async def notify_success(self, stage_name: str, result: Any) -> None:
        await self._post({
            "text": f"[SUCCESS] Function: {stage_name}",
            "stage": stage_name,
            "status": "success",
            "result": json.loads(json.dumps(result, default=str)),
        })

    async def notify_failure(self, stage_name: str, error: Any) -> None:
        await self._post({
            "text": f"[ERROR] Function: {stage_name}: {_error_text(error)}",
            "stage": stage_name,
            "status": "failure",
            "error": _error_text(error),
        })


class CompositeNotifier(Notifier):
    enabled = True

    def __init__(self, notifiers: List[Notifier]):
        self.notifiers = notifiers

    async def notify_success(self, stage_name: str, result: Any) -> None:
        await asyncio.gather(*(n.notify_success(stage_name, result) for n in self.notifiers))

    async def notify_failure(self, stage_name: str, error: Any) -> None:
        await asyncio.gather(*(n.notify_failure(stage_name, error) for n in self.notifiers))


def build_notifier(settings) -> Notifier:
    notifiers: List[Notifier] = []
    if settings.smtp_configured:
        notifiers.append(EmailNotifier(
            host=settings.smtp_host,
            port=settings.smtp_port,
            username=settings.smtp_user,
            password=settings.smtp_pass,
            from_email=settings.smtp_from,
        ))
    else:
        logger.warning("SMTP credentials missing. Email notifications disabled.")
    if settings.notify_webhook_url:
        notifiers.append(WebhookNotifier(settings.notify_webhook_url))

    if not notifiers:
        return NullNotifier()
    if len(notifiers) == 1:
        return notifiers[0]
    return CompositeNotifier(notifiers)

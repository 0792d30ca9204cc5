from __future__ import annotations

import asyncio
import base64
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional, Protocol

import httpx

from deepresearch.config import Settings
from deepresearch.errors import DeliveryError
from deepresearch.services import logger as log_service

SENDGRID_SEND_URL = "https://api.sendgrid.com/v3/mail/send"


@dataclass
class Attachment:
    filename: str
    content: bytes
    mime_type: str = "application/pdf"


class Notifier(Protocol):
    async def send(
        self,
        address: str,
        subject: str,
        text: str,
        html: Optional[str] = None,
        attachment: Optional[Attachment] = None,
    ) -> bool: ...


class SendGridNotifier:
    """Deliver mail through the SendGrid v3 REST API."""

    def __init__(
        self,
        api_key: str,
        from_email: str,
        from_name: str = "Research Assistant",
        *,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.api_key = api_key
        self.from_email = from_email
        self.from_name = from_name
        self.timeout = timeout
        self.transport = transport

    def build_payload(
        self,
        address: str,
        subject: str,
        text: str,
        html: Optional[str],
        attachment: Optional[Attachment],
    ) -> dict[str, Any]:
        content = [{"type": "text/plain", "value": text}]
        if html:
            content.append({"type": "text/html", "value": html})
        payload: dict[str, Any] = {
            "personalizations": [{"to": [{"email": address}]}],
            "from": {"email": self.from_email, "name": self.from_name},
            "subject": subject,
            "content": content,
        }
        if attachment is not None:
            payload["attachments"] = [
                {
                    "content": base64.b64encode(attachment.content).decode("ascii"),
                    "filename": attachment.filename,
                    "type": attachment.mime_type,
                    "disposition": "attachment",
                }
            ]
        return payload

    async def send(
        self,
        address: str,
        subject: str,
        text: str,
        html: Optional[str] = None,
        attachment: Optional[Attachment] = None,
    ) -> bool:
        if not self.api_key:
            raise DeliveryError("SendGrid API key is not configured")
        if not self.from_email:
            raise DeliveryError("SendGrid from email is not configured")

        payload = self.build_payload(address, subject, text, html, attachment)
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                response = await client.post(
                    SENDGRID_SEND_URL,
                    json=payload,
                    headers={"Authorization": f"Bearer {self.api_key}"},
                )
        except httpx.HTTPError as e:
            log_service.log_event(
                event_type="email_failed",
                message="SendGrid request failed",
                to=address,
                error=str(e),
            )
            return False

        if response.is_success:
            log_service.log_event(
                event_type="email_sent",
                message="Report email accepted by SendGrid",
                to=address,
                status_code=response.status_code,
            )
            return True

        log_service.log_event(
            event_type="email_failed",
            message="SendGrid rejected the report email",
            to=address,
            status_code=response.status_code,
            body=response.text[:500],
        )
        return False


class OutboxNotifier:
    """Write messages to a local directory instead of sending them."""

    def __init__(self, outbox_dir: str | Path):
        self.outbox_dir = Path(outbox_dir)

    def _write(
        self,
        address: str,
        subject: str,
        text: str,
        html: Optional[str],
        attachment: Optional[Attachment],
    ) -> Path:
        stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S%f")
        slug = re.sub(r"[^A-Za-z0-9_.-]+", "_", address)
        folder = self.outbox_dir / f"{stamp}-{slug}"
        folder.mkdir(parents=True, exist_ok=True)
        (folder / "message.txt").write_text(f"To: {address}\nSubject: {subject}\n\n{text}", encoding="utf-8")
        if html:
            (folder / "message.html").write_text(html, encoding="utf-8")
        if attachment is not None:
            (folder / attachment.filename).write_bytes(attachment.content)
        return folder

    async def send(
        self,
        address: str,
        subject: str,
        text: str,
        html: Optional[str] = None,
        attachment: Optional[Attachment] = None,
    ) -> bool:
        folder = await asyncio.to_thread(self._write, address, subject, text, html, attachment)
        log_service.log_event(
            event_type="email_written",
            message="Report written to outbox",
            to=address,
            path=str(folder),
        )
        return True


def build_notifier(config: Settings) -> Notifier:
    backend = config.notifier_backend.lower().strip()
    if backend == "sendgrid":
        return SendGridNotifier(
            config.sendgrid_api_key,
            config.sendgrid_from_email,
            config.sendgrid_from_name,
        )
    if backend == "outbox":
        return OutboxNotifier(config.outbox_dir)
    raise ValueError(f"Unsupported NOTIFIER_BACKEND: {config.notifier_backend}")

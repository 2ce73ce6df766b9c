"""
Transactional email through Resend.

``send`` and ``send_batch`` never raise on delivery problems; they return a
descriptor the caller can log or count.
"""

import asyncio
from dataclasses import dataclass
from typing import Any

import resend

from app.config import settings
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)


@dataclass(slots=True)
class EmailMessage:
    to: str
    subject: str
    html: str
    text: str | None = None
    tags: dict[str, str] | None = None


class NotificationService:
    """Email delivery with a never-throw contract."""

    def __init__(self, api_key: str | None = None, from_address: str | None = None):
        self.api_key = api_key if api_key is not None else settings.EMAIL_API_KEY
        self.from_address = from_address or settings.EMAIL_FROM_ADDRESS

    @property
    def enabled(self) -> bool:
        return bool(self.api_key)

    def _deliver(self, payload: dict[str, Any]) -> dict[str, Any]:
        resend.api_key = self.api_key
        return resend.Emails.send(payload)

    async def send(self, message: EmailMessage) -> dict[str, Any]:
        """
        Send one email.

        Returns:
            {"success": True, "id": ...} or {"success": False, "error": ...}
        """
        if not self.enabled:
            logger.warning("Email not configured, skipping send", subject=message.subject)
            return {"success": False, "error": "not_configured"}

        if not message.to:
            return {"success": False, "error": "missing_recipient"}

        payload: dict[str, Any] = {
            "from": self.from_address,
            "to": [message.to],
            "subject": message.subject,
            "html": message.html,
        }
        if message.text:
            payload["text"] = message.text
        if message.tags:
            payload["tags"] = [{"name": k, "value": v} for k, v in message.tags.items()]

        try:
            response = await asyncio.to_thread(self._deliver, payload)
        except Exception as e:
            logger.error(
                "Email delivery failed",
                subject=message.subject,
                error=str(e),
                error_type=type(e).__name__,
            )
            return {"success": False, "error": str(e)}

        email_id = response.get("id") if isinstance(response, dict) else None
        logger.info("Email sent", subject=message.subject, email_id=email_id)
        return {"success": True, "id": email_id}

    async def send_batch(self, messages: list[EmailMessage]) -> dict[str, Any]:
        """Send each message independently; one failure does not affect the rest."""
        results = await asyncio.gather(*(self.send(message) for message in messages))
        successful = sum(1 for result in results if result.get("success"))
        return {
            "total": len(messages),
            "successful": successful,
            "failed": len(messages) - successful,
            "results": results,
        }


notification_service = NotificationService()

"""Email provider integration (Plunk by default)."""

from __future__ import annotations

import json
import logging
import uuid
from dataclasses import dataclass
from typing import Optional, Protocol

import requests

from errors import DeliveryError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EmailMessage:
    to: str
    subject: str
    text: Optional[str] = None
    html: Optional[str] = None
    reply_to: Optional[str] = None
    sender: Optional[str] = None


class EmailProvider(Protocol):
    def send(self, message: EmailMessage) -> Optional[str]:
        """Deliver ``message`` and return the provider message id, if any."""


def mask_email(email: str) -> str:
    value = (email or "").strip()
    if "@" not in value:
        return "***"
    local, domain = value.split("@", 1)
    if not local:
        return f"***@{domain}"
    return f"{local[0]}***@{domain}"


def short_error(text: str, *, limit: int = 120) -> str:
    value = (text or "").replace("\n", " ").strip()
    if len(value) <= limit:
        return value
    return value[:limit] + "..."


class PlunkEmailProvider:
    """Transactional email through the Plunk ``/v1/send`` endpoint."""

    def __init__(self, api_token: str, from_address: str, api_url: str, timeout_seconds: int = 10) -> None:
        self.api_token = api_token
        self.from_address = from_address
        self.api_url = api_url
        self.timeout_seconds = timeout_seconds

    def _payload(self, message: EmailMessage) -> dict:
        payload = {
            "from": message.sender or self.from_address,
            "to": message.to,
            "subject": message.subject,
        }
        if message.text:
            payload["text"] = message.text
        if message.html:
            payload["html"] = message.html
        if message.reply_to:
            payload["replyTo"] = message.reply_to
        return payload

    def send(self, message: EmailMessage) -> Optional[str]:
        if not message.to:
            raise DeliveryError("Recipient address missing", retryable=False)
        if not (message.text or message.html):
            raise DeliveryError("Message has no body", retryable=False)
        try:
            response = requests.post(
                self.api_url,
                json=self._payload(message),
                headers={"Authorization": f"Bearer {self.api_token}"},
                timeout=self.timeout_seconds,
            )
        except requests.Timeout as exc:
            raise DeliveryError(f"Plunk timeout: {short_error(str(exc))}", retryable=True) from exc
        except requests.RequestException as exc:
            raise DeliveryError(f"Plunk request failed: {short_error(str(exc))}", retryable=True) from exc

        status_code = int(response.status_code or 0)
        if 200 <= status_code < 300:
            try:
                body = response.json()
            except (json.JSONDecodeError, ValueError):
                body = {}
            message_id = (body.get("id") or body.get("messageId")) if isinstance(body, dict) else None
            logger.info("EMAIL_SENT provider=plunk to=%s status=%s", mask_email(message.to), status_code)
            return message_id

        raise DeliveryError(
            f"Plunk rejected message status={status_code} body={short_error(response.text)}",
            provider_status=status_code,
            retryable=status_code >= 500,
        )


class LogEmailProvider:
    """Development provider that logs messages instead of sending them."""

    def send(self, message: EmailMessage) -> Optional[str]:
        logger.info(
            "EMAIL_LOGGED to=%s subject=%s reply_to=%s",
            mask_email(message.to),
            message.subject,
            mask_email(message.reply_to) if message.reply_to else "-",
        )
        return f"log-{uuid.uuid4().hex}"

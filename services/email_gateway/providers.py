from __future__ import annotations

import html
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Protocol

import httpx

from app.config import Settings


SIGNATURE_NAME = "RxManagement"


class EmailProviderError(RuntimeError):
    pass


@dataclass
class ProviderDelivery:
    provider: str
    payload: Dict[str, object]


class EmailProvider(Protocol):
    name: str

    def send(self, to: str, subject: str, text: str) -> ProviderDelivery: ...


def _post(client: httpx.Client, url: str, **kwargs: object) -> httpx.Response:
    try:
        response = client.post(url, **kwargs)  # type: ignore[arg-type]
        response.raise_for_status()
    except httpx.HTTPStatusError as exc:
        raise EmailProviderError(f"{url} returned {exc.response.status_code}: {exc.response.text}") from exc
    except httpx.HTTPError as exc:
        raise EmailProviderError(f"{url} unreachable: {exc}") from exc
    return response


class SendGridProvider:
    name = "sendgrid"
    api_url = "https://api.sendgrid.com/v3/mail/send"

    def __init__(
        self,
        api_key: Optional[str],
        sender: str,
        sender_name: str = SIGNATURE_NAME,
        transport: Optional[httpx.BaseTransport] = None,
        timeout: float = 10.0,
    ) -> None:
        self.api_key = api_key
        self.sender = sender
        self.sender_name = sender_name
        self.transport = transport
        self.timeout = timeout

    def send(self, to: str, subject: str, text: str) -> ProviderDelivery:
        if not self.api_key:
            raise EmailProviderError("SEND_GRID_KEY is not configured")
        body = f"Hello\n\n{text}\n\nBest,\n{self.sender_name}"
        payload: Dict[str, object] = {
            "personalizations": [{"to": [{"email": to}]}],
            "from": {"email": self.sender, "name": self.sender_name},
            "subject": subject,
            "content": [{"type": "text/plain", "value": body}],
        }
        with httpx.Client(
            timeout=self.timeout,
            transport=self.transport,
            headers={"Authorization": f"Bearer {self.api_key}"},
        ) as client:
            _post(client, self.api_url, json=payload)
        return ProviderDelivery(provider=self.name, payload=payload)


class MailjetProvider:
    name = "mailjet"
    api_url = "https://api.mailjet.com/v3.1/send"

    def __init__(
        self,
        public_key: Optional[str],
        private_key: Optional[str],
        sender: str,
        sender_name: str = SIGNATURE_NAME,
        transport: Optional[httpx.BaseTransport] = None,
        timeout: float = 10.0,
    ) -> None:
        self.public_key = public_key
        self.private_key = private_key
        self.sender = sender
        self.sender_name = sender_name
        self.transport = transport
        self.timeout = timeout

    def send(self, to: str, subject: str, text: str) -> ProviderDelivery:
        if not (self.public_key and self.private_key):
            raise EmailProviderError("MJ_APIKEY_PUBLIC and MJ_APIKEY_PRIVATE must be configured")
        html_part = html.escape(text).replace("\n", "<br>")
        payload: Dict[str, object] = {
            "Messages": [
                {
                    "From": {"Email": self.sender, "Name": self.sender_name},
                    "To": [{"Email": to}],
                    "Subject": subject,
                    "TextPart": text,
                    "HTMLPart": f"<p>{html_part}</p>",
                }
            ]
        }
        with httpx.Client(
            timeout=self.timeout,
            transport=self.transport,
            auth=(self.public_key, self.private_key),
        ) as client:
            _post(client, self.api_url, json=payload)
        return ProviderDelivery(provider=self.name, payload=payload)


@dataclass
class RecordingProvider:
    """Keeps messages in memory; used by tests and local runs without credentials."""

    name: str = "recording"
    sent: List[Dict[str, str]] = field(default_factory=list)

    def send(self, to: str, subject: str, text: str) -> ProviderDelivery:
        message = {"to": to, "subject": subject, "text": text}
        self.sent.append(message)
        return ProviderDelivery(provider=self.name, payload=dict(message))


def build_provider(settings: Settings) -> EmailProvider:
    if settings.email_provider == "mailjet":
        return MailjetProvider(
            public_key=settings.mailjet_api_key_public,
            private_key=settings.mailjet_api_key_private,
            sender=settings.email_sender,
            sender_name=settings.email_sender_name,
            timeout=settings.email_timeout_seconds,
        )
    return SendGridProvider(
        api_key=settings.sendgrid_api_key,
        sender=settings.email_sender,
        sender_name=settings.email_sender_name,
        timeout=settings.email_timeout_seconds,
    )

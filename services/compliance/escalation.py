from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Protocol

import httpx

from shared.contracts.models import EmailRequest, EmailResult, Medication


logger = logging.getLogger(__name__)

EMAIL_ENDPOINT = "/send-missed-dosage-email"
DEFAULT_PATIENT_NAME = "The patient"
DEFAULT_MEDICATION_NAME = "the medication"


class EmailClient(Protocol):
    async def send_email(self, to: str, subject: str, text: str) -> EmailResult: ...


class HttpEmailClient:
    """Posts alerts to the email gateway service."""

    def __init__(
        self,
        base_url: str,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.transport = transport

    async def send_email(self, to: str, subject: str, text: str) -> EmailResult:
        try:
            async with httpx.AsyncClient(
                base_url=self.base_url, timeout=self.timeout, transport=self.transport
            ) as client:
                response = await client.post(EMAIL_ENDPOINT, json={"to": to, "subject": subject, "text": text})
                response.raise_for_status()
                body = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            return EmailResult.failed(str(exc) or type(exc).__name__)

        if not isinstance(body, dict) or not body.get("success"):
            error = body.get("error") if isinstance(body, dict) else None
            return EmailResult.failed(error or "email service reported failure")
        return EmailResult.delivered()


@dataclass
class FakeEmailClient:
    sent: list[EmailRequest] = field(default_factory=list)
    fail_with: str | None = None

    async def send_email(self, to: str, subject: str, text: str) -> EmailResult:
        if self.fail_with is not None:
            return EmailResult.failed(self.fail_with)
        self.sent.append(EmailRequest(to=to, subject=subject, text=text))
        return EmailResult.delivered()


def compose_missed_dosage_email(medication: Medication, missed_count: int) -> tuple[str, str]:
    patient_name = medication.patient_name or DEFAULT_PATIENT_NAME
    medication_name = medication.name or DEFAULT_MEDICATION_NAME
    subject = f"Missed Dosages Alert - {medication_name}"
    text = f"{patient_name} missed {missed_count} dosages for {medication_name}"
    return subject, text


class EscalationNotifier:
    """Sends missed-dosage alerts without holding up the caller.

    Each alert runs as its own task whose result is an ``EmailResult``;
    failures are logged there and never reach the compliance flow.
    """

    def __init__(self, client: EmailClient) -> None:
        self.client = client
        self._in_flight: set[asyncio.Task[EmailResult]] = set()

    def send_missed_dosages_email(
        self, medication: Medication, prescriber_email: str, missed_count: int
    ) -> asyncio.Task[EmailResult]:
        subject, text = compose_missed_dosage_email(medication, missed_count)
        task = asyncio.get_running_loop().create_task(
            self._deliver(medication.id, prescriber_email, subject, text)
        )
        self._in_flight.add(task)
        task.add_done_callback(self._in_flight.discard)
        return task

    async def drain(self) -> list[EmailResult]:
        """Wait for alerts still in flight."""
        if not self._in_flight:
            return []
        return list(await asyncio.gather(*self._in_flight))

    async def _deliver(self, medication_id: str, to: str, subject: str, text: str) -> EmailResult:
        try:
            result = await self.client.send_email(to, subject, text)
        except Exception as exc:
            result = EmailResult.failed(repr(exc))

        if result.ok:
            logger.info("missed dosage alert delivered", extra={"medication_id": medication_id, "recipient": to})
        else:
            logger.error(
                "missed dosage alert failed",
                extra={"medication_id": medication_id, "recipient": to, "reason": result.reason},
            )
        return result

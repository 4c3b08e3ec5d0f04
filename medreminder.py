from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any, Optional

from app.config import Settings
from app.db.store import (
    MEDICATIONS_KEY,
    DocumentStore,
    InMemoryKeyValueStore,
    KeyValueStore,
    SqlKeyValueStore,
    StorageError,
    create_store_engine,
)
from services.assistant.chat import MedicalAssistant, OpenAIChatClient
from services.compliance.escalation import EmailClient, EscalationNotifier, HttpEmailClient
from services.compliance.ledger import ConfirmationLedger
from services.compliance.tracker import DEFAULT_MISSED_THRESHOLD, ComplianceTracker
from services.reminders.modal import DEFAULT_TIMEOUT_SECONDS, ModalController
from services.reminders.router import NotificationEventRouter
from services.reminders.scheduler import (
    Clock,
    InMemoryNotificationCapability,
    NotificationCapability,
    ReminderScheduler,
    zone_clock,
)
from services.reminders.speech import RecordingSpeechSynthesizer, SpeechSynthesizer
from shared.contracts.enums import Platform, RouteOutcome
from shared.contracts.models import (
    ComplianceRecord,
    Medication,
    MedicationCreate,
    NotificationEvent,
    PendingConfirmation,
)


logger = logging.getLogger(__name__)

REMINDER_SETUP_WARNING = (
    "Failed to set up notifications. Please check your notification permissions and try again."
)


class MedicationError(ValueError):
    pass


class DuplicateMedicationError(MedicationError):
    pass


class ReminderSetupError(RuntimeError):
    pass


class MedReminderFlow:
    """Wires scheduling, event routing and compliance tracking around one store."""

    def __init__(
        self,
        store: DocumentStore,
        capability: NotificationCapability,
        email_client: EmailClient,
        clock: Clock,
        platform: Platform = Platform.ANDROID,
        speech: Optional[SpeechSynthesizer] = None,
        missed_threshold: int = DEFAULT_MISSED_THRESHOLD,
        modal_timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
    ) -> None:
        self.store = store
        self.platform = platform
        self.clock = clock
        self.scheduler = ReminderScheduler(capability, clock)
        self.notifier = EscalationNotifier(email_client)
        self.tracker = ComplianceTracker(store, self.notifier, clock, missed_threshold=missed_threshold)
        self.ledger = ConfirmationLedger(store, clock)
        self.modal = ModalController(timeout_seconds=modal_timeout_seconds)
        self.speech = speech or RecordingSpeechSynthesizer()
        self.router = NotificationEventRouter(
            platform=platform,
            tracker=self.tracker,
            ledger=self.ledger,
            modal=self.modal,
            speech=self.speech,
            clock=clock,
        )

    async def initialize(self) -> bool:
        return await self.scheduler.initialize(self.platform)

    async def save_medication(self, draft: MedicationCreate) -> Medication:
        """Store a new medication and register one daily reminder per slot.

        Raises ``DuplicateMedicationError`` when the name is taken
        (case-insensitive) and ``ReminderSetupError`` when the reminders
        cannot be registered; in both cases nothing is stored.
        """
        async with self.store.locked(MEDICATIONS_KEY):
            existing = await self.store.load_medications(strict=True)
            if any(med.name.lower() == draft.name.lower() for med in existing):
                raise DuplicateMedicationError("A medication with this name already exists")

            medication = Medication.model_validate(draft.model_dump())
            await self.scheduler.cancel(medication.id)

            if medication.reminder_enabled:
                try:
                    await self.scheduler.schedule_all(medication)
                except Exception as exc:
                    logger.exception("failed to schedule reminders", extra={"medication_id": medication.id})
                    await self.scheduler.cancel(medication.id)
                    raise ReminderSetupError(REMINDER_SETUP_WARNING) from exc

            try:
                await self.store.save_medications([*existing, medication])
            except StorageError:
                await self.scheduler.cancel(medication.id)
                raise

        logger.info(
            "medication saved",
            extra={"medication_id": medication.id, "reminders": len(medication.reminder_times)},
        )
        return medication

    async def delete_medication(self, medication_id: str) -> int:
        """Remove a medication and cancel its reminders; returns the number cancelled."""
        cancelled = await self.scheduler.cancel(medication_id)
        async with self.store.locked(MEDICATIONS_KEY):
            medications = await self.store.load_medications(strict=True)
            remaining = [med for med in medications if med.id != medication_id]
            if len(remaining) == len(medications):
                raise KeyError(medication_id)
            await self.store.save_medications(remaining)

        logger.info("medication deleted", extra={"medication_id": medication_id, "cancelled": cancelled})
        return cancelled

    async def list_medications(self) -> list[Medication]:
        return await self.store.load_medications()

    async def get_medication(self, medication_id: str) -> Optional[Medication]:
        medications = await self.store.load_medications()
        return next((med for med in medications if med.id == medication_id), None)

    async def handle_event(self, event: NotificationEvent | Mapping[str, Any]) -> RouteOutcome:
        return await self.router.handle(event)

    async def pending_confirmations(self) -> list[PendingConfirmation]:
        return await self.ledger.list_pending()

    async def confirm_pending(self, confirmation_id: str) -> bool:
        return await self.ledger.confirm(confirmation_id)

    async def compliance_for(self, medication_id: str) -> Optional[ComplianceRecord]:
        return await self.tracker.get_record(medication_id)

    async def shutdown(self) -> None:
        self.modal.hide()
        await self.notifier.drain()


def build_store(settings: Settings) -> DocumentStore:
    kv: KeyValueStore
    if settings.database_url:
        sql_store = SqlKeyValueStore(create_store_engine(settings.database_url))
        sql_store.create_schema()
        kv = sql_store
    else:
        kv = InMemoryKeyValueStore()
    return DocumentStore(kv)


def build_flow(
    settings: Settings,
    store: Optional[DocumentStore] = None,
    capability: Optional[NotificationCapability] = None,
    email_client: Optional[EmailClient] = None,
    speech: Optional[SpeechSynthesizer] = None,
) -> MedReminderFlow:
    return MedReminderFlow(
        store=store or build_store(settings),
        capability=capability or InMemoryNotificationCapability(),
        email_client=email_client
        or HttpEmailClient(settings.email_service_url, timeout=settings.email_timeout_seconds),
        clock=zone_clock(settings.timezone),
        platform=settings.platform,
        speech=speech,
        missed_threshold=settings.missed_dose_threshold,
        modal_timeout_seconds=settings.modal_timeout_seconds,
    )


def build_assistant(settings: Settings, store: DocumentStore) -> MedicalAssistant:
    client = OpenAIChatClient(api_key=settings.openai_api_key, model=settings.openai_model)
    return MedicalAssistant(store, client, max_history=settings.assistant_max_history)

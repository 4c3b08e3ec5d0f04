from datetime import datetime, time, timedelta, timezone

import pytest

from app.db.store import DocumentStore, InMemoryKeyValueStore
from medreminder import MedReminderFlow
from services.compliance.escalation import FakeEmailClient
from services.reminders.scheduler import InMemoryNotificationCapability
from services.reminders.speech import RecordingSpeechSynthesizer
from shared.contracts.enums import Platform
from shared.contracts.models import MedicationCreate


class FixedClock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock(datetime(2026, 3, 2, 7, 30, tzinfo=timezone.utc))


@pytest.fixture
def store() -> DocumentStore:
    return DocumentStore(InMemoryKeyValueStore())


@pytest.fixture
def email_client() -> FakeEmailClient:
    return FakeEmailClient()


@pytest.fixture
def capability() -> InMemoryNotificationCapability:
    return InMemoryNotificationCapability()


@pytest.fixture
def speech() -> RecordingSpeechSynthesizer:
    return RecordingSpeechSynthesizer()


@pytest.fixture
def make_draft():
    def factory(**overrides) -> MedicationCreate:
        values = {
            "name": "Aspirin",
            "dosage": "50mg",
            "frequency": 2,
            "reminder_times": [time(8, 0), time(20, 0)],
            "prescriber_email": "dr.house@clinic.example",
            "patient_name": "Ada Lovelace",
        }
        values.update(overrides)
        return MedicationCreate(**values)

    return factory


@pytest.fixture
def make_flow(store, capability, email_client, clock, speech):
    def factory(platform: Platform = Platform.ANDROID, **kwargs) -> MedReminderFlow:
        return MedReminderFlow(
            store=store,
            capability=capability,
            email_client=email_client,
            clock=clock,
            platform=platform,
            speech=speech,
            **kwargs,
        )

    return factory

import asyncio
from datetime import datetime, time, timezone

import pytest

from app.config import Settings
from app.db.store import MEDICATIONS_KEY, DocumentStore, InMemoryKeyValueStore, StorageError
from medreminder import (
    REMINDER_SETUP_WARNING,
    DuplicateMedicationError,
    MedReminderFlow,
    ReminderSetupError,
    build_flow,
)
from services.compliance.escalation import FakeEmailClient
from services.reminders.scheduler import InMemoryNotificationCapability
from shared.contracts.enums import Platform, PressActionId, RouteOutcome


class ReadOnlyKeyValueStore(InMemoryKeyValueStore):
    async def set(self, key: str, value: str) -> None:
        raise PermissionError("read-only volume")


def test_aspirin_timeout_then_evening_confirmation_on_ios(make_flow, make_draft, capability, clock, email_client):
    flow = make_flow(Platform.IOS, modal_timeout_seconds=0.01)

    async def scenario():
        await flow.initialize()
        aspirin = await flow.save_medication(make_draft())
        assert len(capability.triggers) == 2

        clock.now = datetime(2026, 3, 2, 8, 0, tzinfo=timezone.utc)
        shown = await flow.handle_event(capability.delivered_event("trigger-1"))
        await asyncio.sleep(0.1)
        morning = (await flow.compliance_for(aspirin.id)).model_copy(deep=True)

        clock.now = datetime(2026, 3, 2, 20, 1, tzinfo=timezone.utc)
        confirmed = await flow.handle_event(capability.action_event("trigger-2", PressActionId.CONFIRM))
        evening = await flow.compliance_for(aspirin.id)
        await flow.shutdown()
        return shown, morning, confirmed, evening

    shown, morning, confirmed, evening = asyncio.run(scenario())

    assert shown == RouteOutcome.MODAL_SHOWN
    assert morning.missed_count == 1
    assert morning.last_confirmed is None
    assert confirmed == RouteOutcome.CONFIRMED
    assert evening.missed_count == 0
    assert evening.last_confirmed == datetime(2026, 3, 2, 20, 1, tzinfo=timezone.utc)
    assert email_client.sent == []


def test_three_declined_reminders_email_the_prescriber_once(make_flow, make_draft, capability, email_client):
    flow = make_flow()

    async def scenario():
        aspirin = await flow.save_medication(make_draft())
        outcomes = [
            await flow.handle_event(capability.action_event("trigger-1", PressActionId.NOT_NOW)) for _ in range(3)
        ]
        await flow.shutdown()
        return aspirin, outcomes, await flow.compliance_for(aspirin.id)

    aspirin, outcomes, record = asyncio.run(scenario())

    assert outcomes == [RouteOutcome.MISSED] * 3
    assert record.missed_count == 0
    assert [(e.to, e.subject) for e in email_client.sent] == [
        ("dr.house@clinic.example", "Missed Dosages Alert - Aspirin")
    ]


def test_pending_confirmation_round_trip_on_android(make_flow, make_draft, capability):
    flow = make_flow()

    async def scenario():
        aspirin = await flow.save_medication(make_draft())
        await flow.handle_event(capability.delivered_event("trigger-1"))
        (pending,) = await flow.pending_confirmations()
        confirmed = await flow.confirm_pending(pending.id)
        return aspirin, confirmed, await flow.pending_confirmations(), await flow.compliance_for(aspirin.id)

    aspirin, confirmed, remaining, record = asyncio.run(scenario())

    assert confirmed is True
    assert remaining == []
    assert len(record.confirmations) == 1
    assert record.confirmations[0].scheduled_time == datetime(2026, 3, 2, 8, 0, tzinfo=timezone.utc)


def test_duplicate_names_are_rejected_case_insensitively(make_flow, make_draft, capability):
    flow = make_flow()

    async def scenario():
        await flow.save_medication(make_draft())
        with pytest.raises(DuplicateMedicationError):
            await flow.save_medication(make_draft(name="ASPIRIN", frequency=1, reminder_times=[time(9, 0)]))
        return await flow.list_medications()

    medications = asyncio.run(scenario())

    assert [m.name for m in medications] == ["Aspirin"]
    assert len(capability.triggers) == 2


def test_denied_permission_stores_nothing(make_flow, make_draft, capability):
    capability.permission_granted = False
    flow = make_flow()

    async def scenario():
        with pytest.raises(ReminderSetupError) as excinfo:
            await flow.save_medication(make_draft())
        return excinfo.value, await flow.list_medications()

    error, medications = asyncio.run(scenario())

    assert str(error) == REMINDER_SETUP_WARNING
    assert medications == []
    assert capability.triggers == {}


def test_disabled_reminders_are_saved_without_triggers(make_flow, make_draft, capability):
    flow = make_flow()

    medication = asyncio.run(flow.save_medication(make_draft(reminder_enabled=False)))

    assert asyncio.run(flow.get_medication(medication.id)) == medication
    assert capability.triggers == {}


def test_storage_failure_rolls_back_scheduled_reminders(capability, email_client, clock, make_draft):
    flow = MedReminderFlow(
        store=DocumentStore(ReadOnlyKeyValueStore()),
        capability=capability,
        email_client=email_client,
        clock=clock,
    )

    with pytest.raises(StorageError):
        asyncio.run(flow.save_medication(make_draft()))

    assert capability.triggers == {}


def test_delete_cancels_every_reminder(make_flow, make_draft, capability):
    flow = make_flow()

    async def scenario():
        aspirin = await flow.save_medication(make_draft())
        ibuprofen = await flow.save_medication(make_draft(name="Ibuprofen", frequency=1, reminder_times=[time(13, 0)]))
        cancelled = await flow.delete_medication(aspirin.id)
        with pytest.raises(KeyError):
            await flow.delete_medication(aspirin.id)
        return ibuprofen, cancelled, await flow.list_medications()

    ibuprofen, cancelled, remaining = asyncio.run(scenario())

    assert cancelled == 2
    assert [m.id for m in remaining] == [ibuprofen.id]
    assert [t.notification.data["medicationId"] for t in capability.triggers.values()] == [ibuprofen.id]


def test_build_flow_applies_settings():
    settings = Settings(platform=Platform.IOS, missed_dose_threshold=3, modal_timeout_seconds=30, timezone="Europe/Berlin")
    store = DocumentStore(InMemoryKeyValueStore())

    flow = build_flow(
        settings,
        store=store,
        capability=InMemoryNotificationCapability(),
        email_client=FakeEmailClient(),
    )

    assert flow.store is store
    assert flow.platform == Platform.IOS
    assert flow.tracker.missed_threshold == 3
    assert flow.modal.timeout_seconds == 30
    assert flow.clock().tzinfo is not None


class FirstSlotFailsCapability(InMemoryNotificationCapability):
    async def create_trigger_notification(self, content, trigger):
        if content.data["reminderIndex"] == "0":
            raise RuntimeError("alarm slot unavailable")
        await asyncio.sleep(0.01)
        return await super().create_trigger_notification(content, trigger)


def test_partial_schedule_failure_leaves_no_reminders_behind(email_client, clock, make_draft):
    capability = FirstSlotFailsCapability()
    flow = MedReminderFlow(
        store=DocumentStore(InMemoryKeyValueStore()),
        capability=capability,
        email_client=email_client,
        clock=clock,
    )

    async def scenario():
        with pytest.raises(ReminderSetupError):
            await flow.save_medication(make_draft(frequency=3, reminder_times=[time(8, 0), time(14, 0), time(20, 0)]))
        remaining = dict(capability.triggers)
        await asyncio.sleep(0.05)
        return remaining, await flow.list_medications()

    remaining, medications = asyncio.run(scenario())

    assert remaining == {}
    assert capability.triggers == {}
    assert medications == []


def test_unreadable_medication_list_is_not_overwritten(capability, email_client, clock, make_draft):
    kv = InMemoryKeyValueStore(entries={MEDICATIONS_KEY: '[{"name": "Aspirin", "dosage": 5'})
    flow = MedReminderFlow(store=DocumentStore(kv), capability=capability, email_client=email_client, clock=clock)

    with pytest.raises(StorageError):
        asyncio.run(flow.save_medication(make_draft(name="Ibuprofen")))

    assert kv.entries[MEDICATIONS_KEY] == '[{"name": "Aspirin", "dosage": 5'
    assert capability.triggers == {}

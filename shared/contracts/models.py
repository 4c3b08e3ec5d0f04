from __future__ import annotations

import re
import uuid
from collections.abc import Mapping
from datetime import date, datetime, time, timezone
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator
from pydantic.alias_generators import to_camel

from .enums import (
    DeliveryStatus,
    NotificationEventType,
    PressActionId,
    RepeatFrequency,
    TriggerType,
)


EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
FREQUENCY_OPTIONS: dict[int, str] = {
    1: "Once Daily",
    2: "Twice Daily",
    3: "Three Times Daily",
    4: "Four Times Daily",
}


def new_record_id() -> str:
    """Time-based unique id for medications and pending confirmations."""
    return uuid.uuid1().hex


def utc_now() -> datetime:
    return datetime.now(tz=timezone.utc)


def is_valid_email(value: str | None) -> bool:
    return bool(value) and EMAIL_PATTERN.match(value) is not None


class ContractModel(BaseModel):
    """Stored and exchanged documents use camelCase keys on the wire."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class Frequency(ContractModel):
    label: str
    times_per_day: int = Field(ge=1, le=4)

    @classmethod
    def from_times_per_day(cls, times_per_day: int) -> "Frequency":
        if times_per_day not in FREQUENCY_OPTIONS:
            raise ValueError(f"unsupported frequency: {times_per_day} times per day")
        return cls(label=FREQUENCY_OPTIONS[times_per_day], times_per_day=times_per_day)


class MedicationRef(ContractModel):
    id: str
    name: str
    dosage: str = ""


class MedicationCreate(ContractModel):
    name: str = Field(min_length=1)
    dosage: str = Field(min_length=1)
    frequency: Frequency
    reminder_times: list[time] = Field(min_length=1)
    prescriber_email: str
    patient_name: str = Field(min_length=1)
    start_date: date = Field(default_factory=date.today)
    reminder_enabled: bool = True
    voice_reminder: bool = True

    @field_validator("name", "dosage", "patient_name", mode="before")
    @classmethod
    def strip_text(cls, value: Any) -> Any:
        return value.strip() if isinstance(value, str) else value

    @field_validator("frequency", mode="before")
    @classmethod
    def coerce_frequency(cls, value: Any) -> Any:
        if isinstance(value, int) and not isinstance(value, bool):
            return Frequency.from_times_per_day(value)
        return value

    @field_validator("prescriber_email")
    @classmethod
    def validate_email(cls, value: str) -> str:
        value = value.strip()
        if not is_valid_email(value):
            raise ValueError("Please enter a valid email address")
        return value

    @field_validator("reminder_times")
    @classmethod
    def truncate_seconds(cls, value: list[time]) -> list[time]:
        return [t.replace(second=0, microsecond=0, tzinfo=None) for t in value]

    @model_validator(mode="after")
    def validate_reminder_slots(self) -> "MedicationCreate":
        if len(self.reminder_times) != self.frequency.times_per_day:
            raise ValueError(
                f"expected {self.frequency.times_per_day} reminder times for "
                f"'{self.frequency.label}', got {len(self.reminder_times)}"
            )
        return self


class Medication(MedicationCreate):
    id: str = Field(default_factory=new_record_id)

    def ref(self) -> MedicationRef:
        return MedicationRef(id=self.id, name=self.name, dosage=self.dosage)


class ReminderPayload(ContractModel):
    """Data attached to every scheduled trigger.

    Values are denormalized from the medication so that an event can be
    routed without looking the medication up again. Notification platforms
    only carry string values, so ``to_data`` stringifies everything.
    """

    medication_id: str = Field(min_length=1)
    prescriber_email: str = Field(min_length=1)
    name: str = ""
    dosage: str = ""
    frequency: str = ""
    reminder_index: int = Field(default=0, ge=0)
    voice_reminder: str = "false"
    slot_time: str | None = None

    @field_validator("voice_reminder", mode="before")
    @classmethod
    def stringify_flag(cls, value: Any) -> Any:
        if isinstance(value, bool):
            return str(value).lower()
        return value

    @property
    def voice_enabled(self) -> bool:
        return self.voice_reminder.strip().lower() == "true"

    @classmethod
    def parse(cls, data: Any) -> "ReminderPayload | None":
        if not isinstance(data, Mapping):
            return None
        try:
            return cls.model_validate(dict(data))
        except ValidationError:
            return None

    def to_data(self) -> dict[str, str]:
        dumped = self.model_dump(by_alias=True, exclude_none=True)
        return {key: str(value) for key, value in dumped.items()}

    def medication_ref(self) -> MedicationRef:
        return MedicationRef(id=self.medication_id, name=self.name, dosage=self.dosage)

    def parsed_slot_time(self) -> time | None:
        if not self.slot_time:
            return None
        try:
            hour, minute = (int(part) for part in self.slot_time.split(":")[:2])
            return time(hour=hour, minute=minute)
        except ValueError:
            return None


class NotificationAction(ContractModel):
    title: str
    press_action_id: PressActionId


class NotificationChannel(ContractModel):
    id: str
    name: str
    importance: str = "high"


class NotificationContent(ContractModel):
    title: str
    body: str
    channel_id: str
    actions: list[NotificationAction] = Field(default_factory=list)
    data: dict[str, str] = Field(default_factory=dict)


class TimestampTrigger(ContractModel):
    type: TriggerType = TriggerType.TIMESTAMP
    timestamp: int = Field(ge=0)
    repeat_frequency: RepeatFrequency | None = RepeatFrequency.DAILY


class TriggerNotification(ContractModel):
    id: str
    notification: NotificationContent
    trigger: TimestampTrigger


class DeliveredNotification(ContractModel):
    id: str | None = None
    data: dict[str, Any] = Field(default_factory=dict)


class PressAction(ContractModel):
    id: str


class EventDetail(ContractModel):
    notification: DeliveredNotification | None = None
    press_action: PressAction | None = None


class NotificationEvent(ContractModel):
    type: NotificationEventType
    detail: EventDetail = Field(default_factory=EventDetail)

    @property
    def payload_data(self) -> dict[str, Any]:
        if self.detail.notification is None:
            return {}
        return self.detail.notification.data

    @property
    def press_action_id(self) -> str | None:
        if self.detail.press_action is None:
            return None
        return self.detail.press_action.id


class ModalRequest(ContractModel):
    medication_id: str
    prescriber_email: str
    medication_name: str = ""
    dosage: str = ""


class ModalState(ContractModel):
    visible: bool = False
    request: ModalRequest | None = None


class PendingConfirmation(ContractModel):
    id: str = Field(default_factory=new_record_id)
    medication_id: str
    medication_name: str = ""
    dosage: str = ""
    scheduled_time: datetime
    created: datetime = Field(default_factory=utc_now)


class ConfirmationEntry(ContractModel):
    timestamp: datetime
    scheduled_time: datetime | None = None
    confirmed: bool = True


class ComplianceRecord(ContractModel):
    missed_count: int = Field(default=0, ge=0)
    last_confirmed: datetime | None = None
    confirmations: list[ConfirmationEntry] = Field(default_factory=list)


class EmailRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    to: str
    subject: str = Field(min_length=1)
    text: str

    @field_validator("to")
    @classmethod
    def validate_recipient(cls, value: str) -> str:
        if not is_valid_email(value):
            raise ValueError("recipient must be an email address")
        return value


class EmailResult(BaseModel):
    status: DeliveryStatus
    reason: str | None = None

    @classmethod
    def delivered(cls) -> "EmailResult":
        return cls(status=DeliveryStatus.DELIVERED)

    @classmethod
    def failed(cls, reason: str) -> "EmailResult":
        return cls(status=DeliveryStatus.FAILED, reason=reason)

    @property
    def ok(self) -> bool:
        return self.status == DeliveryStatus.DELIVERED


class ChatExchange(BaseModel):
    user: str
    assistant: str
    timestamp: datetime = Field(default_factory=utc_now)


class ChatReply(BaseModel):
    response: str
    history: list[ChatExchange] = Field(default_factory=list)
    success: bool
    error: str | None = None

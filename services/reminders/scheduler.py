from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, time, timedelta
from itertools import count
from typing import Iterator, Protocol
from zoneinfo import ZoneInfo

from shared.contracts.enums import NotificationEventType, Platform, PressActionId
from shared.contracts.models import (
    DeliveredNotification,
    EventDetail,
    Medication,
    NotificationAction,
    NotificationChannel,
    NotificationContent,
    NotificationEvent,
    PressAction,
    ReminderPayload,
    TimestampTrigger,
    TriggerNotification,
)


logger = logging.getLogger(__name__)

CHANNEL_ID = "medication-reminders"
CHANNEL_NAME = "Medication Reminders"
REMINDER_TITLE = "Medication Reminder"

Clock = Callable[[], datetime]


def zone_clock(timezone_name: str) -> Clock:
    zone = ZoneInfo(timezone_name)
    return lambda: datetime.now(zone)


def next_fire_time(time_of_day: time, now: datetime) -> datetime:
    """Next daily occurrence of ``time_of_day``; the current minute counts as passed."""
    now = now.replace(second=0, microsecond=0)
    candidate = now.replace(hour=time_of_day.hour, minute=time_of_day.minute)
    if candidate <= now:
        candidate += timedelta(days=1)
    return candidate


class NotificationCapability(Protocol):
    async def request_permission(self) -> bool: ...

    async def create_channel(self, channel: NotificationChannel) -> str: ...

    async def create_trigger_notification(
        self, content: NotificationContent, trigger: TimestampTrigger
    ) -> str: ...

    async def get_trigger_notifications(self) -> list[TriggerNotification]: ...

    async def cancel_notification(self, notification_id: str) -> None: ...


def _trigger_ids() -> Iterator[int]:
    return count(1)


@dataclass
class InMemoryNotificationCapability:
    """Local stand-in for the device notification platform.

    ``delivered_event`` and ``action_event`` build the events the platform
    would emit when a registered trigger fires or one of its actions is
    pressed.
    """

    permission_granted: bool = True
    triggers: dict[str, TriggerNotification] = field(default_factory=dict)
    channels: dict[str, NotificationChannel] = field(default_factory=dict)
    _ids: Iterator[int] = field(default_factory=_trigger_ids, repr=False)

    async def request_permission(self) -> bool:
        return self.permission_granted

    async def create_channel(self, channel: NotificationChannel) -> str:
        self.channels[channel.id] = channel
        return channel.id

    async def create_trigger_notification(
        self, content: NotificationContent, trigger: TimestampTrigger
    ) -> str:
        if not self.permission_granted:
            raise PermissionError("notification permission denied")
        trigger_id = f"trigger-{next(self._ids)}"
        self.triggers[trigger_id] = TriggerNotification(id=trigger_id, notification=content, trigger=trigger)
        return trigger_id

    async def get_trigger_notifications(self) -> list[TriggerNotification]:
        return list(self.triggers.values())

    async def cancel_notification(self, notification_id: str) -> None:
        self.triggers.pop(notification_id, None)

    def delivered_event(self, trigger_id: str) -> NotificationEvent:
        trigger = self.triggers[trigger_id]
        return NotificationEvent(
            type=NotificationEventType.DELIVERED,
            detail=EventDetail(
                notification=DeliveredNotification(id=trigger_id, data=dict(trigger.notification.data)),
            ),
        )

    def action_event(self, trigger_id: str, action: PressActionId) -> NotificationEvent:
        trigger = self.triggers[trigger_id]
        return NotificationEvent(
            type=NotificationEventType.ACTION_PRESS,
            detail=EventDetail(
                notification=DeliveredNotification(id=trigger_id, data=dict(trigger.notification.data)),
                press_action=PressAction(id=action.value),
            ),
        )


class ReminderScheduler:
    def __init__(self, capability: NotificationCapability, clock: Clock) -> None:
        self.capability = capability
        self.clock = clock

    async def initialize(self, platform: Platform) -> bool:
        granted = await self.capability.request_permission()
        if platform == Platform.ANDROID:
            await self.capability.create_channel(
                NotificationChannel(id=CHANNEL_ID, name=CHANNEL_NAME, importance="high")
            )
        if not granted:
            logger.warning("notification permission not granted", extra={"platform": platform.value})
        return granted

    async def schedule(
        self,
        medication: Medication,
        reminder_index: int,
        time_of_day: time,
        prescriber_email: str,
    ) -> str:
        fire_at = next_fire_time(time_of_day, self.clock())
        payload = ReminderPayload(
            medication_id=medication.id,
            prescriber_email=prescriber_email,
            name=medication.name,
            dosage=medication.dosage,
            frequency=medication.frequency.label,
            reminder_index=reminder_index,
            voice_reminder=medication.voice_reminder,
            slot_time=time_of_day.strftime("%H:%M"),
        )
        content = NotificationContent(
            title=REMINDER_TITLE,
            body=f"Time to take {medication.name} - {medication.dosage}",
            channel_id=CHANNEL_ID,
            actions=[
                NotificationAction(title="Confirm", press_action_id=PressActionId.CONFIRM),
                NotificationAction(title="Not Now", press_action_id=PressActionId.NOT_NOW),
            ],
            data=payload.to_data(),
        )
        trigger = TimestampTrigger(timestamp=int(fire_at.timestamp() * 1000))
        trigger_id = await self.capability.create_trigger_notification(content, trigger)
        logger.info(
            "reminder scheduled",
            extra={
                "medication_id": medication.id,
                "reminder_index": reminder_index,
                "trigger_id": trigger_id,
                "fire_at": fire_at.isoformat(),
            },
        )
        return trigger_id

    async def schedule_all(self, medication: Medication) -> list[str]:
        """One daily trigger per reminder time, slot indices in list order.

        Every slot settles before this returns or raises, so a caller that
        cancels after a failure also removes slots that registered late.
        """
        results = await asyncio.gather(
            *(
                self.schedule(medication, index, time_of_day, medication.prescriber_email)
                for index, time_of_day in enumerate(medication.reminder_times)
            ),
            return_exceptions=True,
        )
        failures = [result for result in results if isinstance(result, BaseException)]
        if failures:
            logger.error(
                "reminder slots failed to register",
                extra={"medication_id": medication.id, "failed": len(failures), "slots": len(results)},
            )
            raise failures[0]
        return [result for result in results if isinstance(result, str)]

    async def cancel(self, medication_id: str) -> int:
        """Cancel every trigger of ``medication_id``; failures are logged and skipped."""
        try:
            registered = await self.capability.get_trigger_notifications()
        except Exception:
            logger.exception("could not list scheduled reminders", extra={"medication_id": medication_id})
            return 0

        cancelled = 0
        for trigger in registered:
            if trigger.notification.data.get("medicationId") != medication_id:
                continue
            if not trigger.id:
                logger.error("invalid trigger id for cancellation", extra={"medication_id": medication_id})
                continue
            try:
                await self.capability.cancel_notification(trigger.id)
            except Exception:
                logger.exception(
                    "failed to cancel reminder",
                    extra={"medication_id": medication_id, "trigger_id": trigger.id},
                )
                continue
            cancelled += 1
        return cancelled

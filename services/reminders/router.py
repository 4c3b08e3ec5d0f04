from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from datetime import datetime
from typing import Any

from pydantic import ValidationError

from shared.contracts.enums import ModalAction, NotificationEventType, Platform, PressActionId, RouteOutcome
from shared.contracts.models import ModalRequest, NotificationEvent, ReminderPayload

from services.compliance.ledger import ConfirmationLedger
from services.compliance.tracker import ComplianceTracker
from services.reminders.modal import ModalCallback, ModalController
from services.reminders.speech import SpeechSynthesizer, build_speech_text


logger = logging.getLogger(__name__)


class NotificationEventRouter:
    """Single entry point for notification events, foreground or background.

    | event        | condition           | action                                |
    |--------------|---------------------|---------------------------------------|
    | delivered    | voice flag set      | speak the dosage announcement         |
    | delivered    | iOS                 | modal; confirm resets, timeout misses |
    | delivered    | other platforms     | record a pending confirmation         |
    | action-press | ``confirm``         | reset the missed count                |
    | action-press | ``not_now``         | count a missed dose                   |

    Events whose payload lacks a medication id or prescriber email are
    ignored. ``handle`` never raises.
    """

    def __init__(
        self,
        platform: Platform,
        tracker: ComplianceTracker,
        ledger: ConfirmationLedger,
        modal: ModalController,
        speech: SpeechSynthesizer,
        clock: Callable[[], datetime],
    ) -> None:
        self.platform = platform
        self.tracker = tracker
        self.ledger = ledger
        self.modal = modal
        self.speech = speech
        self.clock = clock

    async def handle(self, event: NotificationEvent | Mapping[str, Any]) -> RouteOutcome:
        if not isinstance(event, NotificationEvent):
            try:
                event = NotificationEvent.model_validate(event)
            except ValidationError:
                logger.warning("malformed notification event ignored")
                return RouteOutcome.IGNORED

        payload = ReminderPayload.parse(event.payload_data)
        if payload is None:
            logger.debug("notification without reminder payload ignored", extra={"event_type": event.type.value})
            return RouteOutcome.IGNORED

        try:
            if event.type == NotificationEventType.DELIVERED:
                return await self._on_delivered(payload)
            return await self._on_action(payload, event.press_action_id)
        except Exception:
            logger.exception(
                "notification event handling failed",
                extra={"event_type": event.type.value, "medication_id": payload.medication_id},
            )
            return RouteOutcome.IGNORED

    async def _on_delivered(self, payload: ReminderPayload) -> RouteOutcome:
        if payload.voice_enabled:
            await self._announce(payload)

        if self.platform == Platform.IOS:
            request = ModalRequest(
                medication_id=payload.medication_id,
                prescriber_email=payload.prescriber_email,
                medication_name=payload.name,
                dosage=payload.dosage,
            )
            self.modal.show(request, self._modal_callback(payload))
            return RouteOutcome.MODAL_SHOWN

        confirmation_id = await self.ledger.add_pending(payload.medication_ref(), self._scheduled_time(payload))
        return RouteOutcome.PENDING_RECORDED if confirmation_id else RouteOutcome.IGNORED

    async def _on_action(self, payload: ReminderPayload, action_id: str | None) -> RouteOutcome:
        if action_id == PressActionId.CONFIRM.value:
            await self.tracker.reset_missed_count(payload.medication_id)
            return RouteOutcome.CONFIRMED
        if action_id == PressActionId.NOT_NOW.value:
            await self.tracker.check_compliance(payload.medication_id, payload.prescriber_email)
            return RouteOutcome.MISSED
        return RouteOutcome.IGNORED

    def _modal_callback(self, payload: ReminderPayload) -> ModalCallback:
        async def on_modal_action(action: ModalAction) -> None:
            if action == ModalAction.CONFIRM:
                await self.tracker.reset_missed_count(payload.medication_id)
            elif action == ModalAction.TIMEOUT:
                await self.tracker.check_compliance(payload.medication_id, payload.prescriber_email)

        return on_modal_action

    async def _announce(self, payload: ReminderPayload) -> None:
        try:
            await self.speech.speak(build_speech_text(payload.name, payload.dosage))
        except Exception:
            logger.exception("voice reminder failed", extra={"medication_id": payload.medication_id})

    def _scheduled_time(self, payload: ReminderPayload) -> datetime:
        now = self.clock()
        slot = payload.parsed_slot_time()
        if slot is None:
            return now
        return now.replace(hour=slot.hour, minute=slot.minute, second=0, microsecond=0)

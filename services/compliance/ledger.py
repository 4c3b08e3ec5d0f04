from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime

from app.db.store import COMPLIANCE_KEY, PENDING_CONFIRMATIONS_KEY, DocumentStore
from shared.contracts.models import ComplianceRecord, ConfirmationEntry, MedicationRef, PendingConfirmation


logger = logging.getLogger(__name__)


class ConfirmationLedger:
    """Fired doses waiting for the user to confirm them by hand."""

    def __init__(self, store: DocumentStore, clock: Callable[[], datetime]) -> None:
        self.store = store
        self.clock = clock

    async def add_pending(self, medication: MedicationRef, scheduled_time: datetime) -> str | None:
        try:
            async with self.store.locked(PENDING_CONFIRMATIONS_KEY):
                pending = await self.store.load_pending(strict=True)
                entry = PendingConfirmation(
                    medication_id=medication.id,
                    medication_name=medication.name,
                    dosage=medication.dosage,
                    scheduled_time=scheduled_time,
                    created=self.clock(),
                )
                pending.append(entry)
                await self.store.save_pending(pending)
        except Exception:
            logger.exception("could not record pending confirmation", extra={"medication_id": medication.id})
            return None

        logger.info(
            "pending confirmation recorded",
            extra={"medication_id": medication.id, "confirmation_id": entry.id},
        )
        return entry.id

    async def confirm(self, confirmation_id: str) -> bool:
        """Resolve a pending dose.

        The compliance document and the pending list are written one after
        the other; a failure between the two leaves the dose confirmed but
        still listed.
        """
        try:
            async with self.store.locked(COMPLIANCE_KEY), self.store.locked(PENDING_CONFIRMATIONS_KEY):
                pending = await self.store.load_pending(strict=True)
                entry = next((p for p in pending if p.id == confirmation_id), None)
                if entry is None:
                    return False

                compliance = await self.store.load_compliance(strict=True)
                record = compliance.setdefault(entry.medication_id, ComplianceRecord())
                now = self.clock()
                record.confirmations.append(
                    ConfirmationEntry(timestamp=now, scheduled_time=entry.scheduled_time, confirmed=True)
                )
                record.last_confirmed = now
                record.missed_count = 0
                await self.store.save_compliance(compliance)

                await self.store.save_pending([p for p in pending if p.id != confirmation_id])
        except Exception:
            logger.exception("confirmation failed", extra={"confirmation_id": confirmation_id})
            return False

        logger.info(
            "dose confirmed",
            extra={"confirmation_id": confirmation_id, "medication_id": entry.medication_id},
        )
        return True

    async def list_pending(self) -> list[PendingConfirmation]:
        return await self.store.load_pending()

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime

from app.db.store import COMPLIANCE_KEY, DocumentStore
from shared.contracts.models import ComplianceRecord

from services.compliance.escalation import EscalationNotifier


logger = logging.getLogger(__name__)

DEFAULT_MISSED_THRESHOLD = 2


class ComplianceTracker:
    """Per-medication missed-dose counter with prescriber escalation.

    Every operation rewrites the whole compliance document, so each
    read-modify-write cycle runs under the document lock. Failures are
    logged and turned into a ``None`` result; nothing propagates to the
    notification pipeline.
    """

    def __init__(
        self,
        store: DocumentStore,
        notifier: EscalationNotifier,
        clock: Callable[[], datetime],
        missed_threshold: int = DEFAULT_MISSED_THRESHOLD,
    ) -> None:
        if missed_threshold < 1:
            raise ValueError("missed_threshold must be >= 1")
        self.store = store
        self.notifier = notifier
        self.clock = clock
        self.missed_threshold = missed_threshold

    async def check_compliance(self, medication_id: str, prescriber_email: str) -> ComplianceRecord | None:
        """Count one missed dose; past the threshold, alert the prescriber and start over."""
        try:
            async with self.store.locked(COMPLIANCE_KEY):
                compliance = await self.store.load_compliance(strict=True)
                medications = await self.store.load_medications()
                medication = next((m for m in medications if m.id == medication_id), None)
                if medication is None:
                    logger.info("missed dose for unknown medication ignored", extra={"medication_id": medication_id})
                    return None

                record = compliance.setdefault(medication_id, ComplianceRecord())
                record.missed_count += 1
                logger.info(
                    "missed dose recorded",
                    extra={"medication_id": medication_id, "missed_count": record.missed_count},
                )

                if record.missed_count > self.missed_threshold:
                    self.notifier.send_missed_dosages_email(medication, prescriber_email, record.missed_count)
                    record.missed_count = 0

                await self.store.save_compliance(compliance)
                return record
        except Exception:
            logger.exception("compliance check failed", extra={"medication_id": medication_id})
            return None

    async def reset_missed_count(self, medication_id: str) -> ComplianceRecord | None:
        try:
            async with self.store.locked(COMPLIANCE_KEY):
                compliance = await self.store.load_compliance(strict=True)
                record = compliance.get(medication_id)
                if record is None:
                    return None
                record.missed_count = 0
                record.last_confirmed = self.clock()
                await self.store.save_compliance(compliance)
                logger.info("missed dose count reset", extra={"medication_id": medication_id})
                return record
        except Exception:
            logger.exception("missed count reset failed", extra={"medication_id": medication_id})
            return None

    async def get_record(self, medication_id: str) -> ComplianceRecord | None:
        compliance = await self.store.load_compliance()
        return compliance.get(medication_id)

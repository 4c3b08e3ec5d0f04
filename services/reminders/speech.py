from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Protocol


logger = logging.getLogger(__name__)

DEFAULT_MEDICATION_NAME = "your medication"

_DOSAGE_PATTERN = re.compile(r"(\d+(?:\.\d+)?)\s*([a-zA-Z]+)")
_UNIT_WORDS = {
    "mg": "milligrams",
    "g": "grams",
    "ml": "milliliters",
    "mcg": "micrograms",
}
# singular, plural
_COUNTED_UNITS = {
    "tablet": ("tablet", "tablets"),
    "tablets": ("tablet", "tablets"),
    "capsule": ("capsule", "capsules"),
    "capsules": ("capsule", "capsules"),
    "pill": ("pill", "pills"),
    "pills": ("pill", "pills"),
}


def _spoken_unit(number: str, unit: str) -> str:
    unit = unit.lower()
    if unit in _UNIT_WORDS:
        return _UNIT_WORDS[unit]
    if unit in _COUNTED_UNITS:
        singular, plural = _COUNTED_UNITS[unit]
        return plural if int(float(number)) > 1 else singular
    return unit


def build_speech_text(name: str | None, dosage: str | None) -> str:
    medication = name or DEFAULT_MEDICATION_NAME
    dosage = (dosage or "").strip()

    match = _DOSAGE_PATTERN.search(dosage)
    if match:
        number, unit = match.group(1), match.group(2)
        return f"Time to take {number} {_spoken_unit(number, unit)} of {medication}"
    if dosage:
        return f"Time to take {dosage} of {medication}"
    return f"Time to take {medication}"


class SpeechSynthesizer(Protocol):
    async def speak(self, text: str) -> None: ...


@dataclass
class RecordingSpeechSynthesizer:
    """Keeps announcements instead of playing them; used where no audio device exists."""

    spoken: list[str] = field(default_factory=list)

    async def speak(self, text: str) -> None:
        logger.info("voice reminder", extra={"speech_text": text})
        self.spoken.append(text)

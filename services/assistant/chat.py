from __future__ import annotations

import logging
from collections.abc import Sequence
from typing import Protocol

import httpx
from openai import AsyncOpenAI

from app.db.store import CONVERSATION_HISTORY_KEY, DocumentStore, StorageError
from shared.contracts.models import ChatExchange, ChatReply, Medication


logger = logging.getLogger(__name__)

DEFAULT_MAX_HISTORY = 20
SYSTEM_PROMPT = (
    "You are a medical assistant answering questions about medications, their "
    "timing and interactions. Be clear when the patient should contact a "
    "healthcare provider and never replace professional medical advice."
)
FALLBACK_RESPONSE = (
    "I'm having trouble reaching the assistant right now. Please try again in a "
    "moment, or contact your healthcare provider directly if your question is urgent."
)
EMERGENCY_FALLBACK_RESPONSE = (
    "If you are experiencing severe symptoms, please call emergency services immediately or go to "
    "the nearest emergency room. This assistant cannot provide emergency medical advice."
)
SIDE_EFFECTS_FALLBACK_RESPONSE = (
    "I couldn't analyze those side effects right now. If you are experiencing concerning symptoms, "
    "please contact your healthcare provider immediately."
)
NO_MEDICATIONS_CONTEXT = "No medications currently recorded."


class AssistantUnavailableError(RuntimeError):
    pass


class ChatCompletionClient(Protocol):
    async def complete(self, messages: list[dict[str, str]]) -> str: ...


class OpenAIChatClient:
    """Chat completions through the OpenAI SDK; the SDK client is created on first use."""

    def __init__(
        self,
        api_key: str | None,
        model: str = "gpt-4o",
        base_url: str | None = None,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.api_key = api_key
        self.model = model
        self.base_url = base_url
        self.timeout = timeout
        self.transport = transport
        self._client: AsyncOpenAI | None = None

    def _get_client(self) -> AsyncOpenAI:
        if not self.api_key:
            raise AssistantUnavailableError("OPENAI_API_KEY is not configured")
        if self._client is None:
            http_client = httpx.AsyncClient(transport=self.transport) if self.transport is not None else None
            self._client = AsyncOpenAI(
                api_key=self.api_key,
                base_url=self.base_url,
                timeout=self.timeout,
                max_retries=0,
                http_client=http_client,
            )
        return self._client

    async def complete(self, messages: list[dict[str, str]]) -> str:
        client = self._get_client()
        completion = await client.chat.completions.create(
            model=self.model,
            messages=messages,  # type: ignore[arg-type]
            max_tokens=1000,
            temperature=0.7,
            presence_penalty=0.1,
            frequency_penalty=0.1,
        )
        return completion.choices[0].message.content or ""


def format_medication_context(medications: Sequence[Medication]) -> str:
    if not medications:
        return NO_MEDICATIONS_CONTEXT
    lines = []
    for med in medications:
        times = ", ".join(t.strftime("%H:%M") for t in med.reminder_times)
        lines.append(
            f"Name: {med.name}, Dosage: {med.dosage}, Frequency: {med.frequency.label}, Times: {times}"
        )
    return "\n".join(lines)


def _medication_listing(medications: Sequence[Medication], with_frequency: bool = False) -> str:
    entries = []
    for med in medications:
        entry = f"{med.name or 'Unknown'} ({med.dosage or 'No dosage specified'})"
        if with_frequency:
            entry += f" - {med.frequency.label}"
        entries.append(entry)
    return ", ".join(entries)


class MedicalAssistant:
    """Chat front-end that keeps the last ``max_history`` exchanges."""

    def __init__(
        self,
        store: DocumentStore,
        client: ChatCompletionClient,
        max_history: int = DEFAULT_MAX_HISTORY,
    ) -> None:
        self.store = store
        self.client = client
        self.max_history = max_history

    async def chat(self, message: str, medications: Sequence[Medication] = ()) -> ChatReply:
        history = await self.store.load_history()
        messages = [
            {
                "role": "system",
                "content": f"{SYSTEM_PROMPT}\n\nCurrent Patient Medications:\n{format_medication_context(medications)}",
            }
        ]
        for exchange in history:
            messages.append({"role": "user", "content": exchange.user})
            messages.append({"role": "assistant", "content": exchange.assistant})
        messages.append({"role": "user", "content": message})

        try:
            answer = await self.client.complete(messages)
        except Exception as exc:
            logger.exception("assistant completion failed")
            return ChatReply(response=FALLBACK_RESPONSE, history=history, success=False, error=str(exc))

        exchange = ChatExchange(user=message, assistant=answer)
        async with self.store.locked(CONVERSATION_HISTORY_KEY):
            try:
                history = await self.store.load_history(strict=True)
            except StorageError:
                logger.exception("conversation history unreadable; new exchange not persisted")
                return ChatReply(response=answer, history=[*history, exchange][-self.max_history :], success=True)
            history = [*history, exchange][-self.max_history :]
            try:
                await self.store.save_history(history)
            except StorageError:
                logger.exception("could not persist conversation history")

        return ChatReply(response=answer, history=history, success=True)

    async def ask_medication_question(self, question: str, medications: Sequence[Medication] = ()) -> ChatReply:
        if not question or not question.strip():
            return ChatReply(response="Please provide a valid question about your medications.", success=False)
        return await self.chat(question.strip(), medications)

    async def analyze_interactions(self, medications: Sequence[Medication]) -> ChatReply:
        if len(medications) < 2:
            return ChatReply(
                response="Please provide at least two medications to analyze interactions.",
                success=False,
            )
        return await self.chat(
            "Please analyze potential drug interactions between these medications: "
            f"{_medication_listing(medications)}. Include information about timing, contraindications, "
            "and any recommendations for safe administration.",
            medications,
        )

    async def get_personalized_insights(self, medications: Sequence[Medication]) -> ChatReply:
        if not medications:
            return ChatReply(
                response="Please provide at least one medication to get personalized insights.",
                success=False,
            )
        return await self.chat(
            "Please provide personalized insights and recommendations for managing these medications: "
            f"{_medication_listing(medications)}. Include timing advice, lifestyle recommendations, "
            "monitoring suggestions, and any potential side effects to watch for.",
            medications,
        )

    async def get_health_advice(self, topic: str, medications: Sequence[Medication] = ()) -> ChatReply:
        if not topic or not topic.strip():
            return ChatReply(response="Please provide a health topic to get advice about.", success=False)
        return await self.chat(
            f"Please provide comprehensive health and lifestyle advice about: {topic.strip()}. Include "
            "practical tips, evidence-based recommendations, and how this relates to medication "
            "management if applicable.",
            medications,
        )

    async def assess_emergency(self, symptoms: str, medications: Sequence[Medication] = ()) -> ChatReply:
        """Triage symptoms; any failure answers with the emergency-services instruction."""
        if not symptoms or not symptoms.strip():
            return ChatReply(response=EMERGENCY_FALLBACK_RESPONSE, success=False)
        reply = await self.chat(
            f"Please assess these symptoms and determine if immediate medical attention is needed: "
            f"{symptoms.strip()}. Consider the patient's current medications and provide clear guidance "
            "on whether to seek emergency care, urgent care, or if this can wait for a regular appointment.",
            medications,
        )
        if not reply.success:
            return reply.model_copy(update={"response": EMERGENCY_FALLBACK_RESPONSE})
        return reply

    async def optimize_medication_schedule(self, medications: Sequence[Medication]) -> ChatReply:
        if not medications:
            return ChatReply(response="Please provide your medications to optimize your schedule.", success=False)
        return await self.chat(
            "Please help optimize my medication schedule for these medications: "
            f"{_medication_listing(medications, with_frequency=True)}. Consider timing, food interactions, "
            "side effects, and provide a practical daily schedule that minimizes conflicts and maximizes "
            "effectiveness.",
            medications,
        )

    async def monitor_side_effects(
        self, medication: str, symptoms: str, medications: Sequence[Medication] = ()
    ) -> ChatReply:
        if not medication or not medication.strip() or not symptoms or not symptoms.strip():
            return ChatReply(
                response="Please name the medication and describe the symptoms you are experiencing.",
                success=False,
            )
        reply = await self.chat(
            f"I'm taking {medication.strip()} and experiencing these symptoms: {symptoms.strip()}. "
            "Are these likely side effects of the medication? Should I be concerned? What should I do?",
            medications,
        )
        if not reply.success:
            return reply.model_copy(update={"response": SIDE_EFFECTS_FALLBACK_RESPONSE})
        return reply

    async def get_history(self) -> list[ChatExchange]:
        return await self.store.load_history()

    async def clear_history(self) -> bool:
        try:
            await self.store.remove(CONVERSATION_HISTORY_KEY)
        except StorageError:
            logger.exception("could not clear conversation history")
            return False
        return True

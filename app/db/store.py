from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any, Protocol, TypeVar

from pydantic import TypeAdapter, ValidationError
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from shared.contracts.models import ChatExchange, ComplianceRecord, Medication, PendingConfirmation

from .models import Base, KeyValueEntry


logger = logging.getLogger(__name__)

MEDICATIONS_KEY = "medications"
COMPLIANCE_KEY = "medicationCompliance"
PENDING_CONFIRMATIONS_KEY = "pendingConfirmations"
CONVERSATION_HISTORY_KEY = "medical_assistant_conversation_history"

T = TypeVar("T")

_MEDICATIONS = TypeAdapter(list[Medication])
_COMPLIANCE = TypeAdapter(dict[str, ComplianceRecord])
_PENDING = TypeAdapter(list[PendingConfirmation])
_HISTORY = TypeAdapter(list[ChatExchange])


class StorageError(RuntimeError):
    """A document could not be written or removed."""


class KeyValueStore(Protocol):
    async def get(self, key: str) -> str | None: ...

    async def set(self, key: str, value: str) -> None: ...

    async def remove(self, key: str) -> None: ...


@dataclass
class InMemoryKeyValueStore:
    entries: dict[str, str] = field(default_factory=dict)

    async def get(self, key: str) -> str | None:
        return self.entries.get(key)

    async def set(self, key: str, value: str) -> None:
        self.entries[key] = value

    async def remove(self, key: str) -> None:
        self.entries.pop(key, None)


def create_store_engine(url: str) -> Engine:
    if url.startswith("sqlite"):
        kwargs: dict[str, Any] = {"connect_args": {"check_same_thread": False}}
        if url in {"sqlite://", "sqlite:///:memory:"}:
            kwargs["poolclass"] = StaticPool
        return create_engine(url, **kwargs)
    return create_engine(url, pool_pre_ping=True)


class SqlKeyValueStore:
    """Key-value store backed by the ``kv_entries`` table.

    Sessions are synchronous; each call runs in a worker thread so the event
    loop is never blocked on the database.
    """

    def __init__(self, engine: Engine) -> None:
        self.engine = engine
        self._sessions = sessionmaker(bind=engine, expire_on_commit=False)

    def create_schema(self) -> None:
        Base.metadata.create_all(self.engine)

    async def get(self, key: str) -> str | None:
        return await asyncio.to_thread(self._get, key)

    async def set(self, key: str, value: str) -> None:
        await asyncio.to_thread(self._set, key, value)

    async def remove(self, key: str) -> None:
        await asyncio.to_thread(self._remove, key)

    def _get(self, key: str) -> str | None:
        with self._sessions() as session:
            entry = session.get(KeyValueEntry, key)
            return entry.value if entry is not None else None

    def _set(self, key: str, value: str) -> None:
        with self._sessions.begin() as session:
            entry = session.get(KeyValueEntry, key)
            if entry is None:
                session.add(KeyValueEntry(key=key, value=value))
            else:
                entry.value = value

    def _remove(self, key: str) -> None:
        with self._sessions.begin() as session:
            entry = session.get(KeyValueEntry, key)
            if entry is not None:
                session.delete(entry)


class KeyedLocks:
    """One asyncio lock per key, created on first use."""

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}

    def lock(self, key: str) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        return lock


class DocumentStore:
    """Typed access to the JSON documents kept in a key-value store.

    Plain reads never fail: a missing, unreadable or corrupt document is
    logged and replaced by its empty default. Writes raise ``StorageError``.
    Read-modify-write cycles load with ``strict=True`` so a corrupt document
    raises ``StorageError`` instead of being overwritten by an empty one.

    Callers doing read-modify-write on a document hold ``locked(key)`` for
    the whole cycle; without it two flows touching the same document would
    silently overwrite each other.
    """

    def __init__(self, kv: KeyValueStore) -> None:
        self.kv = kv
        self.locks = KeyedLocks()

    def locked(self, key: str) -> asyncio.Lock:
        return self.locks.lock(key)

    async def load_medications(self, *, strict: bool = False) -> list[Medication]:
        return await self._load(MEDICATIONS_KEY, _MEDICATIONS, list, strict)

    async def save_medications(self, medications: list[Medication]) -> None:
        await self._save(MEDICATIONS_KEY, _MEDICATIONS, medications)

    async def load_compliance(self, *, strict: bool = False) -> dict[str, ComplianceRecord]:
        return await self._load(COMPLIANCE_KEY, _COMPLIANCE, dict, strict)

    async def save_compliance(self, compliance: dict[str, ComplianceRecord]) -> None:
        await self._save(COMPLIANCE_KEY, _COMPLIANCE, compliance)

    async def load_pending(self, *, strict: bool = False) -> list[PendingConfirmation]:
        return await self._load(PENDING_CONFIRMATIONS_KEY, _PENDING, list, strict)

    async def save_pending(self, pending: list[PendingConfirmation]) -> None:
        await self._save(PENDING_CONFIRMATIONS_KEY, _PENDING, pending)

    async def load_history(self, *, strict: bool = False) -> list[ChatExchange]:
        return await self._load(CONVERSATION_HISTORY_KEY, _HISTORY, list, strict)

    async def save_history(self, history: list[ChatExchange]) -> None:
        await self._save(CONVERSATION_HISTORY_KEY, _HISTORY, history)

    async def remove(self, key: str) -> None:
        try:
            await self.kv.remove(key)
        except Exception as exc:
            raise StorageError(f"failed to remove '{key}'") from exc

    async def _load(self, key: str, adapter: TypeAdapter[T], default: Callable[[], T], strict: bool) -> T:
        try:
            raw = await self.kv.get(key)
        except Exception as exc:
            logger.exception("storage read failed", extra={"storage_key": key})
            if strict:
                raise StorageError(f"failed to read '{key}'") from exc
            return default()
        if raw is None:
            return default()
        try:
            return adapter.validate_json(raw)
        except ValidationError as exc:
            logger.warning(
                "unreadable document",
                extra={"storage_key": key, "errors": exc.error_count(), "strict": strict},
            )
            if strict:
                raise StorageError(f"document '{key}' is unreadable") from exc
            return default()

    async def _save(self, key: str, adapter: TypeAdapter[T], value: T) -> None:
        try:
            await self.kv.set(key, adapter.dump_json(value, by_alias=True).decode("utf-8"))
        except Exception as exc:
            raise StorageError(f"failed to write '{key}'") from exc

"""Usage ledger: one record per provider invocation or gate rejection.

Defines the UsageLedger ABC and two implementations:
- JsonFileUsageLedger: JSON list on disk, rewritten atomically on every
  append (temp file + os.replace) under an ``asyncio.Lock``
- InMemoryUsageLedger: list-backed, for tests and ``memory_only`` mode

Analytics are always computed from these records; nothing else is counted.
"""

from __future__ import annotations

import asyncio
import json
import os
from abc import ABC, abstractmethod
from datetime import UTC, datetime
from pathlib import Path

import structlog
from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

from llm_fossil.core.errors import ErrorKind

log = structlog.get_logger(__name__)


def _utcnow() -> datetime:
    return datetime.now(UTC)


class UsageRecord(BaseModel):
    """Immutable usage entry.

    Attributes:
        timestamp: When the attempt finished (UTC)
        call_id: Correlates every record produced by one ``LLMService.call``
        fingerprint: Request fingerprint
        purpose: Call purpose label
        context: Call origin label
        provider: Provider name, ``fallback`` for gate rejections and
            ``fossil-cache`` for replays
        model: Model identifier, if known
        attempt: 1-based invocation number within the call
        success: Whether this record produced usable provider output
        error_kind: Failure class when unsuccessful
    """

    model_config = ConfigDict(frozen=True)

    timestamp: datetime = Field(default_factory=_utcnow)
    call_id: str
    fingerprint: str
    purpose: str
    context: str
    provider: str
    model: str = ""
    attempt: int = Field(default=1, ge=0)
    input_tokens: int = Field(default=0, ge=0)
    output_tokens: int = Field(default=0, ge=0)
    total_tokens: int = Field(default=0, ge=0)
    cost: float = Field(default=0.0, ge=0.0)
    duration_ms: float = Field(default=0.0, ge=0.0)
    success: bool
    value_score: float | None = None
    error_kind: ErrorKind | None = None
    error_message: str | None = None


_RECORDS = TypeAdapter(list[UsageRecord])


class UsageLedger(ABC):
    """Append-only store of UsageRecords tied to the service lifetime."""

    async def open(self) -> None:
        """Prepare the ledger for appends."""

    @abstractmethod
    async def append(self, record: UsageRecord) -> None:
        """Add one record."""

    @abstractmethod
    async def records(self) -> list[UsageRecord]:
        """Return all records in append order."""

    async def flush(self) -> None:
        """Persist anything buffered."""

    async def close(self) -> None:
        await self.flush()


class InMemoryUsageLedger(UsageLedger):
    def __init__(self) -> None:
        self._records: list[UsageRecord] = []

    async def append(self, record: UsageRecord) -> None:
        self._records.append(record)

    async def records(self) -> list[UsageRecord]:
        return list(self._records)


class JsonFileUsageLedger(UsageLedger):
    """Usage log persisted as a single JSON list.

    A log that cannot be parsed is moved aside to ``<path>.corrupt`` and a
    fresh log is started, so one bad write never blocks new calls.

    A failed write is logged and the record stays in memory; the next
    successful append or ``flush()`` rewrites the whole log, including it.
    """

    def __init__(self, path: str | Path) -> None:
        self._path = Path(path)
        self._records: list[UsageRecord] = []
        self._lock = asyncio.Lock()
        self._opened = False

    @property
    def path(self) -> Path:
        return self._path

    async def open(self) -> None:
        async with self._lock:
            if self._opened:
                return
            self._records = await asyncio.to_thread(self._load)
            self._opened = True
            log.info("usage_ledger.opened", path=str(self._path), records=len(self._records))

    async def append(self, record: UsageRecord) -> None:
        if not self._opened:
            await self.open()
        async with self._lock:
            self._records.append(record)
            await self._persist()

    async def records(self) -> list[UsageRecord]:
        if not self._opened:
            await self.open()
        return list(self._records)

    async def flush(self) -> None:
        if not self._opened:
            return
        async with self._lock:
            await self._persist()

    async def _persist(self) -> None:
        try:
            await asyncio.to_thread(self._write, list(self._records))
        except OSError:
            log.exception(
                "usage_ledger.write_failed",
                path=str(self._path),
                pending=len(self._records),
            )

    def _load(self) -> list[UsageRecord]:
        if not self._path.exists():
            return []
        try:
            return _RECORDS.validate_json(self._path.read_bytes())
        except ValidationError as exc:
            corrupt = self._path.with_name(self._path.name + ".corrupt")
            os.replace(self._path, corrupt)
            log.warning(
                "usage_ledger.corrupt_log_moved",
                path=str(self._path),
                moved_to=str(corrupt),
                error=str(exc)[:300],
            )
            return []

    def _write(self, records: list[UsageRecord]) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        payload = [record.model_dump(mode="json") for record in records]
        tmp = self._path.with_name(f".{self._path.name}.tmp")
        tmp.write_text(json.dumps(payload, indent=2), encoding="utf-8")
        os.replace(tmp, self._path)

"""Fossil storage backends.

Defines the FossilStore ABC and two concrete implementations:
- FileFossilStore: one JSON file per fossil under ``entries/`` plus an
  ``index.json`` summary, written atomically (temp file + os.replace)
- InMemoryFossilStore: dict-based, for tests and ``memory_only`` mode

Stores are dumb persistence. Dedup, locking and versioning live in
FossilLedger.
"""

from __future__ import annotations

import asyncio
import json
import os
from abc import ABC, abstractmethod
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import structlog
from pydantic import ValidationError

from llm_fossil.fossils.models import Fossil

log = structlog.get_logger(__name__)

INDEX_VERSION = "1.0.0"


class FossilStore(ABC):
    """Abstract interface all fossil stores must implement."""

    @abstractmethod
    async def load(self) -> list[Fossil]:
        """Return every persisted fossil."""

    @abstractmethod
    async def save(self, fossil: Fossil) -> None:
        """Persist ``fossil``, replacing any stored record with the same id."""


class InMemoryFossilStore(FossilStore):
    def __init__(self) -> None:
        self._fossils: dict[str, Fossil] = {}

    async def load(self) -> list[Fossil]:
        return [fossil.model_copy(deep=True) for fossil in self._fossils.values()]

    async def save(self, fossil: Fossil) -> None:
        self._fossils[fossil.id] = fossil.model_copy(deep=True)


class FileFossilStore(FossilStore):
    """Directory-backed store.

    Layout::

        <root>/index.json          summary of every entry, keyed by id
        <root>/entries/<id>.json   full fossil including version history
    """

    def __init__(self, root: str | Path) -> None:
        self._root = Path(root)
        self._entries_dir = self._root / "entries"
        self._index_file = self._root / "index.json"
        self._lock = asyncio.Lock()

    async def load(self) -> list[Fossil]:
        return await asyncio.to_thread(self._load_sync)

    async def save(self, fossil: Fossil) -> None:
        async with self._lock:
            await asyncio.to_thread(self._save_sync, fossil)

    def _load_sync(self) -> list[Fossil]:
        if not self._entries_dir.is_dir():
            return []

        fossils: list[Fossil] = []
        for path in sorted(self._entries_dir.glob("*.json")):
            try:
                fossils.append(Fossil.model_validate_json(path.read_text(encoding="utf-8")))
            except (OSError, ValidationError) as exc:
                log.warning("fossil_store.entry_unreadable", path=str(path), error=str(exc))
        fossils.sort(key=lambda fossil: fossil.created_at)
        log.debug("fossil_store.loaded", root=str(self._root), count=len(fossils))
        return fossils

    def _save_sync(self, fossil: Fossil) -> None:
        self._entries_dir.mkdir(parents=True, exist_ok=True)
        _atomic_write(
            self._entries_dir / f"{fossil.id}.json",
            fossil.model_dump_json(indent=2),
        )

        index = self._read_index()
        index["entries"][fossil.id] = {
            "type": fossil.type,
            "title": fossil.title,
            "fingerprint": fossil.fingerprint,
            "tags": fossil.tags,
            "source": fossil.source.value,
            "version": fossil.version,
            "createdAt": fossil.created_at.isoformat(),
            "updatedAt": fossil.updated_at.isoformat(),
        }
        index["lastUpdated"] = datetime.now(UTC).isoformat()
        _atomic_write(self._index_file, json.dumps(index, indent=2))

    def _read_index(self) -> dict[str, Any]:
        if self._index_file.exists():
            try:
                index = json.loads(self._index_file.read_text(encoding="utf-8"))
                if isinstance(index, dict) and isinstance(index.get("entries"), dict):
                    return index
            except (OSError, json.JSONDecodeError) as exc:
                log.warning("fossil_store.index_rebuilt", error=str(exc))
        return {"entries": {}, "version": INDEX_VERSION, "lastUpdated": None}


def _atomic_write(path: Path, text: str) -> None:
    tmp = path.with_name(f".{path.name}.tmp")
    tmp.write_text(text, encoding="utf-8")
    os.replace(tmp, path)

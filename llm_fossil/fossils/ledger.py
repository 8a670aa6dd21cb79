"""Content-addressed, deduplicating fossil ledger.

The FossilLedger keeps every fossil in memory (loaded from its store on
first use) with two lookup indexes:
- (type, title) → id, the dedup key used by ``find_or_create``
- fingerprint → id, for exact content lookups

``find_or_create`` wraps its check-then-create sequence in a per-key
``asyncio.Lock``, so concurrent callers offering the same (type, title)
create at most one fossil. Fossils are never overwritten silently: updates
are explicit, bump ``version`` and keep the previous state in ``history``.
"""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime
from typing import Any

import structlog

from llm_fossil.core.errors import LLMFossilError
from llm_fossil.fossils.fingerprint import fingerprint
from llm_fossil.fossils.models import Fossil, FossilEntry, FossilQuery, FossilResult
from llm_fossil.fossils.store import FossilStore, InMemoryFossilStore

log = structlog.get_logger(__name__)

# Fields an explicit update may change; type and title form the identity key.
UPDATABLE_FIELDS = frozenset({"content", "tags", "metadata", "source"})

_Key = tuple[str, str]


class FossilNotFoundError(LLMFossilError, KeyError):
    """Raised when an update targets an unknown fossil id."""


class FossilLedger:
    """Deduplicating fossil registry on top of a FossilStore."""

    def __init__(self, store: FossilStore | None = None) -> None:
        self._store = store or InMemoryFossilStore()
        self._fossils: dict[str, Fossil] = {}
        self._by_key: dict[_Key, str] = {}
        self._by_fingerprint: dict[str, str] = {}
        self._key_locks: dict[_Key, asyncio.Lock] = {}
        self._load_lock = asyncio.Lock()
        self._loaded = False

    async def open(self) -> None:
        """Load persisted fossils. Called implicitly on first use."""
        async with self._load_lock:
            if self._loaded:
                return
            for fossil in await self._store.load():
                self._index(fossil)
            self._loaded = True
            log.info("fossil_ledger.opened", count=len(self._fossils))

    async def find_or_create(
        self,
        entry: FossilEntry,
        force_update: bool = False,
    ) -> FossilResult:
        """Return the fossil for ``entry``'s (type, title), creating it if absent.

        Args:
            entry: Candidate content
            force_update: When the key already exists, replace its content
                with an explicit version-incremented update instead of
                returning the stored fossil unchanged

        Returns:
            FossilResult; ``deduplicated`` is True when an existing fossil
            was returned as-is
        """
        await self.open()
        key = (entry.type, entry.title)

        async with self._lock_for(key):
            existing_id = self._by_key.get(key)
            if existing_id is not None:
                existing = self._fossils[existing_id]
                if force_update:
                    updated = await self._apply_update(
                        existing,
                        {
                            "content": entry.content,
                            "tags": entry.tags,
                            "metadata": entry.metadata,
                            "source": entry.source,
                        },
                    )
                    return FossilResult(fossil=updated.model_copy(deep=True), deduplicated=False)

                log.info(
                    "fossil_ledger.deduplicated",
                    fossil_id=existing.id,
                    type=entry.type,
                    title=entry.title,
                )
                return FossilResult(fossil=existing.model_copy(deep=True), deduplicated=True)

            fp = fingerprint(entry.content, entry.type, entry.title)
            fossil = Fossil(id=self._new_id(fp), fingerprint=fp, **entry.model_dump())
            await self._store.save(fossil)
            self._index(fossil)

            log.info(
                "fossil_ledger.created",
                fossil_id=fossil.id,
                fingerprint=fp,
                type=fossil.type,
            )
            return FossilResult(fossil=fossil.model_copy(deep=True), deduplicated=False)

    async def get(self, fossil_id: str) -> Fossil | None:
        await self.open()
        fossil = self._fossils.get(fossil_id)
        return fossil.model_copy(deep=True) if fossil else None

    async def find(self, type: str, title: str) -> Fossil | None:
        """Exact (type, title) lookup."""
        await self.open()
        fossil_id = self._by_key.get((type, title))
        return await self.get(fossil_id) if fossil_id else None

    async def find_by_fingerprint(self, fp: str) -> Fossil | None:
        await self.open()
        fossil_id = self._by_fingerprint.get(fp)
        return await self.get(fossil_id) if fossil_id else None

    async def update(self, fossil_id: str, **changes: Any) -> Fossil:
        """Explicitly update a fossil, bumping its version.

        Only ``content``, ``tags``, ``metadata`` and ``source`` may change.

        Raises:
            FossilNotFoundError: If no fossil has this id
            ValueError: If a non-updatable field is passed
        """
        unknown = set(changes) - UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Cannot update fossil fields: {sorted(unknown)}")

        await self.open()
        fossil = self._fossils.get(fossil_id)
        if fossil is None:
            raise FossilNotFoundError(fossil_id)

        async with self._lock_for((fossil.type, fossil.title)):
            updated = await self._apply_update(self._fossils[fossil_id], changes)
        return updated.model_copy(deep=True)

    async def query(self, query: FossilQuery | None = None) -> list[Fossil]:
        """List fossils matching ``query`` in creation order, paginated."""
        await self.open()
        query = query or FossilQuery()
        matching = [fossil for fossil in self._fossils.values() if query.matches(fossil)]
        page = matching[query.offset : query.offset + query.limit]
        return [fossil.model_copy(deep=True) for fossil in page]

    def __len__(self) -> int:
        return len(self._fossils)

    async def _apply_update(self, fossil: Fossil, changes: dict[str, Any]) -> Fossil:
        data = fossil.model_dump()
        data.update(changes)
        data["history"] = [*fossil.history, fossil.snapshot()]
        data["version"] = fossil.version + 1
        data["updated_at"] = datetime.now(UTC)
        data["fingerprint"] = fingerprint(data["content"], fossil.type, fossil.title)
        updated = Fossil.model_validate(data)

        await self._store.save(updated)
        if self._by_fingerprint.get(fossil.fingerprint) == fossil.id:
            del self._by_fingerprint[fossil.fingerprint]
        self._index(updated)

        log.info(
            "fossil_ledger.updated",
            fossil_id=updated.id,
            version=updated.version,
            fingerprint=updated.fingerprint,
        )
        return updated

    def _index(self, fossil: Fossil) -> None:
        self._fossils[fossil.id] = fossil
        self._by_key[(fossil.type, fossil.title)] = fossil.id
        self._by_fingerprint.setdefault(fossil.fingerprint, fossil.id)

    def _lock_for(self, key: _Key) -> asyncio.Lock:
        return self._key_locks.setdefault(key, asyncio.Lock())

    def _new_id(self, fp: str) -> str:
        candidate = f"fossil_{fp}"
        suffix = 1
        while candidate in self._fossils:
            suffix += 1
            candidate = f"fossil_{fp}_{suffix}"
        return candidate

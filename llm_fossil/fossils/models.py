"""Pydantic models for fossils and fossil queries."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field


def _utcnow() -> datetime:
    return datetime.now(UTC)


class FossilSource(StrEnum):
    """Where a fossil's content came from."""

    LLM = "llm"
    TERMINAL = "terminal"
    API = "api"
    MANUAL = "manual"
    AUTOMATED = "automated"


class FossilEntry(BaseModel):
    """Candidate content offered to the ledger (no identity yet)."""

    type: str = Field(min_length=1)
    title: str = Field(min_length=1)
    content: str
    tags: list[str] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)
    source: FossilSource = FossilSource.MANUAL


class FossilVersion(BaseModel):
    """Frozen snapshot of a superseded fossil version."""

    version: int
    fingerprint: str
    title: str
    content: str
    tags: list[str]
    metadata: dict[str, Any]
    source: FossilSource
    updated_at: datetime


class Fossil(FossilEntry):
    """Persisted, content-addressed record.

    Fossils are never overwritten in place: every update bumps ``version``
    and appends the prior state to ``history``.
    """

    id: str
    fingerprint: str
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)
    version: int = Field(default=1, ge=1)
    history: list[FossilVersion] = Field(default_factory=list)

    def snapshot(self) -> FossilVersion:
        return FossilVersion(
            version=self.version,
            fingerprint=self.fingerprint,
            title=self.title,
            content=self.content,
            tags=list(self.tags),
            metadata=dict(self.metadata),
            source=self.source,
            updated_at=self.updated_at,
        )


class FossilQuery(BaseModel):
    """Filters for listing fossils.

    Tags match when the fossil carries any of them. ``search`` is a
    case-insensitive substring match over title, content and tags.
    """

    search: str | None = None
    type: str | None = None
    tags: list[str] | None = None
    source: FossilSource | None = None
    created_after: datetime | None = None
    created_before: datetime | None = None
    limit: int = Field(default=100, ge=1, le=1000)
    offset: int = Field(default=0, ge=0)

    def matches(self, fossil: Fossil) -> bool:
        if self.type is not None and fossil.type != self.type:
            return False
        if self.tags and not any(tag in fossil.tags for tag in self.tags):
            return False
        if self.source is not None and fossil.source != self.source:
            return False
        if self.created_after is not None and fossil.created_at < self.created_after:
            return False
        if self.created_before is not None and fossil.created_at > self.created_before:
            return False
        if self.search:
            needle = self.search.lower()
            return (
                needle in fossil.title.lower()
                or needle in fossil.content.lower()
                or any(needle in tag.lower() for tag in fossil.tags)
            )
        return True


@dataclass(frozen=True)
class FossilResult:
    """Outcome of ``FossilLedger.find_or_create``."""

    fossil: Fossil
    deduplicated: bool

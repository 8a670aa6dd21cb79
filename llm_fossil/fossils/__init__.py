"""Content-addressed fossil ledger: fingerprints, models and storage."""

from __future__ import annotations

from llm_fossil.fossils.fingerprint import canonical_call_content, fingerprint
from llm_fossil.fossils.ledger import FossilLedger, FossilNotFoundError
from llm_fossil.fossils.models import (
    Fossil,
    FossilEntry,
    FossilQuery,
    FossilResult,
    FossilSource,
    FossilVersion,
)
from llm_fossil.fossils.store import FileFossilStore, FossilStore, InMemoryFossilStore

__all__ = [
    "FileFossilStore",
    "Fossil",
    "FossilEntry",
    "FossilLedger",
    "FossilNotFoundError",
    "FossilQuery",
    "FossilResult",
    "FossilSource",
    "FossilStore",
    "FossilVersion",
    "InMemoryFossilStore",
    "canonical_call_content",
    "fingerprint",
]

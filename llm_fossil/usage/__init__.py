"""Usage ledger and analytics derived from it."""

from __future__ import annotations

from llm_fossil.usage.analytics import BreakdownRow, UsageAnalytics, UsageReport, render_text
from llm_fossil.usage.ledger import (
    InMemoryUsageLedger,
    JsonFileUsageLedger,
    UsageLedger,
    UsageRecord,
)

__all__ = [
    "BreakdownRow",
    "InMemoryUsageLedger",
    "JsonFileUsageLedger",
    "UsageAnalytics",
    "UsageLedger",
    "UsageRecord",
    "UsageReport",
    "render_text",
]

"""Usage analytics recomputed from the usage ledger.

Nothing here is stored: every report is derived on demand from the full
list of UsageRecords, optionally filtered by time window, purpose or
provider. Recommendations are simple threshold rules.
"""

from __future__ import annotations

from collections.abc import Iterable
from datetime import datetime

import structlog
from pydantic import BaseModel, Field

from llm_fossil.usage.ledger import UsageRecord

log = structlog.get_logger(__name__)

LOW_SUCCESS_RATE = 0.8
LOW_VALUE_SCORE = 0.5
EXPENSIVE_PURPOSE_COST = 1.0
TOP_PURPOSES_LIMIT = 10

USAGE_LOOKS_GOOD = "Usage looks good!"


class BreakdownRow(BaseModel):
    """Calls and cost grouped under one key (purpose, provider or day)."""

    key: str
    calls: int
    cost: float
    tokens: int = 0


class UsageReport(BaseModel):
    total_calls: int = 0
    successes: int = 0
    failures: int = 0
    total_tokens: int = 0
    total_cost: float = 0.0
    success_rate: float = 0.0
    average_value_score: float | None = None
    top_purposes: list[BreakdownRow] = Field(default_factory=list)
    provider_breakdown: list[BreakdownRow] = Field(default_factory=list)
    cost_by_day: list[BreakdownRow] = Field(default_factory=list)
    recommendations: list[str] = Field(default_factory=list)


class UsageAnalytics:
    """Builds UsageReports from usage records."""

    def __init__(self, high_cost_threshold: float = 10.0) -> None:
        self._high_cost_threshold = high_cost_threshold

    def compute(
        self,
        records: Iterable[UsageRecord],
        since: datetime | None = None,
        purpose: str | None = None,
        provider: str | None = None,
    ) -> UsageReport:
        """Aggregate records into a report.

        Args:
            records: Usage records, typically ``await ledger.records()``
            since: Only include records at or after this instant
            purpose: Only include records with this purpose
            provider: Only include records from this provider

        Returns:
            UsageReport whose totals always equal the sums over the
            filtered records
        """
        selected = [
            record
            for record in records
            if (since is None or record.timestamp >= since)
            and (purpose is None or record.purpose == purpose)
            and (provider is None or record.provider == provider)
        ]

        total = len(selected)
        successes = sum(1 for record in selected if record.success)
        scores = [record.value_score for record in selected if record.value_score is not None]

        report = UsageReport(
            total_calls=total,
            successes=successes,
            failures=total - successes,
            total_tokens=sum(record.total_tokens for record in selected),
            total_cost=sum(record.cost for record in selected),
            success_rate=successes / total if total else 0.0,
            average_value_score=sum(scores) / len(scores) if scores else None,
            top_purposes=_top_purposes(selected),
            provider_breakdown=_group(selected, lambda record: record.provider),
            cost_by_day=sorted(
                _group(selected, lambda record: record.timestamp.date().isoformat()),
                key=lambda row: row.key,
            ),
        )
        report.recommendations = self._recommend(report)

        log.debug(
            "usage_analytics.computed",
            total_calls=report.total_calls,
            total_cost=round(report.total_cost, 6),
            success_rate=report.success_rate,
        )
        return report

    def _recommend(self, report: UsageReport) -> list[str]:
        if report.total_calls == 0:
            return [USAGE_LOOKS_GOOD]

        recommendations: list[str] = []
        if report.total_cost > self._high_cost_threshold:
            recommendations.append(
                "High cost detected - consider using local LLM alternatives"
            )
        if report.success_rate < LOW_SUCCESS_RATE:
            recommendations.append("Low success rate - check API keys and rate limits")
        if (
            report.average_value_score is not None
            and report.average_value_score < LOW_VALUE_SCORE
        ):
            recommendations.append(
                "Consider increasing minValueScore to avoid low-value calls"
            )
        expensive = [row.key for row in report.top_purposes if row.cost > EXPENSIVE_PURPOSE_COST]
        if expensive:
            recommendations.append(f"Expensive purposes: {', '.join(expensive)}")
        return recommendations or [USAGE_LOOKS_GOOD]


def _group(records: list[UsageRecord], key_fn) -> list[BreakdownRow]:
    rows: dict[str, BreakdownRow] = {}
    for record in records:
        key = key_fn(record)
        row = rows.setdefault(key, BreakdownRow(key=key, calls=0, cost=0.0))
        row.calls += 1
        row.cost += record.cost
        row.tokens += record.total_tokens
    return list(rows.values())


def _top_purposes(records: list[UsageRecord]) -> list[BreakdownRow]:
    rows = _group(records, lambda record: record.purpose)
    rows.sort(key=lambda row: (-row.calls, -row.cost, row.key))
    return rows[:TOP_PURPOSES_LIMIT]


def render_text(report: UsageReport) -> str:
    """Human-readable usage report."""

    def rows(items: list[BreakdownRow]) -> str:
        if not items:
            return "- (none)"
        return "\n".join(
            f"- {row.key}: ${row.cost:.4f} ({row.calls} calls)" for row in items
        )

    average = (
        f"{report.average_value_score * 100:.1f}%"
        if report.average_value_score is not None
        else "n/a"
    )
    lines = [
        "LLM Usage Report",
        "================",
        "",
        "Cost Summary:",
        f"- Total Cost: ${report.total_cost:.4f}",
        f"- Total Calls: {report.total_calls}",
        f"- Total Tokens: {report.total_tokens:,}",
        f"- Success Rate: {report.success_rate * 100:.1f}%",
        f"- Average Value Score: {average}",
        "",
        "Top Purposes (by calls):",
        rows(report.top_purposes),
        "",
        "Provider Breakdown:",
        rows(report.provider_breakdown),
        "",
        "Daily Cost Trend:",
        rows(report.cost_by_day),
        "",
        "Recommendations:",
        "\n".join(f"- {item}" for item in report.recommendations),
    ]
    return "\n".join(lines) + "\n"

"""LLM call orchestration and fossil ledger.

Routes language-model requests across local and hosted providers, enforces
token/cost/value budgets, retries under rate limiting, falls back
deterministically, and records every attempt in a deduplicating ledger.

Typical use::

    async with LLMService(get_settings()) as service:
        result = await service.call(
            {
                "messages": [{"role": "user", "content": "Summarise this diff"}],
                "purpose": "excerpt-generation",
                "context": "ci",
                "value_score": 0.7,
            }
        )
"""

from __future__ import annotations

from llm_fossil.config import Settings, get_settings
from llm_fossil.service import LLMService

__all__ = ["LLMService", "Settings", "get_settings"]

"""Deterministic fallback output for failed or rejected calls.

When budgets reject a call or every provider fails, callers still receive
usable text. Purposes with structured consumers get a stub shaped like the
real output (semantic tagging returns well-formed JSON); everything else
gets a generic notice.
"""

from __future__ import annotations

import json

import structlog

log = structlog.get_logger(__name__)

GENERIC_FALLBACK = "LLM service unavailable."

_SEMANTIC_TAGGING_STUB = {
    "semanticCategory": "general",
    "confidence": 0.5,
    "concepts": [],
    "sentiment": "neutral",
    "priority": "low",
    "impact": "low",
    "stakeholders": [],
}

FALLBACK_RESPONSES: dict[str, str] = {
    "semantic-tagging": json.dumps(_SEMANTIC_TAGGING_STUB),
    "excerpt-generation": "Content summary unavailable.",
    "goal-decomposition": "Unable to decompose goal. Please provide manual task breakdown.",
    "content-generation": "Content generation unavailable. Please write manually.",
}


class FallbackResponder:
    """Maps a call purpose to fixed fallback text. Never raises."""

    def __init__(self, responses: dict[str, str] | None = None) -> None:
        self._responses = dict(FALLBACK_RESPONSES)
        if responses:
            self._responses.update(responses)

    def respond(self, purpose: str) -> str:
        text = self._responses.get(purpose, GENERIC_FALLBACK)
        log.info("fallback_responder.used", purpose=purpose, generic=text == GENERIC_FALLBACK)
        return text

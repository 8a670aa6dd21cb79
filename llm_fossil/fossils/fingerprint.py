"""Content fingerprints used as dedup keys.

A fingerprint is the first 12 hex characters of SHA-256 over the exact
concatenation ``content + type + title``. No normalization is applied:
fingerprints are case- and whitespace-sensitive.
"""

from __future__ import annotations

import hashlib
import json
from collections.abc import Iterable

from llm_fossil.routing.types import Message

FINGERPRINT_LENGTH = 12


def fingerprint(content: str, type: str, title: str) -> str:
    """Return the 12-hex-char fingerprint of a fossil candidate."""
    digest = hashlib.sha256((content + type + title).encode("utf-8")).hexdigest()
    return digest[:FINGERPRINT_LENGTH]


def canonical_call_content(messages: Iterable[Message], capability: str) -> str:
    """Serialize a call's identity as canonical JSON.

    Key order and separators are fixed so that identical requests always
    produce identical content, and therefore identical fingerprints.
    """
    payload = {
        "capability": capability,
        "messages": [
            {"role": message.role.value, "content": message.content}
            for message in messages
        ],
    }
    return json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False)

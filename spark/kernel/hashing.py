from __future__ import annotations

import hashlib
import json
import unicodedata
from typing import Any


def sha256_hexdigest(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def normalize_text_for_hash(text: str) -> str:
    """Normalize text so trivial variations hash identically.

    - strip() leading/trailing whitespace
    - Unicode NFKC normalization
    """
    stripped = text.strip()
    return unicodedata.normalize("NFKC", stripped)


def build_idempotency_key(*parts: str) -> str:
    """Create an idempotency key from ordered parts."""
    joined = "||".join(parts).encode("utf-8", errors="ignore")
    return sha256_hexdigest(joined)


def canonical_json(payload: Any) -> str:
    """Stable JSON encoding (sorted keys, no whitespace) for fingerprints."""
    return json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)


def payload_fingerprint(payload: Any) -> str:
    """Content hash of a raw provider payload."""
    return sha256_hexdigest(canonical_json(payload).encode("utf-8", errors="ignore"))


def build_task_hash(document_id: str, line_number: int, text: str) -> str:
    """Identity of one task line inside a document.

    Order-independent reconciliation keys on this rather than on position in
    the delivery stream.
    """
    normalized = normalize_text_for_hash(text).lower()
    payload = f"{document_id}|{line_number}|{normalized}".encode("utf-8", errors="ignore")
    return sha256_hexdigest(payload)

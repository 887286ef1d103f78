from __future__ import annotations

import hashlib
import json

from medguard.core.audit.models import AuditEntry


# prev_hash of the first entry a log ever seals.
CHAIN_ROOT = "0" * 64


def entry_digest(prev_hash: str, entry: AuditEntry) -> str:
    """
    SHA-256 over the previous link and the entry's sorted-key JSON form,
    excluding the entry's own `prev_hash`/`hash`.
    """
    body = json.dumps(entry.chain_payload(), ensure_ascii=False, sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(f"{prev_hash}|{body}".encode("utf-8")).hexdigest()

from __future__ import annotations

from typing import Any, Dict


REDACT_KEYS = {
    "password",
    "secret",
    "credential",
    "current_secret",
    "new_secret",
    "plaintext",
    "envelope",
    "encrypted_secret",
    "key",
    "key_hex",
    "token",
    "authorization",
}


def redact(obj: Any) -> Any:
    if isinstance(obj, dict):
        out: Dict[str, Any] = {}
        for k, v in obj.items():
            if str(k).lower() in REDACT_KEYS:
                out[k] = "***REDACTED***"
            else:
                out[k] = redact(v)
        return out
    if isinstance(obj, (list, tuple)):
        return [redact(x) for x in obj]
    return obj

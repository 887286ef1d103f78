from __future__ import annotations

import time

from medguard.core.audit.models import AuditEntry


def format_line(entry: AuditEntry) -> str:
    ts = time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime(float(entry.timestamp)))
    who = entry.identity or "-"
    out = f"{ts} | {entry.action.value} | {who} | {entry.origin.label()}"
    if entry.severity.value in {"WARN", "ERROR", "CRITICAL"}:
        out = f"{out} [{entry.severity.value}]"
    return out

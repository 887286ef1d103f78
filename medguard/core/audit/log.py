from __future__ import annotations

import json
import os
import threading
import time
from typing import Any, Callable, List, Optional, Union

from medguard.core.audit.formatter import format_line
from medguard.core.audit.hasher import CHAIN_ROOT, entry_digest
from medguard.core.audit.models import AuditAction, AuditDetails, AuditEntry, AuditSeverity, IntegrityReport
from medguard.core.audit.retention import RetentionPolicy
from medguard.core.errors import InvalidInputError
from medguard.core.geo import Origin


class AuditLog:
    """
    Append-only, hash-chained, memory-resident audit trail.

    A single lock serializes append, sweep and snapshot reads, so the
    sequence observed by `query` is the linearized append order and a sweep
    never races a concurrent append.

    Timestamps never decrease along the chain. Expired entries therefore
    always form a prefix, and a sweep only ever cuts the chain at its start.
    """

    def __init__(self, *, retention: Optional[RetentionPolicy] = None, logger=None, now: Optional[Callable[[], float]] = None):
        self.retention = retention if retention is not None else RetentionPolicy()
        self.logger = logger
        self._now = now or time.time
        self._lock = threading.Lock()
        self._entries: List[AuditEntry] = []
        self._head_hash = CHAIN_ROOT
        self._last_timestamp = float("-inf")

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    # ---- writes ----
    def append(self, entry: AuditEntry) -> AuditEntry:
        """
        Seal `entry` into the chain and return the stored copy. Entries older
        than the current tail are rejected.
        """
        with self._lock:
            if float(entry.timestamp) < self._last_timestamp:
                raise InvalidInputError("Audit entries must be appended in timestamp order.", field="timestamp")
            return self._seal(entry)

    def record(
        self,
        details: AuditDetails,
        *,
        identity: Optional[str] = None,
        origin: Optional[Origin] = None,
        trace_id: Optional[str] = None,
        severity: AuditSeverity = AuditSeverity.INFO,
    ) -> AuditEntry:
        with self._lock:
            # Clock read under the lock; a clock stepping backwards is held at the tail.
            ts = max(float(self._now()), self._last_timestamp)
            entry = AuditEntry(
                timestamp=ts,
                trace_id=trace_id,
                identity=identity,
                origin=origin or Origin.unknown(),
                severity=severity,
                details=details,
            )
            return self._seal(entry)

    def _seal(self, entry: AuditEntry) -> AuditEntry:
        sealed = entry.model_copy(update={"prev_hash": self._head_hash, "hash": entry_digest(self._head_hash, entry)})
        self._entries.append(sealed)
        self._head_hash = str(sealed.hash)
        self._last_timestamp = float(sealed.timestamp)
        return sealed

    def sweep(self, now: Optional[float] = None) -> int:
        """
        Drop every entry older than the retention max age. Idempotent for a
        fixed `now`; returns the number of entries removed.
        """
        now = float(self._now()) if now is None else float(now)
        with self._lock:
            kept = [e for e in self._entries if not self.retention.is_expired(e.timestamp, now)]
            removed = len(self._entries) - len(kept)
            self._entries = kept
        if removed and self.logger is not None:
            self.logger.info(f"audit retention sweep removed={removed} remaining={len(kept)}")
        return removed

    # ---- reads ----
    def query(
        self,
        *,
        identity: Optional[str] = None,
        action: Optional[Union[AuditAction, str]] = None,
        since: Optional[float] = None,
        until: Optional[float] = None,
        limit: Optional[int] = None,
    ) -> List[AuditEntry]:
        want_action = AuditAction(action) if action is not None else None
        with self._lock:
            snapshot = list(self._entries)
        out: List[AuditEntry] = []
        for e in snapshot:
            if identity is not None and e.identity != identity:
                continue
            if want_action is not None and e.action != want_action:
                continue
            if since is not None and e.timestamp < float(since):
                continue
            if until is not None and e.timestamp > float(until):
                continue
            out.append(e)
        if limit is not None:
            out = out[-max(0, int(limit)) :] if int(limit) > 0 else []
        return out

    def head_hash(self) -> str:
        with self._lock:
            return self._head_hash

    def tail_formatted(self, n: int = 20) -> List[str]:
        return [format_line(e) for e in self.query(limit=n)]

    def export_json(self, path: str, **filters: Any) -> str:
        rows = self.query(**filters)
        os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
        tmp = path + ".tmp"
        with open(tmp, "w", encoding="utf-8") as f:
            json.dump([r.model_dump(mode="json") for r in rows], f, indent=2, ensure_ascii=False)
            f.write("\n")
        os.replace(tmp, path)
        return path

    # ---- integrity ----
    def verify_integrity(self) -> IntegrityReport:
        """
        Recompute every retained entry's hash and check the links between
        neighbours. The first retained entry may point at a swept predecessor.
        """
        with self._lock:
            entries = list(self._entries)
            head = self._head_hash
        if not entries:
            return IntegrityReport(ok=True, checked=0, message="no entries", head_hash=head)
        checked = 0
        for idx, cur in enumerate(entries):
            if idx > 0 and cur.prev_hash != entries[idx - 1].hash:
                return IntegrityReport(ok=False, checked=checked, broken_at=idx, message="prev_hash mismatch", head_hash=head)
            if entry_digest(str(cur.prev_hash or ""), cur) != cur.hash:
                return IntegrityReport(ok=False, checked=checked, broken_at=idx, message="hash mismatch", head_hash=head)
            checked += 1
        if entries[-1].hash != head:
            return IntegrityReport(ok=False, checked=checked, broken_at=len(entries) - 1, message="head mismatch", head_hash=head)
        return IntegrityReport(ok=True, checked=checked, message="ok", head_hash=head)

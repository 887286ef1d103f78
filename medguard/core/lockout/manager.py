from __future__ import annotations

import contextlib
import time
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Callable, Dict, Iterator, Optional

from pydantic import BaseModel, ConfigDict, Field

from medguard.core.audit.models import AuditSeverity, LockoutCleared, LockoutClearCause, LockoutTriggered
from medguard.core.geo import Origin
from medguard.core.locks import KeyedLocks


class LockoutConfig(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    failure_threshold: int = Field(default=5, ge=1, le=1000)
    # 0 keeps the identity locked until an explicit reset.
    lockout_minutes: int = Field(default=15, ge=0, le=24 * 60)


class AccessDecision(str, Enum):
    allowed = "allowed"
    locked = "locked"


@dataclass(frozen=True)
class AttemptState:
    failure_count: int = 0
    locked_until: Optional[float] = None
    locked: bool = False


class LoginGovernor:
    """
    Per-identity brute-force lockout state machine.

    Normal -> Locked once the failure count exceeds the threshold. Only a
    success, a manual reset or (with a timed lockout) the window expiring
    returns an identity to Normal.

    Callers that need check -> verify -> update to be atomic for one identity
    wrap the sequence in `guard(identity)`; every other method takes the same
    re-entrant per-identity lock on its own.
    """

    def __init__(
        self,
        *,
        cfg: Optional[LockoutConfig] = None,
        audit_log: Any = None,
        logger=None,
        now: Optional[Callable[[], float]] = None,
    ) -> None:
        self.cfg = cfg if cfg is not None else LockoutConfig()
        self.audit_log = audit_log
        self.logger = logger
        self._now = now or time.time
        self._locks = KeyedLocks()
        self._states: Dict[str, AttemptState] = {}

    @contextlib.contextmanager
    def guard(self, identity: str) -> Iterator[None]:
        with self._locks.hold(identity):
            yield

    # ---- reads ----
    def state(self, identity: str) -> AttemptState:
        with self._locks.hold(identity):
            now = float(self._now())
            st = self._states.get(identity) or AttemptState()
            if self._expired(st, now):
                st = AttemptState()
            return replace(st, locked=self._is_locked(st, now))

    def check_allowed(self, identity: str) -> AccessDecision:
        with self._locks.hold(identity):
            st = self._states.get(identity)
            if st is None:
                return AccessDecision.allowed
            return AccessDecision.locked if self._is_locked(st, float(self._now())) else AccessDecision.allowed

    # ---- transitions ----
    def record_failure(self, identity: str, *, origin: Optional[Origin] = None, trace_id: Optional[str] = None) -> AttemptState:
        with self._locks.hold(identity):
            now = float(self._now())
            st = self._roll_expired(identity, now, origin=origin, trace_id=trace_id)
            was_locked = self._is_locked(st, now)
            count = st.failure_count + 1
            locked_until = st.locked_until
            if count > int(self.cfg.failure_threshold) and not was_locked:
                if int(self.cfg.lockout_minutes) > 0:
                    locked_until = now + int(self.cfg.lockout_minutes) * 60.0
                st = AttemptState(failure_count=count, locked_until=locked_until)
                self._states[identity] = st
                self._emit(
                    LockoutTriggered(failure_count=count, threshold=int(self.cfg.failure_threshold), locked_until=locked_until),
                    identity=identity,
                    origin=origin,
                    trace_id=trace_id,
                    severity=AuditSeverity.WARN,
                )
                if self.logger is not None:
                    self.logger.warning(f"lockout triggered identity={identity} failures={count}")
            else:
                st = AttemptState(failure_count=count, locked_until=locked_until)
                self._states[identity] = st
            return replace(st, locked=self._is_locked(st, now))

    def record_success(self, identity: str, *, origin: Optional[Origin] = None, trace_id: Optional[str] = None) -> None:
        with self._locks.hold(identity):
            now = float(self._now())
            st = self._roll_expired(identity, now, origin=origin, trace_id=trace_id)
            self._states.pop(identity, None)
            if self._is_locked(st, now):
                self._emit(
                    LockoutCleared(cause=LockoutClearCause.success, previous_failure_count=st.failure_count),
                    identity=identity,
                    origin=origin,
                    trace_id=trace_id,
                )

    def reset(self, identity: str, *, origin: Optional[Origin] = None, trace_id: Optional[str] = None) -> bool:
        """
        Manual unlock. Returns False when there was nothing to clear, including
        a timed lockout that had already run out.
        """
        with self._locks.hold(identity):
            st = self._roll_expired(identity, float(self._now()), origin=origin, trace_id=trace_id)
            if st.failure_count == 0 and st.locked_until is None:
                return False
            self._states.pop(identity, None)
            self._emit(
                LockoutCleared(cause=LockoutClearCause.manual, previous_failure_count=st.failure_count),
                identity=identity,
                origin=origin,
                trace_id=trace_id,
            )
            if self.logger is not None:
                self.logger.info(f"lockout reset identity={identity}")
            return True

    # ---- internals ----
    def _is_locked(self, st: AttemptState, now: float) -> bool:
        if st.locked_until is not None:
            return now < float(st.locked_until)
        if int(self.cfg.lockout_minutes) > 0:
            return False
        return st.failure_count > int(self.cfg.failure_threshold)

    @staticmethod
    def _expired(st: AttemptState, now: float) -> bool:
        return st.locked_until is not None and now >= float(st.locked_until)

    def _roll_expired(self, identity: str, now: float, *, origin: Optional[Origin], trace_id: Optional[str]) -> AttemptState:
        st = self._states.get(identity) or AttemptState()
        if self._expired(st, now):
            self._emit(
                LockoutCleared(cause=LockoutClearCause.expired, previous_failure_count=st.failure_count),
                identity=identity,
                origin=origin,
                trace_id=trace_id,
            )
            st = AttemptState()
            self._states.pop(identity, None)
        return st

    def _emit(self, details: Any, *, identity: str, origin: Optional[Origin], trace_id: Optional[str], severity: AuditSeverity = AuditSeverity.INFO) -> None:
        if self.audit_log is None:
            return
        self.audit_log.record(details, identity=identity, origin=origin, trace_id=trace_id, severity=severity)

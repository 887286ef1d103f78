from __future__ import annotations

import threading
import time
from typing import Any, Callable, Optional

from pydantic import BaseModel, ConfigDict, Field


SECONDS_PER_DAY = 86400.0


class RetentionPolicy(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    max_age_days: float = Field(default=180.0, gt=0)
    sweep_interval_seconds: float = Field(default=3600.0, gt=0)
    sweep_enabled: bool = True

    @property
    def max_age_seconds(self) -> float:
        return float(self.max_age_days) * SECONDS_PER_DAY

    def is_expired(self, timestamp: float, now: float) -> bool:
        return (float(now) - float(timestamp)) > self.max_age_seconds


class RetentionSweeper:
    """
    Background timer that calls `audit_log.sweep(now)` every interval.

    `stop()` is the cancellable handle used at shutdown; the sweep itself is
    always callable directly on the log for deterministic tests.
    """

    def __init__(self, *, audit_log: Any, policy: RetentionPolicy, logger=None, now: Optional[Callable[[], float]] = None):
        self.audit_log = audit_log
        self.policy = policy
        self.logger = logger
        self._now = now or time.time
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._runs = 0

    @property
    def runs(self) -> int:
        return self._runs

    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if not self.policy.sweep_enabled:
            return
        if self.is_running():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="audit-retention", daemon=True)
        self._thread.start()

    def stop(self, timeout: float = 2.0) -> None:
        self._stop.set()
        if self._thread is not None and self._thread.is_alive():
            self._thread.join(timeout=timeout)
        self._thread = None

    def run_once(self) -> int:
        removed = self.audit_log.sweep(float(self._now()))
        self._runs += 1
        return removed

    def _loop(self) -> None:
        interval = max(0.01, float(self.policy.sweep_interval_seconds))
        while not self._stop.wait(interval):
            try:
                self.run_once()
            except Exception as e:  # noqa: BLE001
                # Keep the timer alive; the next tick retries.
                if self.logger is not None:
                    self.logger.error(f"audit retention sweep failed: {e}")

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, FrozenSet, Optional, Set

from pydantic import BaseModel, ConfigDict, Field

from medguard.core.audit.models import AuditSeverity, NewDevice, SuspiciousOrigin
from medguard.core.geo import Origin, OriginSighting, haversine_km
from medguard.core.locks import KeyedLocks


class AnomalyConfig(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    # Faster than a commercial flight between two logins is implausible.
    max_travel_speed_kmh: float = Field(default=900.0, gt=0)
    # Coarse geolocation jitter; moves inside this radius are never flagged.
    location_tolerance_km: float = Field(default=50.0, ge=0)


@dataclass(frozen=True)
class TravelAssessment:
    suspicious: bool
    reason: str
    distance_km: Optional[float] = None
    elapsed_seconds: Optional[float] = None
    min_travel_seconds: Optional[float] = None


def assess_travel(previous: OriginSighting, current: OriginSighting, cfg: AnomalyConfig) -> TravelAssessment:
    """
    Compare the elapsed time between two sightings with the minimum time
    needed to cover the great-circle distance at `max_travel_speed_kmh`.
    """
    if not (previous.origin.is_known and current.origin.is_known):
        return TravelAssessment(suspicious=False, reason="unknown_location")
    distance = haversine_km(previous.origin, current.origin)
    elapsed = float(current.seen_at) - float(previous.seen_at)
    if distance <= float(cfg.location_tolerance_km):
        return TravelAssessment(suspicious=False, reason="within_tolerance", distance_km=distance, elapsed_seconds=elapsed)
    min_travel = (distance - float(cfg.location_tolerance_km)) / float(cfg.max_travel_speed_kmh) * 3600.0
    if elapsed < min_travel:
        return TravelAssessment(
            suspicious=True,
            reason="implausible_travel",
            distance_km=distance,
            elapsed_seconds=elapsed,
            min_travel_seconds=min_travel,
        )
    return TravelAssessment(suspicious=False, reason="plausible", distance_km=distance, elapsed_seconds=elapsed, min_travel_seconds=min_travel)


class AnomalyDetector:
    """
    Known-device and login-origin tracking per identity.

    Output is an audit signal only; nothing here denies access.
    """

    def __init__(
        self,
        *,
        cfg: Optional[AnomalyConfig] = None,
        audit_log: Any = None,
        logger=None,
        now: Optional[Callable[[], float]] = None,
    ) -> None:
        self.cfg = cfg if cfg is not None else AnomalyConfig()
        self.audit_log = audit_log
        self.logger = logger
        self._now = now or time.time
        self._locks = KeyedLocks()
        self._devices: Dict[str, Set[str]] = {}
        self._last_seen: Dict[str, OriginSighting] = {}

    def known_devices(self, identity: str) -> FrozenSet[str]:
        with self._locks.hold(identity):
            return frozenset(self._devices.get(identity) or ())

    def last_sighting(self, identity: str) -> Optional[OriginSighting]:
        with self._locks.hold(identity):
            return self._last_seen.get(identity)

    def observe_device(
        self,
        identity: str,
        fingerprint: Optional[str],
        *,
        origin: Optional[Origin] = None,
        trace_id: Optional[str] = None,
    ) -> bool:
        """
        Add `fingerprint` to the identity's device set. True only when it is
        new AND the identity already had at least one known device; the very
        first device an identity uses is its baseline, not an anomaly.
        """
        fp = str(fingerprint or "").strip()
        if not fp:
            return False
        with self._locks.hold(identity):
            devices = self._devices.setdefault(identity, set())
            if fp in devices:
                return False
            first = not devices
            devices.add(fp)
            if first:
                return False
            self._emit(
                NewDevice(fingerprint=fp, known_devices=len(devices)),
                identity=identity,
                origin=origin,
                trace_id=trace_id,
            )
            if self.logger is not None:
                self.logger.warning(f"new device identity={identity} known_devices={len(devices)}")
            return True

    def observe_origin(
        self,
        identity: str,
        previous: Optional[OriginSighting],
        current: OriginSighting,
        *,
        trace_id: Optional[str] = None,
    ) -> bool:
        if previous is None:
            return False
        verdict = assess_travel(previous, current, self.cfg)
        if not verdict.suspicious:
            return False
        self._emit(
            SuspiciousOrigin(
                previous_origin=previous.origin,
                distance_km=round(float(verdict.distance_km or 0.0), 3),
                elapsed_seconds=round(float(verdict.elapsed_seconds or 0.0), 3),
                min_travel_seconds=round(float(verdict.min_travel_seconds or 0.0), 3),
            ),
            identity=identity,
            origin=current.origin,
            trace_id=trace_id,
        )
        if self.logger is not None:
            self.logger.warning(
                f"suspicious origin identity={identity} from={previous.origin.label()} to={current.origin.label()} "
                f"distance_km={verdict.distance_km:.0f} elapsed_s={verdict.elapsed_seconds:.0f}"
            )
        return True

    def observe_login_origin(
        self,
        identity: str,
        origin: Optional[Origin],
        *,
        at: Optional[float] = None,
        trace_id: Optional[str] = None,
    ) -> bool:
        """
        Check this login against the identity's previous one and remember it.
        Unknown origins are never flagged and never replace a known sighting.
        """
        origin = origin or Origin.unknown()
        current = OriginSighting(origin=origin, seen_at=float(self._now()) if at is None else float(at))
        with self._locks.hold(identity):
            previous = self._last_seen.get(identity)
            suspicious = self.observe_origin(identity, previous, current, trace_id=trace_id)
            if origin.is_known:
                self._last_seen[identity] = current
            return suspicious

    def _emit(self, details: Any, *, identity: str, origin: Optional[Origin], trace_id: Optional[str]) -> None:
        if self.audit_log is None:
            return
        self.audit_log.record(details, identity=identity, origin=origin, trace_id=trace_id, severity=AuditSeverity.WARN)

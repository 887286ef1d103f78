from __future__ import annotations

import secrets
import threading
import time
import uuid
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from medguard.core.anomaly.detector import AnomalyDetector
from medguard.core.audit.log import AuditLog
from medguard.core.audit.models import (
    AuditEntry,
    AuditSeverity,
    CredentialRotated,
    DenialReason,
    IdentityRegistered,
    LoginFailed,
    LoginSucceeded,
    RegistrationRejected,
    SensitiveDataStored,
)
from medguard.core.audit.retention import RetentionSweeper
from medguard.core.config.models import MedguardConfig
from medguard.core.crypto import Vault, generate_vault_key_bytes
from medguard.core.errors import (
    BadCredentialError,
    DuplicateIdentityError,
    IntegrityError,
    InvalidInputError,
    LockedOutError,
    MedguardError,
    UnknownIdentityError,
)
from medguard.core.geo import Origin
from medguard.core.lockout.manager import AccessDecision, LoginGovernor


def normalize_identity(identity: Any) -> str:
    ident = str(identity or "").strip().lower()
    if not ident:
        raise InvalidInputError("Identity is required.", field="identity")
    return ident


def _require_secret(secret: Any, *, field: str = "secret") -> str:
    if not isinstance(secret, str) or secret == "":
        raise InvalidInputError("Secret is required.", field=field)
    return secret


@dataclass(frozen=True)
class CredentialRecord:
    identity: str
    encrypted_secret: str
    created_at: float
    rotated_at: Optional[float] = None


@dataclass(frozen=True)
class AuthResult:
    ok: bool
    identity: str
    reason: Optional[DenialReason] = None
    failure_count: int = 0
    new_device: bool = False
    suspicious_origin: bool = False
    trace_id: Optional[str] = None

    def to_error(self) -> Optional[MedguardError]:
        if self.ok:
            return None
        if self.reason == DenialReason.unknown_identity:
            return UnknownIdentityError(identity=self.identity)
        if self.reason == DenialReason.locked_out:
            return LockedOutError(identity=self.identity)
        if self.reason == DenialReason.integrity_error:
            return IntegrityError(identity=self.identity)
        return BadCredentialError(identity=self.identity)


class SecurityCore:
    """
    Facade over the vault, login governor, anomaly detector and audit log.

    Authentication order per identity (atomic under the governor guard):
    governor check -> credential verification -> governor update ->
    anomaly checks (success only) -> audit entry.
    """

    def __init__(
        self,
        *,
        vault: Vault,
        audit_log: Optional[AuditLog] = None,
        governor: Optional[LoginGovernor] = None,
        detector: Optional[AnomalyDetector] = None,
        sweeper: Optional[RetentionSweeper] = None,
        logger=None,
        now: Optional[Callable[[], float]] = None,
    ) -> None:
        self._now = now or time.time
        self.logger = logger
        self.vault = vault
        self.audit_log = audit_log if audit_log is not None else AuditLog(logger=logger, now=self._now)
        self.governor = governor if governor is not None else LoginGovernor(audit_log=self.audit_log, logger=logger, now=self._now)
        self.detector = detector if detector is not None else AnomalyDetector(audit_log=self.audit_log, logger=logger, now=self._now)
        self.sweeper = sweeper
        self._records_lock = threading.Lock()
        self._records: Dict[str, CredentialRecord] = {}
        # Unknown identities still pay for one decrypt + compare.
        self._decoy = self.vault.encrypt(secrets.token_urlsafe(24))

    @classmethod
    def from_config(cls, cfg: Optional[MedguardConfig] = None, *, logger=None, now: Optional[Callable[[], float]] = None) -> "SecurityCore":
        cfg = cfg if cfg is not None else MedguardConfig()
        now = now or time.time
        if cfg.vault.key_hex:
            vault = Vault.from_hex(cfg.vault.key_hex, logger=logger)
        else:
            vault = Vault(generate_vault_key_bytes(), logger=logger)
            if logger is not None:
                logger.warning(f"no vault key configured; using ephemeral key key_id={vault.key_id}")
        audit_log = AuditLog(retention=cfg.audit, logger=logger, now=now)
        return cls(
            vault=vault,
            audit_log=audit_log,
            governor=LoginGovernor(cfg=cfg.lockout, audit_log=audit_log, logger=logger, now=now),
            detector=AnomalyDetector(cfg=cfg.anomaly, audit_log=audit_log, logger=logger, now=now),
            sweeper=RetentionSweeper(audit_log=audit_log, policy=cfg.audit, logger=logger, now=now),
            logger=logger,
            now=now,
        )

    # ---- lifecycle ----
    def start(self) -> None:
        if self.sweeper is not None:
            self.sweeper.start()

    def shutdown(self) -> None:
        if self.sweeper is not None:
            self.sweeper.stop()

    # ---- registration ----
    def is_registered(self, identity: str) -> bool:
        with self._records_lock:
            return normalize_identity(identity) in self._records

    def register(self, identity: str, secret: str, *, origin: Optional[Origin] = None, trace_id: Optional[str] = None) -> str:
        ident = normalize_identity(identity)
        _require_secret(secret)
        trace_id = trace_id or uuid.uuid4().hex
        envelope = self.vault.encrypt(secret)
        with self._records_lock:
            if ident in self._records:
                self.audit_log.record(
                    RegistrationRejected(reason="duplicate_identity"),
                    identity=ident,
                    origin=origin,
                    trace_id=trace_id,
                    severity=AuditSeverity.WARN,
                )
                raise DuplicateIdentityError(identity=ident)
            self._records[ident] = CredentialRecord(identity=ident, encrypted_secret=envelope, created_at=float(self._now()))
            self.audit_log.record(IdentityRegistered(), identity=ident, origin=origin, trace_id=trace_id)
        if self.logger is not None:
            self.logger.info(f"identity registered identity={ident}")
        return ident

    # ---- authentication ----
    def authenticate(
        self,
        identity: str,
        secret: str,
        device_fingerprint: Optional[str] = None,
        origin: Optional[Origin] = None,
        *,
        trace_id: Optional[str] = None,
    ) -> AuthResult:
        ident = normalize_identity(identity)
        _require_secret(secret)
        origin = origin or Origin.unknown()
        trace_id = trace_id or uuid.uuid4().hex

        with self.governor.guard(ident):
            if self.governor.check_allowed(ident) == AccessDecision.locked:
                return self._deny(ident, DenialReason.locked_out, origin=origin, trace_id=trace_id)

            try:
                reason = self._verify(ident, secret)
            except IntegrityError:
                if self.logger is not None:
                    self.logger.error(f"stored credential failed integrity check identity={ident}")
                reason = DenialReason.integrity_error
            if reason is not None:
                return self._deny(ident, reason, origin=origin, trace_id=trace_id)

            self.governor.record_success(ident, origin=origin, trace_id=trace_id)
            new_device = self.detector.observe_device(ident, device_fingerprint, origin=origin, trace_id=trace_id)
            suspicious = self.detector.observe_login_origin(ident, origin, trace_id=trace_id)
            self.audit_log.record(
                LoginSucceeded(new_device=new_device, suspicious_origin=suspicious),
                identity=ident,
                origin=origin,
                trace_id=trace_id,
            )
        if self.logger is not None:
            self.logger.info(f"login succeeded identity={ident} new_device={new_device} suspicious_origin={suspicious}")
        return AuthResult(ok=True, identity=ident, new_device=new_device, suspicious_origin=suspicious, trace_id=trace_id)

    def rotate_credential(
        self,
        identity: str,
        current_secret: str,
        new_secret: str,
        *,
        origin: Optional[Origin] = None,
        trace_id: Optional[str] = None,
    ) -> None:
        """
        Replace the stored secret after verifying the current one. Governed
        like a login: failures count toward lockout.
        """
        ident = normalize_identity(identity)
        _require_secret(current_secret, field="current_secret")
        _require_secret(new_secret, field="new_secret")
        origin = origin or Origin.unknown()
        trace_id = trace_id or uuid.uuid4().hex

        with self.governor.guard(ident):
            if self.governor.check_allowed(ident) == AccessDecision.locked:
                raise self._deny(ident, DenialReason.locked_out, origin=origin, trace_id=trace_id).to_error()
            try:
                reason = self._verify(ident, current_secret)
            except IntegrityError:
                reason = DenialReason.integrity_error
            if reason is not None:
                raise self._deny(ident, reason, origin=origin, trace_id=trace_id).to_error()
            self.governor.record_success(ident, origin=origin, trace_id=trace_id)
            envelope = self.vault.encrypt(new_secret)
            with self._records_lock:
                rec = self._records[ident]
                self._records[ident] = CredentialRecord(
                    identity=ident,
                    encrypted_secret=envelope,
                    created_at=rec.created_at,
                    rotated_at=float(self._now()),
                )
            self.audit_log.record(CredentialRotated(), identity=ident, origin=origin, trace_id=trace_id)
        if self.logger is not None:
            self.logger.info(f"credential rotated identity={ident}")

    def unlock(self, identity: str, *, origin: Optional[Origin] = None, trace_id: Optional[str] = None) -> bool:
        return self.governor.reset(normalize_identity(identity), origin=origin, trace_id=trace_id or uuid.uuid4().hex)

    # ---- sensitive fields ----
    def store_sensitive_field(
        self,
        identity: str,
        field: str,
        value: Any,
        *,
        origin: Optional[Origin] = None,
        trace_id: Optional[str] = None,
    ) -> str:
        return self.store_sensitive_fields(identity, {field: value}, origin=origin, trace_id=trace_id)[str(field).strip()]

    def store_sensitive_fields(
        self,
        identity: str,
        fields: Dict[str, Any],
        *,
        origin: Optional[Origin] = None,
        trace_id: Optional[str] = None,
    ) -> Dict[str, str]:
        ident = normalize_identity(identity)
        if not isinstance(fields, dict) or not fields:
            raise InvalidInputError("At least one field is required.", field="fields")
        clean: Dict[str, str] = {}
        for name, value in fields.items():
            key = str(name or "").strip()
            if not key or value is None or value == "":
                raise InvalidInputError("All fields are required.", field=key or "field")
            clean[key] = str(value)
        if not self.is_registered(ident):
            raise UnknownIdentityError(identity=ident)
        out = {key: self.vault.encrypt(value) for key, value in clean.items()}
        self.audit_log.record(
            SensitiveDataStored(fields=tuple(sorted(out))),
            identity=ident,
            origin=origin,
            trace_id=trace_id or uuid.uuid4().hex,
        )
        return out

    def reveal_sensitive_field(self, envelope: str) -> str:
        return self.vault.decrypt(envelope)

    # ---- audit passthrough ----
    def audit_entries(self, **filters: Any) -> List[AuditEntry]:
        return self.audit_log.query(**filters)

    def sweep_audit(self, now: Optional[float] = None) -> int:
        return self.audit_log.sweep(now)

    # ---- internals ----
    def _verify(self, ident: str, secret: str) -> Optional[DenialReason]:
        with self._records_lock:
            rec = self._records.get(ident)
        if rec is None:
            self._compare(self.vault.decrypt(self._decoy), secret)
            return DenialReason.unknown_identity
        if not self._compare(self.vault.decrypt(rec.encrypted_secret), secret):
            return DenialReason.bad_credential
        return None

    @staticmethod
    def _compare(expected: str, provided: str) -> bool:
        return secrets.compare_digest(expected.encode("utf-8"), provided.encode("utf-8"))

    def _deny(self, ident: str, reason: DenialReason, *, origin: Origin, trace_id: str) -> AuthResult:
        # Failure count and audit entry land together under the identity guard.
        st = self.governor.record_failure(ident, origin=origin, trace_id=trace_id)
        self.audit_log.record(
            LoginFailed(reason=reason, failure_count=st.failure_count),
            identity=ident,
            origin=origin,
            trace_id=trace_id,
            severity=AuditSeverity.ERROR if reason == DenialReason.integrity_error else AuditSeverity.WARN,
        )
        if self.logger is not None:
            self.logger.warning(f"login denied identity={ident} reason={reason.value} failures={st.failure_count}")
        return AuthResult(ok=False, identity=ident, reason=reason, failure_count=st.failure_count, trace_id=trace_id)

from __future__ import annotations

import time
import uuid
from enum import Enum
from typing import Annotated, Literal, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field

from medguard.core.geo import Origin


class AuditSeverity(str, Enum):
    INFO = "INFO"
    WARN = "WARN"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class AuditAction(str, Enum):
    identity_registered = "identity_registered"
    registration_rejected = "registration_rejected"
    login_succeeded = "login_succeeded"
    login_failed = "login_failed"
    lockout_triggered = "lockout_triggered"
    lockout_cleared = "lockout_cleared"
    new_device = "new_device"
    suspicious_origin = "suspicious_origin"
    sensitive_data_stored = "sensitive_data_stored"
    credential_rotated = "credential_rotated"


class DenialReason(str, Enum):
    unknown_identity = "unknown_identity"
    locked_out = "locked_out"
    bad_credential = "bad_credential"
    integrity_error = "integrity_error"


class LockoutClearCause(str, Enum):
    success = "success"
    manual = "manual"
    expired = "expired"


class _Details(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)


class IdentityRegistered(_Details):
    kind: Literal["identity_registered"] = "identity_registered"


class RegistrationRejected(_Details):
    kind: Literal["registration_rejected"] = "registration_rejected"
    reason: str


class LoginSucceeded(_Details):
    kind: Literal["login_succeeded"] = "login_succeeded"
    new_device: bool = False
    suspicious_origin: bool = False


class LoginFailed(_Details):
    kind: Literal["login_failed"] = "login_failed"
    reason: DenialReason
    failure_count: int = Field(ge=0)


class LockoutTriggered(_Details):
    kind: Literal["lockout_triggered"] = "lockout_triggered"
    failure_count: int = Field(ge=0)
    threshold: int = Field(ge=1)
    locked_until: Optional[float] = None


class LockoutCleared(_Details):
    kind: Literal["lockout_cleared"] = "lockout_cleared"
    cause: LockoutClearCause
    previous_failure_count: int = Field(ge=0)


class NewDevice(_Details):
    kind: Literal["new_device"] = "new_device"
    fingerprint: str
    known_devices: int = Field(ge=1)


class SuspiciousOrigin(_Details):
    kind: Literal["suspicious_origin"] = "suspicious_origin"
    previous_origin: Origin
    distance_km: float
    elapsed_seconds: float
    min_travel_seconds: float


class SensitiveDataStored(_Details):
    kind: Literal["sensitive_data_stored"] = "sensitive_data_stored"
    fields: Tuple[str, ...]


class CredentialRotated(_Details):
    kind: Literal["credential_rotated"] = "credential_rotated"


AuditDetails = Annotated[
    Union[
        IdentityRegistered,
        RegistrationRejected,
        LoginSucceeded,
        LoginFailed,
        LockoutTriggered,
        LockoutCleared,
        NewDevice,
        SuspiciousOrigin,
        SensitiveDataStored,
        CredentialRotated,
    ],
    Field(discriminator="kind"),
]


class AuditEntry(BaseModel):
    """
    One security-relevant action. Immutable; `prev_hash`/`hash` are filled in
    by the log when the entry is appended.
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    audit_id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    timestamp: float = Field(default_factory=lambda: time.time())
    trace_id: Optional[str] = None
    identity: Optional[str] = None
    origin: Origin = Field(default_factory=Origin.unknown)
    severity: AuditSeverity = AuditSeverity.INFO
    details: AuditDetails
    prev_hash: Optional[str] = None
    hash: Optional[str] = None

    @property
    def action(self) -> AuditAction:
        return AuditAction(self.details.kind)

    def chain_payload(self) -> dict:
        return self.model_dump(mode="json", exclude={"prev_hash", "hash"})


class IntegrityReport(BaseModel):
    model_config = ConfigDict(extra="forbid")

    ok: bool
    checked: int
    broken_at: Optional[int] = None
    message: str = ""
    head_hash: Optional[str] = None

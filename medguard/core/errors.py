from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict

from medguard.core.redaction import redact


class Severity(str, Enum):
    INFO = "INFO"
    WARN = "WARN"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


@dataclass
class MedguardError(Exception):
    code: str
    user_message: str
    severity: Severity = Severity.ERROR
    recoverable: bool = True
    context: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        super().__init__(self.code)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code,
            "user_message": self.user_message,
            "severity": self.severity.value,
            "recoverable": bool(self.recoverable),
            "context": redact(self.context or {}),
        }


class DuplicateIdentityError(MedguardError):
    def __init__(self, user_message: str = "Identity is already registered.", **ctx: Any):
        super().__init__("duplicate_identity", user_message, severity=Severity.WARN, recoverable=True, context=ctx)


class UnknownIdentityError(MedguardError):
    def __init__(self, user_message: str = "Identity is not registered.", **ctx: Any):
        super().__init__("unknown_identity", user_message, severity=Severity.WARN, recoverable=True, context=ctx)


class BadCredentialError(MedguardError):
    def __init__(self, user_message: str = "Invalid credential.", **ctx: Any):
        super().__init__("bad_credential", user_message, severity=Severity.WARN, recoverable=True, context=ctx)


class LockedOutError(MedguardError):
    def __init__(self, user_message: str = "Too many failed attempts. Identity is locked.", **ctx: Any):
        super().__init__("locked_out", user_message, severity=Severity.WARN, recoverable=True, context=ctx)


class IntegrityError(MedguardError):
    def __init__(self, user_message: str = "Encrypted payload failed integrity checks.", **ctx: Any):
        super().__init__("integrity_error", user_message, severity=Severity.ERROR, recoverable=True, context=ctx)


class InvalidInputError(MedguardError):
    def __init__(self, user_message: str = "Invalid request.", **ctx: Any):
        super().__init__("invalid_input", user_message, severity=Severity.WARN, recoverable=True, context=ctx)


class ConfigError(MedguardError):
    def __init__(self, user_message: str = "Configuration error.", **ctx: Any):
        super().__init__("config_error", user_message, severity=Severity.CRITICAL, recoverable=False, context=ctx)

from __future__ import annotations

import re
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from medguard.core.anomaly.detector import AnomalyConfig
from medguard.core.audit.retention import RetentionPolicy
from medguard.core.lockout.manager import LockoutConfig


_HEX_KEY_RE = re.compile(r"^[0-9a-fA-F]{64}$")


class VaultConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    key_hex: Optional[str] = None
    key_env: str = "MEDGUARD_ENCRYPTION_KEY"

    @field_validator("key_hex")
    @classmethod
    def _aes256_hex(cls, v: Optional[str]) -> Optional[str]:
        if v is None or str(v).strip() == "":
            return None
        v = str(v).strip()
        if not _HEX_KEY_RE.match(v):
            raise ValueError("key_hex must be 64 hex characters (AES-256)")
        return v.lower()


class LoggingConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    log_dir: str = "logs"
    level: str = "INFO"
    max_bytes: int = Field(default=1_000_000, gt=0)
    backup_count: int = Field(default=5, ge=0)
    console: bool = True


class MedguardConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    config_version: int = Field(default=1, ge=1)
    vault: VaultConfig = Field(default_factory=VaultConfig)
    lockout: LockoutConfig = Field(default_factory=LockoutConfig)
    anomaly: AnomalyConfig = Field(default_factory=AnomalyConfig)
    audit: RetentionPolicy = Field(default_factory=RetentionPolicy)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

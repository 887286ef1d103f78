from __future__ import annotations

import pytest

from medguard.core.audit.log import AuditLog
from medguard.core.audit.retention import RetentionPolicy
from medguard.core.crypto import Vault, generate_vault_key_bytes
from medguard.core.geo import Origin
from medguard.core.lockout.manager import LockoutConfig, LoginGovernor
from medguard.core.anomaly.detector import AnomalyDetector
from medguard.core.service import SecurityCore

from .helpers.fakes import FakeClock, RecordingLogger


NEW_YORK = Origin(city="New York", region="NY", country="US", latitude=40.7128, longitude=-74.0060)
LONDON = Origin(city="London", region="ENG", country="GB", latitude=51.5074, longitude=-0.1278)
PARIS = Origin(city="Paris", region="IDF", country="FR", latitude=48.8566, longitude=2.3522)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def rec_logger():
    return RecordingLogger()


@pytest.fixture
def vault():
    return Vault(generate_vault_key_bytes())


@pytest.fixture
def audit_log(clock):
    return AuditLog(retention=RetentionPolicy(max_age_days=180), now=clock.time)


@pytest.fixture
def core(vault, audit_log, clock, rec_logger):
    """
    SecurityCore with threshold 5, 15 minute timed lockout and a fake clock.
    """
    return SecurityCore(
        vault=vault,
        audit_log=audit_log,
        governor=LoginGovernor(cfg=LockoutConfig(failure_threshold=5, lockout_minutes=15), audit_log=audit_log, now=clock.time),
        detector=AnomalyDetector(audit_log=audit_log, now=clock.time),
        logger=rec_logger,
        now=clock.time,
    )

from __future__ import annotations

import dataclasses
import json

import pytest

from medguard.core.audit.log import AuditLog
from medguard.core.audit.models import AuditAction, DenialReason, LockoutClearCause
from medguard.core.config.models import MedguardConfig
from medguard.core.crypto import generate_vault_key_bytes, key_id_from_key_bytes
from medguard.core.errors import (
    BadCredentialError,
    DuplicateIdentityError,
    IntegrityError,
    InvalidInputError,
    LockedOutError,
    UnknownIdentityError,
)
from medguard.core.geo import Origin
from medguard.core.service import AuthResult, SecurityCore

from .conftest import LONDON, NEW_YORK
from .helpers.fakes import FakeClock, RecordingLogger


SECRET = "correct horse battery staple"


def _fail(core, identity: str, n: int) -> AuthResult:
    res = None
    for _ in range(n):
        res = core.authenticate(identity, "wrong-password")
    return res


def test_register_normalizes_identity_and_audits(core):
    assert core.register("  Alice@Example.COM ", SECRET) == "alice@example.com"
    assert core.is_registered("ALICE@example.com")

    (entry,) = core.audit_entries(action=AuditAction.identity_registered)
    assert entry.identity == "alice@example.com"


def test_duplicate_registration_is_rejected(core):
    core.register("alice@example.com", SECRET)
    with pytest.raises(DuplicateIdentityError) as ei:
        core.register("ALICE@example.com", "another secret")
    assert ei.value.code == "duplicate_identity"

    (rejected,) = core.audit_entries(action=AuditAction.registration_rejected)
    assert rejected.details.reason == "duplicate_identity"
    assert core.authenticate("alice@example.com", SECRET).ok is True


@pytest.mark.parametrize("identity, secret", [("", SECRET), ("   ", SECRET), ("alice@example.com", ""), ("alice@example.com", None)])
def test_register_requires_identity_and_secret(core, identity, secret):
    with pytest.raises(InvalidInputError):
        core.register(identity, secret)
    assert len(core.audit_log) == 0


def test_successful_authentication(core):
    core.register("alice@example.com", SECRET)
    res = core.authenticate("alice@example.com", SECRET, "Device-1", NEW_YORK, trace_id="t-1")
    assert res.ok is True
    assert res.reason is None
    assert res.new_device is False
    assert res.suspicious_origin is False
    assert res.trace_id == "t-1"
    assert res.to_error() is None


def test_bad_credential_is_counted_and_audited(core):
    core.register("alice@example.com", SECRET)
    res = core.authenticate("alice@example.com", "nope")
    assert res.ok is False
    assert res.reason == DenialReason.bad_credential
    assert res.failure_count == 1
    assert isinstance(res.to_error(), BadCredentialError)

    (entry,) = core.audit_entries(action=AuditAction.login_failed)
    assert entry.details.reason == DenialReason.bad_credential
    assert entry.details.failure_count == 1


def test_lockout_blocks_even_the_correct_credential(core):
    core.register("alice@example.com", SECRET)
    last = _fail(core, "alice@example.com", 6)
    assert last.failure_count == 6

    res = core.authenticate("alice@example.com", SECRET)
    assert res.ok is False
    assert res.reason == DenialReason.locked_out
    assert isinstance(res.to_error(), LockedOutError)
    assert core.governor.state("alice@example.com").locked is True
    assert len(core.audit_entries(action=AuditAction.lockout_triggered)) == 1


def test_five_failures_do_not_lock(core):
    core.register("alice@example.com", SECRET)
    _fail(core, "alice@example.com", 5)
    assert core.authenticate("alice@example.com", SECRET).ok is True
    assert core.governor.state("alice@example.com").failure_count == 0


def test_locked_identity_never_reaches_decrypt(core, monkeypatch):
    core.register("alice@example.com", SECRET)
    _fail(core, "alice@example.com", 6)

    def boom(envelope):
        raise AssertionError("decrypt must not run for a locked identity")

    monkeypatch.setattr(core.vault, "decrypt", boom)
    assert core.authenticate("alice@example.com", SECRET).reason == DenialReason.locked_out
    assert core.authenticate("alice@example.com", "wrong").reason == DenialReason.locked_out


def test_manual_unlock_restores_normal(core):
    core.register("alice@example.com", SECRET)
    _fail(core, "alice@example.com", 6)
    assert core.unlock("ALICE@example.com") is True

    st = core.governor.state("alice@example.com")
    assert st.failure_count == 0
    assert st.locked is False
    assert core.authenticate("alice@example.com", SECRET).ok is True

    cleared = core.audit_entries(action=AuditAction.lockout_cleared)
    assert [e.details.cause for e in cleared] == [LockoutClearCause.manual]


def test_timed_lockout_expires(core, clock):
    core.register("alice@example.com", SECRET)
    _fail(core, "alice@example.com", 6)
    clock.advance(14 * 60)
    assert core.authenticate("alice@example.com", SECRET).reason == DenialReason.locked_out
    clock.advance(60)
    assert core.authenticate("alice@example.com", SECRET).ok is True
    assert core.governor.state("alice@example.com").failure_count == 0
    cleared = core.audit_entries(action=AuditAction.lockout_cleared)
    assert [e.details.cause for e in cleared] == [LockoutClearCause.expired]


def test_success_before_lockout_resets_counter(core):
    core.register("alice@example.com", SECRET)
    _fail(core, "alice@example.com", 4)
    assert core.authenticate("alice@example.com", SECRET).ok is True
    assert core.governor.state("alice@example.com").failure_count == 0
    _fail(core, "alice@example.com", 5)
    assert core.authenticate("alice@example.com", SECRET).ok is True


def test_unknown_identity_counts_as_a_failed_attempt(core):
    res = core.authenticate("ghost@example.com", SECRET)
    assert res.ok is False
    assert res.reason == DenialReason.unknown_identity
    assert res.failure_count == 1
    assert isinstance(res.to_error(), UnknownIdentityError)
    assert core.governor.state("ghost@example.com").failure_count == 1

    _fail(core, "ghost@example.com", 5)
    assert core.authenticate("ghost@example.com", SECRET).reason == DenialReason.locked_out
    assert not core.is_registered("ghost@example.com")


def test_new_device_flagged_once(core):
    core.register("alice@example.com", SECRET)
    assert core.authenticate("alice@example.com", SECRET, "Device-1").new_device is False
    assert core.authenticate("alice@example.com", SECRET, "Device-2").new_device is True
    assert core.authenticate("alice@example.com", SECRET, "Device-2").new_device is False
    assert len(core.audit_entries(action=AuditAction.new_device)) == 1


def test_failed_attempts_do_not_register_devices(core):
    core.register("alice@example.com", SECRET)
    core.authenticate("alice@example.com", SECRET, "Device-1")
    core.authenticate("alice@example.com", "wrong", "Device-evil")
    assert core.detector.known_devices("alice@example.com") == frozenset({"Device-1"})


def test_suspicious_origin_is_audited_but_not_blocking(core, clock):
    core.register("alice@example.com", SECRET)
    core.authenticate("alice@example.com", SECRET, "Device-1", NEW_YORK)
    clock.advance(30 * 60)
    res = core.authenticate("alice@example.com", SECRET, "Device-2", LONDON, trace_id="hop")
    assert res.ok is True
    assert res.suspicious_origin is True
    assert res.new_device is True

    tail = core.audit_entries(identity="alice@example.com")[-3:]
    assert [e.action for e in tail] == [AuditAction.new_device, AuditAction.suspicious_origin, AuditAction.login_succeeded]
    assert {e.trace_id for e in tail} == {"hop"}
    assert tail[-1].details.suspicious_origin is True


def test_unknown_origin_never_flags(core, clock):
    core.register("alice@example.com", SECRET)
    core.authenticate("alice@example.com", SECRET, origin=NEW_YORK)
    clock.advance(60)
    assert core.authenticate("alice@example.com", SECRET).suspicious_origin is False
    assert core.authenticate("alice@example.com", SECRET, origin=Origin(city="Nowhere")).suspicious_origin is False


def test_failure_and_audit_are_coupled(core):
    core.register("alice@example.com", SECRET)
    _fail(core, "alice@example.com", 3)
    failed = core.audit_entries(action=AuditAction.login_failed)
    assert [e.details.failure_count for e in failed] == [1, 2, 3]
    assert core.governor.state("alice@example.com").failure_count == 3


def test_corrupted_credential_is_an_integrity_denial(core, rec_logger):
    core.register("alice@example.com", SECRET)
    rec = core._records["alice@example.com"]
    iv, ct, tag = rec.encrypted_secret.split(":")
    flipped = ct[:-1] + ("0" if ct[-1] != "0" else "1")
    core._records["alice@example.com"] = dataclasses.replace(rec, encrypted_secret=f"{iv}:{flipped}:{tag}")

    res = core.authenticate("alice@example.com", SECRET)
    assert res.ok is False
    assert res.reason == DenialReason.integrity_error
    assert isinstance(res.to_error(), IntegrityError)

    (entry,) = core.audit_entries(action=AuditAction.login_failed)
    assert entry.severity.value == "ERROR"
    assert any("integrity" in m for m in rec_logger.messages("ERROR"))


def test_store_sensitive_field_round_trips(core):
    core.register("alice@example.com", SECRET)
    envelope = core.store_sensitive_field("alice@example.com", "ssn", "123-45-6789")
    assert "123-45-6789" not in envelope
    assert core.reveal_sensitive_field(envelope) == "123-45-6789"

    (entry,) = core.audit_entries(action=AuditAction.sensitive_data_stored)
    assert entry.details.fields == ("ssn",)


def test_store_sensitive_fields_batch(core):
    core.register("alice@example.com", SECRET)
    out = core.store_sensitive_fields("alice@example.com", {"mrn": 42, "diagnosis": "J45.909"})
    assert set(out) == {"mrn", "diagnosis"}
    assert core.reveal_sensitive_field(out["mrn"]) == "42"

    (entry,) = core.audit_entries(action=AuditAction.sensitive_data_stored)
    assert entry.details.fields == ("diagnosis", "mrn")


def test_store_sensitive_field_requires_registered_identity(core):
    with pytest.raises(UnknownIdentityError):
        core.store_sensitive_field("ghost@example.com", "ssn", "123-45-6789")
    assert core.audit_entries(action=AuditAction.sensitive_data_stored) == []


@pytest.mark.parametrize("fields", [{}, {"": "x"}, {"ssn": ""}, {"ssn": None}])
def test_store_sensitive_fields_rejects_blank_input(core, fields):
    core.register("alice@example.com", SECRET)
    with pytest.raises(InvalidInputError):
        core.store_sensitive_fields("alice@example.com", fields)


def test_rotate_credential(core):
    core.register("alice@example.com", SECRET)
    core.rotate_credential("alice@example.com", SECRET, "new secret value")

    assert core.authenticate("alice@example.com", SECRET).reason == DenialReason.bad_credential
    assert core.authenticate("alice@example.com", "new secret value").ok is True
    assert core._records["alice@example.com"].rotated_at is not None
    assert len(core.audit_entries(action=AuditAction.credential_rotated)) == 1


def test_rotate_credential_with_wrong_current_secret_counts_as_failure(core):
    core.register("alice@example.com", SECRET)
    with pytest.raises(BadCredentialError):
        core.rotate_credential("alice@example.com", "wrong", "new secret value")
    assert core.governor.state("alice@example.com").failure_count == 1
    assert core.authenticate("alice@example.com", SECRET).ok is True


def test_rotate_credential_respects_lockout(core):
    core.register("alice@example.com", SECRET)
    _fail(core, "alice@example.com", 6)
    with pytest.raises(LockedOutError):
        core.rotate_credential("alice@example.com", SECRET, "new secret value")


def test_secrets_never_reach_audit_or_logs(core, rec_logger):
    core.register("alice@example.com", SECRET)
    core.authenticate("alice@example.com", SECRET, "Device-1", NEW_YORK)
    core.authenticate("alice@example.com", "wrong-password")
    core.store_sensitive_field("alice@example.com", "ssn", "123-45-6789")
    core.rotate_credential("alice@example.com", SECRET, "brand new secret")

    dumped = json.dumps([e.model_dump(mode="json") for e in core.audit_entries()])
    logged = "\n".join(m for _, m in rec_logger.records)
    for plaintext in (SECRET, "wrong-password", "123-45-6789", "brand new secret"):
        assert plaintext not in dumped
        assert plaintext not in logged


def test_sweep_audit_passthrough(core, clock):
    core.register("alice@example.com", SECRET)
    clock.advance(181 * 86400)
    assert core.sweep_audit() == 1
    assert core.audit_entries() == []


def test_from_config_uses_configured_key():
    key = generate_vault_key_bytes()
    cfg = MedguardConfig.model_validate({"vault": {"key_hex": key.hex()}, "lockout": {"failure_threshold": 2}})
    clock = FakeClock()
    core = SecurityCore.from_config(cfg, now=clock.time)
    assert core.vault.key_id == key_id_from_key_bytes(key)
    assert core.governor.cfg.failure_threshold == 2
    assert core.sweeper is not None

    core.register("alice@example.com", SECRET)
    _fail(core, "alice@example.com", 3)
    assert core.authenticate("alice@example.com", SECRET).reason == DenialReason.locked_out


def test_from_config_without_key_warns_and_uses_ephemeral_key():
    logger = RecordingLogger()
    core = SecurityCore.from_config(MedguardConfig(), logger=logger)
    assert any("ephemeral" in m for m in logger.messages("WARNING"))
    core.register("alice@example.com", SECRET)
    assert core.authenticate("alice@example.com", SECRET).ok is True


def test_start_and_shutdown_manage_the_sweeper():
    cfg = MedguardConfig.model_validate({"audit": {"sweep_interval_seconds": 0.05}})
    core = SecurityCore.from_config(cfg)
    core.start()
    try:
        assert core.sweeper.is_running()
    finally:
        core.shutdown()
    assert not core.sweeper.is_running()


def test_from_config_wires_one_audit_log_through_every_component():
    clock = FakeClock()
    cfg = MedguardConfig.model_validate({"audit": {"max_age_days": 30}})
    core = SecurityCore.from_config(cfg, now=clock.time)
    assert core.audit_log is core.governor.audit_log
    assert core.audit_log is core.detector.audit_log
    assert core.audit_log is core.sweeper.audit_log
    assert core.audit_log.retention.max_age_days == 30

    core.register("alice@example.com", SECRET)
    _fail(core, "alice@example.com", 6)
    assert len(core.audit_entries(action=AuditAction.lockout_triggered)) == 1

    clock.advance(31 * 86400)
    assert core.sweeper.run_once() == 8
    assert core.audit_entries() == []


def test_injected_empty_audit_log_is_kept(vault, clock):
    log = AuditLog(now=clock.time)
    assert len(log) == 0
    core = SecurityCore(vault=vault, audit_log=log, now=clock.time)
    assert core.audit_log is log
    assert core.governor.audit_log is log
    assert core.detector.audit_log is log


def test_unknown_identity_attempts_leave_no_lock_behind(core):
    for i in range(50):
        core.authenticate(f"ghost{i}@example.com", SECRET)
    assert len(core.governor._locks) == 0
    assert len(core.detector._locks) == 0

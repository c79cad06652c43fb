"""Tests for certsteward.services.orchestrator: LifecycleOrchestrator.

Runs the real file store against a scriptable authority and a settable
clock, so every transition and artifact effect is observable.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import replace
from datetime import timedelta
from pathlib import Path

import pytest

from lifecycle_doubles import make_hook_entry, make_hook_settings, make_material

from certsteward.core.errors import (
    AuthorityUnreachable,
    CertificateNotFound,
    ChallengeFailed,
    ConflictError,
    InvalidDomain,
    JobCancelled,
    RateLimited,
)
from certsteward.core.types import CertificateState, ChallengeType, ErrorKind, RevocationReason
from certsteward.hooks import events
from certsteward.hooks.runner import HookRunner
from certsteward.models.policy import BackoffSchedule, RenewalPolicy
from certsteward.services.orchestrator import LifecycleOrchestrator

_S = CertificateState


@pytest.fixture()
def orchestrator(file_store, authority, clock):
    return LifecycleOrchestrator(file_store, authority, clock=clock)


@pytest.fixture()
def hook_runner():
    runner = HookRunner(
        make_hook_settings(
            make_hook_entry(),
            make_hook_entry("reload", "lifecycle_doubles.FailingHook"),
        ),
    )
    yield runner
    runner.shutdown(wait=True)


def _issued(orchestrator, domains=("example.com",), **kw):
    record = orchestrator.register(list(domains), **kw)
    return orchestrator.issue(record.id)


def _artifact_exists(store, ref) -> bool:
    return (Path(store.vault.root) / ref).is_file()


# =========================================================================
# Registration
# =========================================================================


class TestRegister:
    def test_creates_pending_record(self, orchestrator):
        record = orchestrator.register(["Example.COM", "www.example.com"])
        assert record.id == "example.com"
        assert record.state == _S.PENDING
        assert record.domains == ("example.com", "www.example.com")
        assert record.version == 1
        assert record.challenge_type == ChallengeType.HTTP_01

    def test_custom_id_and_policy(self, orchestrator):
        policy = RenewalPolicy(renew_before_expiry=timedelta(days=10))
        record = orchestrator.register(["example.com"], policy, certificate_id="web")
        assert record.id == "web"
        assert record.renewal_policy == policy

    def test_duplicate_rejected(self, orchestrator):
        orchestrator.register(["example.com"])
        with pytest.raises(ConflictError, match="already registered"):
            orchestrator.register(["example.com"])

    def test_invalid_domain(self, orchestrator):
        with pytest.raises(InvalidDomain):
            orchestrator.register(["*.example.com"], challenge_type=ChallengeType.HTTP_01)

    def test_unknown_hook_rejected(self, file_store, authority, clock, hook_runner):
        orch = LifecycleOrchestrator(file_store, authority, hook_runner, clock=clock)
        with pytest.raises(ValueError, match="Unknown hook"):
            orch.register(["example.com"], hook_names=["nope"])

    def test_remove(self, orchestrator, file_store):
        _issued(orchestrator)
        orchestrator.remove("example.com")
        assert file_store.get("example.com") is None
        with pytest.raises(CertificateNotFound):
            orchestrator.remove("example.com")


# =========================================================================
# Issuance and renewal scenarios
# =========================================================================


class TestIssuance:
    def test_first_issuance(self, orchestrator, clock, caplog):
        """Register then issue: active with a 90-day certificate."""
        orchestrator.register(["example.com"], RenewalPolicy(renew_before_expiry=timedelta(days=30)))
        with caplog.at_level(logging.INFO, logger="certsteward.core.state"):
            orchestrator.issue("example.com")

        record = orchestrator.status("example.com")
        assert record.state == _S.ACTIVE
        assert record.not_after == clock() + timedelta(days=90)
        assert record.failure_count == 0
        assert record.last_attempt.succeeded is True
        for step in ("pending -> challenge_pending", "challenge_pending -> issuing", "issuing -> active"):
            assert step in caplog.text

    def test_issue_requires_pending(self, orchestrator):
        _issued(orchestrator)
        with pytest.raises(ConflictError, match="expected pending"):
            orchestrator.issue("example.com")

    def test_unknown_certificate(self, orchestrator):
        with pytest.raises(CertificateNotFound):
            orchestrator.status("missing.example.com")

    def test_live_paths_installed(self, orchestrator, file_store):
        record = _issued(orchestrator)
        key_path, chain_path = file_store.live_paths(record.id)
        assert "BEGIN CERTIFICATE" in Path(chain_path).read_text(encoding="utf-8")
        assert "PRIVATE KEY" in Path(key_path).read_text(encoding="utf-8")

    def test_unexpected_authority_error_is_unreachable(self, orchestrator, authority):
        orchestrator.register(["example.com"])
        authority.errors = [RuntimeError("socket closed")]
        with pytest.raises(AuthorityUnreachable):
            orchestrator.issue("example.com")
        record = orchestrator.status("example.com")
        assert record.state == _S.PENDING
        assert record.last_attempt.error_kind == ErrorKind.AUTHORITY_UNREACHABLE


class TestRenewal:
    def test_renewal_replaces_material(self, orchestrator, file_store, clock):
        old = _issued(orchestrator)
        clock.advance(days=61)

        renewed = orchestrator.renew("example.com")

        assert renewed.state == _S.ACTIVE
        assert renewed.not_after == clock() + timedelta(days=90)
        assert renewed.serial_number != old.serial_number
        assert not _artifact_exists(file_store, old.private_key_ref)
        assert _artifact_exists(file_store, renewed.private_key_ref)

    def test_challenge_failure_keeps_old_material(self, orchestrator, file_store, authority, clock):
        old = _issued(orchestrator)
        clock.advance(days=61)
        authority.errors = [ChallengeFailed("token not served")]

        with pytest.raises(ChallengeFailed):
            orchestrator.renew("example.com")

        record = orchestrator.status("example.com")
        assert record.state == _S.FAILED
        assert record.private_key_ref == old.private_key_ref
        assert _artifact_exists(file_store, old.certificate_chain_ref)
        key_path, _ = file_store.live_paths(record.id)
        assert Path(key_path).exists()

    def test_transient_failure_reverts_to_active(self, orchestrator, authority, clock):
        _issued(orchestrator)
        clock.advance(days=61)
        authority.errors = [AuthorityUnreachable("connection refused")]

        with pytest.raises(AuthorityUnreachable):
            orchestrator.renew("example.com")

        record = orchestrator.status("example.com")
        assert record.state == _S.ACTIVE
        assert record.failure_count == 1
        assert record.last_attempt.retry_after == clock() + timedelta(hours=1)

    def test_process_not_due_is_noop(self, orchestrator, authority):
        _issued(orchestrator)
        assert orchestrator.process("example.com") is None
        assert len(authority.requests) == 1

    def test_force_renew_outside_window(self, orchestrator, authority):
        old = _issued(orchestrator)
        renewed = orchestrator.force_renew("example.com")
        assert renewed.serial_number != old.serial_number
        assert len(authority.requests) == 2

    def test_force_renew_revoked_conflicts(self, orchestrator):
        _issued(orchestrator)
        orchestrator.revoke("example.com", local_only=True)
        with pytest.raises(ConflictError):
            orchestrator.force_renew("example.com")


# =========================================================================
# Failure handling and backoff
# =========================================================================


class TestFailures:
    def test_challenge_failure_moves_to_failed(self, orchestrator, authority, clock):
        orchestrator.register(["example.com"])
        authority.errors = [ChallengeFailed("incorrect response")]

        with pytest.raises(ChallengeFailed):
            orchestrator.issue("example.com")

        record = orchestrator.status("example.com")
        assert record.state == _S.FAILED
        assert record.failure_count == 1
        assert record.last_attempt.error_kind == ErrorKind.CHALLENGE_FAILED
        assert record.last_attempt.retry_after is None
        assert orchestrator.list_failed() == [record]
        assert orchestrator.process("example.com") is None

    def test_rate_limit_retry_after_wins(self, file_store, authority, clock):
        policy = RenewalPolicy(retry_backoff=BackoffSchedule(initial=timedelta(minutes=5)))
        orch = LifecycleOrchestrator(file_store, authority, clock=clock, default_policy=policy)
        orch.register(["example.com"])
        authority.errors = [RateLimited("too many orders", retry_after=timedelta(hours=1))]

        with pytest.raises(RateLimited):
            orch.issue("example.com")

        record = orch.status("example.com")
        assert record.state == _S.PENDING
        assert record.last_attempt.retry_after == clock() + timedelta(hours=1)

    def test_retries_exhausted(self, file_store, authority, clock):
        orch = LifecycleOrchestrator(
            file_store,
            authority,
            clock=clock,
            default_policy=RenewalPolicy(max_retries=2),
        )
        orch.register(["example.com"])
        authority.errors = [AuthorityUnreachable("down"), AuthorityUnreachable("still down")]

        with pytest.raises(AuthorityUnreachable):
            orch.issue("example.com")
        assert orch.status("example.com").state == _S.PENDING

        clock.advance(hours=2)
        with pytest.raises(AuthorityUnreachable):
            orch.issue("example.com")
        record = orch.status("example.com")
        assert record.state == _S.FAILED
        assert record.failure_count == 2
        assert orch.process("example.com") is None

    def test_reset(self, orchestrator, authority):
        orchestrator.register(["example.com"])
        authority.errors = [ChallengeFailed("nope")]
        with pytest.raises(ChallengeFailed):
            orchestrator.issue("example.com")

        record = orchestrator.reset("example.com")
        assert record.state == _S.PENDING
        assert record.failure_count == 0
        assert orchestrator.issue("example.com").state == _S.ACTIVE

    def test_reset_requires_failed(self, orchestrator):
        orchestrator.register(["example.com"])
        with pytest.raises(ConflictError, match="only failed"):
            orchestrator.reset("example.com")

    def test_force_renew_failed_resets_and_issues(self, orchestrator, authority):
        orchestrator.register(["example.com"])
        authority.errors = [ChallengeFailed("nope")]
        with pytest.raises(ChallengeFailed):
            orchestrator.issue("example.com")
        assert orchestrator.force_renew("example.com").state == _S.ACTIVE


# =========================================================================
# Cancellation, conflicts and recovery
# =========================================================================


class TestConcurrency:
    def test_cancel_discards_material(self, orchestrator, file_store):
        orchestrator.register(["example.com"])
        cancel = threading.Event()
        cancel.set()

        with pytest.raises(JobCancelled):
            orchestrator.issue("example.com", cancel=cancel)

        record = orchestrator.status("example.com")
        assert record.state == _S.PENDING
        assert record.private_key_ref is None
        assert not (Path(file_store.vault.root) / "artifacts" / "example.com").exists()

    def test_conflict_retried_once(self, orchestrator, file_store, monkeypatch):
        orchestrator.register(["example.com"])
        real_upsert = file_store.upsert
        raced = []

        def racing_upsert(record):
            if not raced:
                raced.append(record.id)
                current = file_store.get(record.id)
                real_upsert(replace(current, hook_names=("other-writer",)))
            return real_upsert(record)

        monkeypatch.setattr(file_store, "upsert", racing_upsert)
        record = orchestrator.issue("example.com")
        assert record.state == _S.ACTIVE
        assert raced == ["example.com"]

    def test_recover_interrupted(self, orchestrator, file_store):
        orchestrator.register(["pending.example.com"])
        stuck = file_store.get("pending.example.com")
        file_store.upsert(replace(stuck, state=_S.ISSUING))

        active = _issued(orchestrator, ("renew.example.com",))
        file_store.upsert(replace(active, state=_S.RENEWING))
        orphan = file_store.stage_material(active.id, make_material(("renew.example.com",)))

        recovered = {r.id: r.state for r in orchestrator.recover_interrupted()}

        assert recovered == {"pending.example.com": _S.PENDING, "renew.example.com": _S.ACTIVE}
        assert not _artifact_exists(file_store, orphan.private_key_ref)
        assert _artifact_exists(file_store, active.private_key_ref)


# =========================================================================
# Revocation
# =========================================================================


class TestRevoke:
    def test_revoke_upstream(self, orchestrator, file_store, authority):
        record = _issued(orchestrator)
        revoked = orchestrator.revoke("example.com", RevocationReason.SUPERSEDED)

        assert revoked.state == _S.REVOKED
        assert revoked.private_key_ref is None
        [(chain_pem, reason)] = authority.revoked
        assert "BEGIN CERTIFICATE" in chain_pem
        assert reason == RevocationReason.SUPERSEDED
        assert not _artifact_exists(file_store, record.private_key_ref)

    def test_upstream_failure_leaves_record(self, orchestrator, authority):
        _issued(orchestrator)
        authority.revoke_error = AuthorityUnreachable("down")
        with pytest.raises(AuthorityUnreachable):
            orchestrator.revoke("example.com")
        assert orchestrator.status("example.com").state == _S.ACTIVE

    def test_local_only_skips_authority(self, orchestrator, authority):
        _issued(orchestrator)
        orchestrator.revoke("example.com", local_only=True)
        assert authority.revoked == []

    def test_revoked_is_terminal(self, orchestrator):
        _issued(orchestrator)
        orchestrator.revoke("example.com", local_only=True)
        with pytest.raises(ConflictError, match="already revoked"):
            orchestrator.revoke("example.com")
        assert orchestrator.process("example.com") is None


# =========================================================================
# Hooks
# =========================================================================


class TestHooks:
    def test_issued_event_dispatched(self, file_store, authority, clock, hook_runner):
        orch = LifecycleOrchestrator(file_store, authority, hook_runner, clock=clock)
        orch.register(["example.com"], hook_names=["recorder"])
        record = orch.issue("example.com")
        hook_runner.shutdown(wait=True)

        [(method, ctx)] = hook_runner._hooks["recorder"].instance.calls
        assert method == "on_certificate_issued"
        assert ctx["serial_number"] == record.serial_number
        assert ctx["chain_path"] == file_store.live_paths(record.id)[1]

    def test_hook_failure_never_touches_record(self, file_store, authority, clock, hook_runner):
        orch = LifecycleOrchestrator(file_store, authority, hook_runner, clock=clock)
        orch.register(["example.com"], hook_names=["reload"])
        record = orch.issue("example.com")
        hook_runner.shutdown(wait=True)

        assert orch.status("example.com") == record
        [result] = hook_runner.results_for("example.com")
        assert result.outcome == "error"

    def test_run_hook(self, file_store, authority, clock, hook_runner):
        orch = LifecycleOrchestrator(file_store, authority, hook_runner, clock=clock)
        _issued(orch)
        result = orch.run_hook("example.com", "recorder", event=events.CERTIFICATE_RENEWED)
        assert result.outcome == "success"
        assert result.event == events.CERTIFICATE_RENEWED

    def test_run_hook_unknown(self, file_store, authority, clock, hook_runner):
        orch = LifecycleOrchestrator(file_store, authority, hook_runner, clock=clock)
        _issued(orch)
        with pytest.raises(KeyError):
            orch.run_hook("example.com", "missing")

    def test_run_hook_without_runner(self, orchestrator):
        _issued(orchestrator)
        with pytest.raises(KeyError, match="disabled"):
            orchestrator.run_hook("example.com", "recorder")

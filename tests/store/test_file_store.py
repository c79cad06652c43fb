"""Tests for the file-backed certificate store and its artifact vault."""

from __future__ import annotations

import os
import stat
from dataclasses import replace
from datetime import UTC, datetime, timedelta

import pytest

from lifecycle_doubles import make_material

from certsteward.core.errors import ArtifactCorruption, ConflictError, InvalidDomain
from certsteward.core.types import CertificateState, ChallengeType, ErrorKind
from certsteward.models.certificate import AttemptOutcome, CertificateRecord
from certsteward.models.policy import BackoffSchedule, RenewalPolicy

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)


def _record(cid: str = "example.com", **kw) -> CertificateRecord:
    defaults = {"id": cid, "domains": (cid,)}
    defaults.update(kw)
    return CertificateRecord(**defaults)


def _active(store, cid: str = "example.com", *, not_after: datetime, **kw) -> CertificateRecord:
    """Store an active record with real artifacts expiring at *not_after*."""
    material = make_material((cid,), not_before=not_after - timedelta(days=90))
    refs = store.stage_material(cid, material)
    return store.upsert(
        _record(
            cid,
            state=CertificateState.ACTIVE,
            not_before=material.not_before,
            not_after=not_after,
            private_key_ref=refs.private_key_ref,
            certificate_chain_ref=refs.certificate_chain_ref,
            serial_number=material.serial_number,
            fingerprint=material.fingerprint,
            **kw,
        ),
    )


# ---------------------------------------------------------------------------
# Compare-and-swap
# ---------------------------------------------------------------------------


class TestUpsert:
    def test_new_record_gets_version_one(self, file_store):
        stored = file_store.upsert(_record())
        assert stored.version == 1
        assert stored.created_at == stored.updated_at
        assert file_store.get("example.com") == stored

    def test_stale_version_conflicts(self, file_store):
        """Two writers read v1; the second write loses."""
        file_store.upsert(_record())
        first = file_store.get("example.com")
        second = file_store.get("example.com")

        file_store.upsert(replace(first, failure_count=1))
        with pytest.raises(ConflictError) as info:
            file_store.upsert(replace(second, failure_count=2))

        assert info.value.kind == ErrorKind.CONFLICT
        current = file_store.get("example.com")
        assert current.version == 2
        assert current.failure_count == 1

    def test_duplicate_create_conflicts(self, file_store):
        file_store.upsert(_record())
        with pytest.raises(ConflictError):
            file_store.upsert(_record())

    def test_created_at_preserved(self, file_store):
        first = file_store.upsert(_record())
        second = file_store.upsert(replace(first, failure_count=1))
        assert second.created_at == first.created_at
        assert second.version == 2

    def test_record_file_is_private(self, file_store):
        file_store.upsert(_record())
        path = file_store.vault.root / "records" / "example.com.json"
        assert stat.S_IMODE(os.stat(path).st_mode) == 0o600

    def test_unsafe_id_rejected(self, file_store):
        with pytest.raises(InvalidDomain):
            file_store.upsert(_record("../escape"))


class TestRoundTrip:
    def test_all_fields_survive(self, file_store):
        policy = RenewalPolicy(
            renew_before_expiry=timedelta(days=21),
            max_retries=3,
            retry_backoff=BackoffSchedule(
                initial=timedelta(minutes=5),
                multiplier=3.0,
                max_delay=timedelta(hours=6),
            ),
        )
        record = _record(
            "shop",
            domains=("shop.example.com", "www.shop.example.com"),
            state=CertificateState.PENDING,
            challenge_type=ChallengeType.DNS_01,
            renewal_policy=policy,
            last_attempt=AttemptOutcome(
                at=NOW,
                succeeded=False,
                error_kind=ErrorKind.RATE_LIMITED,
                detail="too many orders",
                retry_after=NOW + timedelta(hours=1),
            ),
            failure_count=1,
            hook_names=("reload-nginx",),
        )
        stored = file_store.upsert(record)
        loaded = file_store.get("shop")
        assert loaded == stored
        assert loaded.renewal_policy == policy
        assert loaded.last_attempt.retry_after == NOW + timedelta(hours=1)
        assert loaded.domains == ("shop.example.com", "www.shop.example.com")


# ---------------------------------------------------------------------------
# list_due
# ---------------------------------------------------------------------------


class TestListDue:
    def test_window_boundary_is_inclusive(self, file_store):
        """A record exactly renew_before_expiry from expiry is due."""
        _active(file_store, "edge.example.com", not_after=NOW + timedelta(days=30))
        _active(file_store, "later.example.com", not_after=NOW + timedelta(days=30, seconds=1))
        due = [r.id for r in file_store.list_due(NOW)]
        assert due == ["edge.example.com"]

    def test_horizon_widens_window(self, file_store):
        _active(file_store, "soon.example.com", not_after=NOW + timedelta(days=32))
        assert file_store.list_due(NOW) == []
        due = file_store.list_due(NOW, horizon=timedelta(days=2))
        assert [r.id for r in due] == ["soon.example.com"]

    def test_pending_is_due(self, file_store):
        file_store.upsert(_record("new.example.com"))
        assert [r.id for r in file_store.list_due(NOW)] == ["new.example.com"]

    def test_backoff_respected(self, file_store):
        attempt = AttemptOutcome(
            at=NOW,
            succeeded=False,
            error_kind=ErrorKind.RATE_LIMITED,
            retry_after=NOW + timedelta(hours=1),
        )
        file_store.upsert(_record(last_attempt=attempt, failure_count=1))
        assert file_store.list_due(NOW + timedelta(minutes=59)) == []
        assert len(file_store.list_due(NOW + timedelta(hours=1))) == 1

    def test_failed_challenge_never_due(self, file_store):
        attempt = AttemptOutcome(at=NOW, succeeded=False, error_kind=ErrorKind.CHALLENGE_FAILED)
        file_store.upsert(
            _record(state=CertificateState.FAILED, last_attempt=attempt, failure_count=1),
        )
        assert file_store.list_due(NOW + timedelta(days=365)) == []

    def test_failed_transient_due_while_retries_remain(self, file_store):
        attempt = AttemptOutcome(at=NOW, succeeded=False, error_kind=ErrorKind.AUTHORITY_UNREACHABLE)
        file_store.upsert(
            _record("a.example.com", state=CertificateState.FAILED, last_attempt=attempt, failure_count=1),
        )
        file_store.upsert(
            _record("b.example.com", state=CertificateState.FAILED, last_attempt=attempt, failure_count=5),
        )
        assert [r.id for r in file_store.list_due(NOW)] == ["a.example.com"]

    def test_revoked_and_in_flight_never_due(self, file_store):
        file_store.upsert(_record("r.example.com", state=CertificateState.REVOKED))
        file_store.upsert(_record("c.example.com", state=CertificateState.CHALLENGE_PENDING))
        assert file_store.list_due(NOW) == []

    def test_ordered_by_expiry_then_pending(self, file_store):
        file_store.upsert(_record("aaa.example.com"))
        _active(file_store, "late.example.com", not_after=NOW + timedelta(days=20))
        _active(file_store, "early.example.com", not_after=NOW + timedelta(days=5))
        due = [r.id for r in file_store.list_due(NOW)]
        assert due == ["early.example.com", "late.example.com", "aaa.example.com"]


# ---------------------------------------------------------------------------
# Artifacts and corruption
# ---------------------------------------------------------------------------


class TestArtifacts:
    def test_stage_and_load(self, file_store):
        record = _active(file_store, not_after=NOW + timedelta(days=60))
        key, chain = file_store.load_material(record)
        assert "PRIVATE KEY" in key
        assert "BEGIN CERTIFICATE" in chain
        key_path = file_store.vault.root / record.private_key_ref
        assert stat.S_IMODE(os.stat(key_path).st_mode) == 0o600

    def test_install_live_links(self, file_store):
        record = _active(file_store, not_after=NOW + timedelta(days=60))
        file_store.install_live(record)
        key_path, chain_path = file_store.live_paths(record.id)
        with open(chain_path, encoding="utf-8") as fh:
            assert "BEGIN CERTIFICATE" in fh.read()
        assert os.path.islink(key_path)

    def test_missing_artifact_marks_failed_on_load(self, file_store):
        record = _active(file_store, not_after=NOW + timedelta(days=60))
        os.remove(file_store.vault.root / record.certificate_chain_ref)

        loaded = file_store.get(record.id)

        assert loaded.state == CertificateState.FAILED
        assert loaded.last_attempt.error_kind == ErrorKind.ARTIFACT_CORRUPTION
        assert file_store.get(record.id).state == CertificateState.FAILED

    def test_load_rejects_non_pem(self, file_store):
        record = _active(file_store, not_after=NOW + timedelta(days=60))
        (file_store.vault.root / record.private_key_ref).write_text("garbage", encoding="utf-8")
        with pytest.raises(ArtifactCorruption):
            file_store.load_material(record)

    def test_prune_keeps_referenced_generation(self, file_store):
        record = _active(file_store, not_after=NOW + timedelta(days=60))
        orphan = file_store.stage_material(record.id, make_material())
        assert file_store.prune_orphans(record) == 1
        assert not (file_store.vault.root / orphan.private_key_ref).exists()
        assert (file_store.vault.root / record.private_key_ref).exists()

    def test_delete_removes_everything(self, file_store):
        record = _active(file_store, not_after=NOW + timedelta(days=60))
        file_store.install_live(record)
        assert file_store.delete(record.id) is True
        assert file_store.get(record.id) is None
        assert not (file_store.vault.root / "artifacts" / record.id).exists()
        assert file_store.delete(record.id) is False

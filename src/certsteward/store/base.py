"""Abstract certificate store.

The store is the only shared mutable resource in CertSteward.  Every
metadata write is a compare-and-swap on the record's ``version``
counter: a writer must have observed the current version or the write
fails with :class:`~certsteward.core.errors.ConflictError`.

Key and chain artifacts are owned by the store's :class:`ArtifactVault`
and are always written *before* a record is flipped to ``active``.  A
record in a servable state whose artifacts are missing is marked
``failed`` with ``artifact_corruption`` when it is loaded.
"""

from __future__ import annotations

import abc
import logging
from dataclasses import replace
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING

from certsteward.core.errors import ArtifactCorruption, ConflictError
from certsteward.core.state import assert_transition, log_transition
from certsteward.core.types import CertificateState, ErrorKind
from certsteward.models.certificate import AttemptOutcome
from certsteward.store.artifacts import CHAIN_FILENAME, KEY_FILENAME

if TYPE_CHECKING:
    from collections.abc import Iterable

    from certsteward.models.certificate import (
        ArtifactRefs,
        CertificateMaterial,
        CertificateRecord,
    )
    from certsteward.store.artifacts import ArtifactVault

log = logging.getLogger(__name__)

_CHECKED_STATES = frozenset(
    {
        CertificateState.ACTIVE,
        CertificateState.RENEWAL_DUE,
        CertificateState.RENEWING,
    }
)


def is_due(record: CertificateRecord, now: datetime, horizon: timedelta) -> bool:
    """Return whether *record* should be handed to the orchestrator at *now*.

    * ``active`` / ``renewal_due``: ``not_after - now <= renew_before_expiry
      + horizon`` (inclusive) and any retry backoff has elapsed.
    * ``pending``: never issued or waiting out a transient failure;
      due once backoff has elapsed and retries remain.
    * ``failed``: only after a transient failure, with retries remaining
      and backoff elapsed.  Challenge and domain failures wait for reset.
    """
    state = record.state
    if state in (CertificateState.ACTIVE, CertificateState.RENEWAL_DUE):
        return record.in_renewal_window(now, horizon) and record.backoff_elapsed(now)
    if state == CertificateState.PENDING:
        return not record.retries_exhausted and record.backoff_elapsed(now)
    if state == CertificateState.FAILED:
        attempt = record.last_attempt
        return (
            attempt is not None
            and attempt.transient
            and not record.retries_exhausted
            and record.backoff_elapsed(now)
        )
    return False


class CertificateStore(abc.ABC):
    """Durable record of every managed certificate.

    Subclasses implement the metadata primitives (:meth:`get`,
    :meth:`upsert`, :meth:`delete`, :meth:`list_all`); artifact
    handling and the due computation are shared.

    Parameters
    ----------
    vault:
        Artifact directory manager owning key/chain files.

    """

    def __init__(self, vault: ArtifactVault) -> None:
        self._vault = vault

    @property
    def vault(self) -> ArtifactVault:
        return self._vault

    # -- metadata primitives -------------------------------------------------

    @abc.abstractmethod
    def _read(self, certificate_id: str) -> CertificateRecord | None:
        """Return the stored record without artifact verification."""

    @abc.abstractmethod
    def _read_all(self) -> list[CertificateRecord]:
        """Return every stored record without artifact verification."""

    @abc.abstractmethod
    def upsert(self, record: CertificateRecord) -> CertificateRecord:
        """Atomically store *record* if its version matches the stored one.

        New records carry ``version == 0``.  The stored (and returned)
        copy has ``version + 1`` and a refreshed ``updated_at``.

        Raises
        ------
        ConflictError
            If the stored version differs from ``record.version``.

        """

    @abc.abstractmethod
    def _delete_metadata(self, certificate_id: str) -> bool:
        """Remove the metadata for *certificate_id*; return whether it existed."""

    # -- public read API -----------------------------------------------------

    def get(self, certificate_id: str) -> CertificateRecord | None:
        record = self._read(certificate_id)
        return self._on_load(record) if record is not None else None

    def list_all(self) -> list[CertificateRecord]:
        return [self._on_load(r) for r in self._read_all()]

    def list_by_state(self, *states: CertificateState) -> list[CertificateRecord]:
        wanted = set(states)
        return [r for r in self.list_all() if r.state in wanted]

    def list_due(
        self,
        now: datetime | None = None,
        horizon: timedelta = timedelta(0),
    ) -> list[CertificateRecord]:
        """Return records due for issuance, renewal or retry at *now*.

        See :func:`is_due` for the inclusion rules.  Results are ordered
        by soonest expiry first, never-issued records last.
        """
        now = now or datetime.now(UTC)
        due = [r for r in self._candidates(now, horizon) if is_due(r, now, horizon)]
        far = datetime.max.replace(tzinfo=UTC)
        return sorted(due, key=lambda r: (r.not_after or far, r.id))

    def _candidates(self, now: datetime, horizon: timedelta) -> Iterable[CertificateRecord]:  # noqa: ARG002
        return self.list_all()

    def delete(self, certificate_id: str) -> bool:
        """Remove the record and all of its artifacts."""
        existed = self._delete_metadata(certificate_id)
        self._vault.remove_all(certificate_id)
        if existed:
            log.info("Deleted certificate %s", certificate_id)
        return existed

    # -- artifacts -----------------------------------------------------------

    def stage_material(self, certificate_id: str, material: CertificateMaterial) -> ArtifactRefs:
        return self._vault.stage(certificate_id, material)

    def discard_material(self, refs: ArtifactRefs) -> None:
        self._vault.discard(refs)

    def retire_material(self, refs: ArtifactRefs) -> None:
        self._vault.discard(refs)

    def load_material(self, record: CertificateRecord) -> tuple[str, str]:
        refs = record.artifacts
        if refs is None:
            msg = f"Certificate {record.id} has no stored material"
            raise ArtifactCorruption(msg)
        return self._vault.load(refs)

    def install_live(self, record: CertificateRecord) -> None:
        refs = record.artifacts
        if refs is not None:
            self._vault.install_live(record.id, refs)

    def live_paths(self, certificate_id: str) -> tuple[str, str]:
        """Return the stable ``(key_path, chain_path)`` a proxy should read."""
        live = self._vault.live_dir(certificate_id)
        return str(live / KEY_FILENAME), str(live / CHAIN_FILENAME)

    def prune_orphans(self, record: CertificateRecord) -> int:
        return self._vault.prune(record.id, record.artifacts)

    def remove_artifacts(self, certificate_id: str) -> None:
        self._vault.remove_all(certificate_id)

    def verify_artifacts(self) -> list[CertificateRecord]:
        """Check every record's artifacts; return the records marked failed."""
        marked = []
        for record in self._read_all():
            checked = self._on_load(record)
            if checked.state != record.state:
                marked.append(checked)
        return marked

    # -- load-time corruption check -----------------------------------------

    def _on_load(self, record: CertificateRecord) -> CertificateRecord:
        if record.state not in _CHECKED_STATES:
            return record
        refs = record.artifacts
        if refs is not None and record.not_after is not None and self._vault.exists(refs):
            return record
        return self._mark_corrupt(record)

    def _mark_corrupt(self, record: CertificateRecord) -> CertificateRecord:
        now = datetime.now(UTC)
        assert_transition(record.state, CertificateState.FAILED)
        failed = replace(
            record,
            state=CertificateState.FAILED,
            last_attempt=AttemptOutcome(
                at=now,
                succeeded=False,
                error_kind=ErrorKind.ARTIFACT_CORRUPTION,
                detail="Referenced key or chain artifact is missing",
            ),
        )
        try:
            stored = self.upsert(failed)
        except ConflictError:
            # Another writer got there first; report its view.
            current = self._read(record.id)
            return current if current is not None else failed
        log_transition(
            record.id,
            record.state,
            CertificateState.FAILED,
            reason="artifact corruption",
        )
        log.error(
            "Certificate %s references missing artifacts; marked failed",
            record.id,
        )
        return stored

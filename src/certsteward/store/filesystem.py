"""Filesystem-backed certificate store.

Layout under the configured root::

    records/<id>.json      metadata document (atomic rename on write)
    locks/<id>.lock        advisory lock serialising compare-and-swap
    artifacts/...          key/chain generations (see ArtifactVault)
    live/<id>/             symlinks to the committed generation

The in-process lock table serialises threads; ``fcntl.flock`` on the
per-record lock file serialises separate processes (daemon and CLI).
"""

from __future__ import annotations

import fcntl
import json
import logging
import os
import threading
from contextlib import contextmanager
from dataclasses import replace
from datetime import UTC, datetime
from pathlib import Path
from typing import TYPE_CHECKING

from certsteward.core.domains import validate_certificate_id
from certsteward.core.errors import ConflictError
from certsteward.store.artifacts import ArtifactVault, write_private
from certsteward.store.base import CertificateStore
from certsteward.store.serialization import record_from_dict, record_to_dict

if TYPE_CHECKING:
    from collections.abc import Iterator

    from certsteward.models.certificate import CertificateRecord

log = logging.getLogger(__name__)

_RECORD_MODE = 0o600


class FileCertificateStore(CertificateStore):
    """Certificate store keeping one JSON document per record.

    Parameters
    ----------
    root:
        Base directory for records, locks and artifacts.

    """

    def __init__(self, root: str | Path) -> None:
        super().__init__(ArtifactVault(root))
        self._records = self.vault.root / "records"
        self._locks_dir = self.vault.root / "locks"
        self._records.mkdir(parents=True, exist_ok=True)
        self._locks_dir.mkdir(parents=True, exist_ok=True)
        self._thread_locks: dict[str, threading.Lock] = {}
        self._table_lock = threading.Lock()

    def _path(self, certificate_id: str) -> Path:
        validate_certificate_id(certificate_id)
        return self._records / f"{certificate_id}.json"

    @contextmanager
    def _locked(self, certificate_id: str) -> Iterator[None]:
        with self._table_lock:
            lock = self._thread_locks.setdefault(certificate_id, threading.Lock())
        with lock:
            fd = os.open(self._locks_dir / f"{certificate_id}.lock", os.O_RDWR | os.O_CREAT, 0o600)
            try:
                fcntl.flock(fd, fcntl.LOCK_EX)
                yield
            finally:
                fcntl.flock(fd, fcntl.LOCK_UN)
                os.close(fd)

    def _load_file(self, path: Path) -> CertificateRecord | None:
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return None
        return record_from_dict(data)

    # -- primitives ----------------------------------------------------------

    def _read(self, certificate_id: str) -> CertificateRecord | None:
        return self._load_file(self._path(certificate_id))

    def _read_all(self) -> list[CertificateRecord]:
        records = []
        for path in sorted(self._records.glob("*.json")):
            try:
                record = self._load_file(path)
            except (ValueError, KeyError):
                log.exception("Skipping unreadable record document %s", path)
                continue
            if record is not None:
                records.append(record)
        return records

    def upsert(self, record: CertificateRecord) -> CertificateRecord:
        path = self._path(record.id)
        with self._locked(record.id):
            current = self._load_file(path)
            current_version = current.version if current is not None else 0
            if current_version != record.version:
                msg = (
                    f"Certificate {record.id} was modified concurrently "
                    f"(expected version {record.version}, found {current_version})"
                )
                raise ConflictError(msg)
            now = datetime.now(UTC)
            stored = replace(
                record,
                version=record.version + 1,
                created_at=current.created_at if current is not None else now,
                updated_at=now,
            )
            write_private(
                path,
                json.dumps(record_to_dict(stored), indent=2, sort_keys=True),
                _RECORD_MODE,
            )
        return stored

    def _delete_metadata(self, certificate_id: str) -> bool:
        path = self._path(certificate_id)
        with self._locked(certificate_id):
            try:
                path.unlink()
            except FileNotFoundError:
                return False
        return True

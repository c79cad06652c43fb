"""On-disk key and chain artifacts.

Every issuance writes a fresh *generation* directory::

    <root>/artifacts/<certificate-id>/<generation>/privkey.pem
    <root>/artifacts/<certificate-id>/<generation>/fullchain.pem

Generations are immutable once written.  A record references exactly
one generation; older generations are retired only after the record
pointing at the newer one has been committed.  ``<root>/live/<id>/``
holds symlinks to the committed generation so a reverse proxy can read
a stable path.
"""

from __future__ import annotations

import logging
import os
import secrets
import shutil
from datetime import UTC, datetime
from pathlib import Path
from typing import TYPE_CHECKING

from certsteward.core.errors import ArtifactCorruption
from certsteward.models.certificate import ArtifactRefs

if TYPE_CHECKING:
    from certsteward.models.certificate import CertificateMaterial

log = logging.getLogger(__name__)

KEY_FILENAME = "privkey.pem"
CHAIN_FILENAME = "fullchain.pem"

_DIR_MODE = 0o700
_KEY_MODE = 0o600
_CHAIN_MODE = 0o644


def write_private(path: Path, data: str, mode: int) -> None:
    """Write *data* to *path* atomically with permission *mode*."""
    tmp = path.with_name(f".{path.name}.{secrets.token_hex(4)}.tmp")
    fd = os.open(tmp, os.O_WRONLY | os.O_CREAT | os.O_EXCL, mode)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            fh.write(data)
            fh.flush()
            os.fsync(fh.fileno())
        os.replace(tmp, path)
    except BaseException:
        tmp.unlink(missing_ok=True)
        raise


class ArtifactVault:
    """Owns the key/chain files of every managed certificate.

    Parameters
    ----------
    root:
        Base directory; ``artifacts/`` and ``live/`` are created beneath it.

    """

    def __init__(self, root: str | Path) -> None:
        self._root = Path(root)
        self._artifacts = self._root / "artifacts"
        self._live = self._root / "live"
        for directory in (self._root, self._artifacts, self._live):
            directory.mkdir(parents=True, exist_ok=True)
            os.chmod(directory, _DIR_MODE)

    @property
    def root(self) -> Path:
        return self._root

    def _resolve(self, ref: str) -> Path:
        path = (self._root / ref).resolve()
        if self._artifacts.resolve() not in path.parents:
            msg = f"Artifact reference '{ref}' escapes the artifact directory"
            raise ArtifactCorruption(msg)
        return path

    def stage(self, certificate_id: str, material: CertificateMaterial) -> ArtifactRefs:
        """Write *material* into a new generation and return its references."""
        generation = f"{datetime.now(UTC):%Y%m%dT%H%M%S}-{secrets.token_hex(4)}"
        gen_dir = self._artifacts / certificate_id / generation
        gen_dir.mkdir(parents=True, mode=_DIR_MODE)
        os.chmod(gen_dir.parent, _DIR_MODE)
        write_private(gen_dir / KEY_FILENAME, material.private_key_pem, _KEY_MODE)
        write_private(gen_dir / CHAIN_FILENAME, material.chain_pem, _CHAIN_MODE)
        rel = gen_dir.relative_to(self._root).as_posix()
        log.debug("Staged artifacts for %s in %s", certificate_id, rel)
        return ArtifactRefs(
            private_key_ref=f"{rel}/{KEY_FILENAME}",
            certificate_chain_ref=f"{rel}/{CHAIN_FILENAME}",
        )

    def discard(self, refs: ArtifactRefs) -> None:
        """Remove the generation directory that *refs* point into."""
        gen_dir = self._resolve(refs.private_key_ref).parent
        shutil.rmtree(gen_dir, ignore_errors=True)
        log.debug("Removed artifact generation %s", gen_dir)

    def exists(self, refs: ArtifactRefs) -> bool:
        try:
            key = self._resolve(refs.private_key_ref)
            chain = self._resolve(refs.certificate_chain_ref)
        except ArtifactCorruption:
            return False
        return key.is_file() and chain.is_file()

    def load(self, refs: ArtifactRefs) -> tuple[str, str]:
        """Return ``(private_key_pem, chain_pem)``.

        Raises
        ------
        ArtifactCorruption
            If either file is missing or unreadable.

        """
        try:
            key = self._resolve(refs.private_key_ref).read_text(encoding="utf-8")
            chain = self._resolve(refs.certificate_chain_ref).read_text(encoding="utf-8")
        except OSError as exc:
            msg = f"Cannot read artifacts: {exc}"
            raise ArtifactCorruption(msg) from exc
        if "PRIVATE KEY" not in key or "CERTIFICATE" not in chain:
            msg = "Stored artifacts are not PEM key/chain material"
            raise ArtifactCorruption(msg)
        return key, chain

    def live_dir(self, certificate_id: str) -> Path:
        return self._live / certificate_id

    def install_live(self, certificate_id: str, refs: ArtifactRefs) -> None:
        """Point ``live/<id>/`` symlinks at the generation in *refs*."""
        live = self.live_dir(certificate_id)
        live.mkdir(parents=True, exist_ok=True)
        for name, ref in (
            (KEY_FILENAME, refs.private_key_ref),
            (CHAIN_FILENAME, refs.certificate_chain_ref),
        ):
            target = os.path.relpath(self._resolve(ref), live)
            tmp = live / f".{name}.{secrets.token_hex(4)}"
            os.symlink(target, tmp)
            os.replace(tmp, live / name)

    def remove_all(self, certificate_id: str) -> None:
        """Remove every generation and the live links for *certificate_id*."""
        shutil.rmtree(self._artifacts / certificate_id, ignore_errors=True)
        shutil.rmtree(self.live_dir(certificate_id), ignore_errors=True)

    def prune(self, certificate_id: str, keep: ArtifactRefs | None) -> int:
        """Remove generations of *certificate_id* other than *keep*.

        Leftovers come from jobs interrupted between staging and commit.
        Returns the number of generations removed.
        """
        base = self._artifacts / certificate_id
        if not base.is_dir():
            return 0
        keep_dir = self._resolve(keep.private_key_ref).parent if keep is not None else None
        removed = 0
        for gen_dir in base.iterdir():
            if gen_dir.is_dir() and gen_dir.resolve() != keep_dir:
                shutil.rmtree(gen_dir, ignore_errors=True)
                removed += 1
        if removed:
            log.info("Pruned %d orphaned artifact generation(s) for %s", removed, certificate_id)
        return removed

"""Per-certificate lock table.

Serialises jobs for the same certificate id inside one process.  The
scheduler and the operator surfaces share a single table so that a
forced renewal never overlaps a scheduled one.  Cross-process safety
comes from the store's compare-and-swap.
"""

from __future__ import annotations

import threading
from contextlib import contextmanager
from typing import TYPE_CHECKING

from certsteward.core.errors import ConflictError

if TYPE_CHECKING:
    from collections.abc import Iterator


class LockTable:
    """Non-blocking per-id locks."""

    def __init__(self) -> None:
        self._held: set[str] = set()
        self._lock = threading.Lock()

    def acquire(self, certificate_id: str) -> bool:
        """Take the lock for *certificate_id*; return ``False`` if already held."""
        with self._lock:
            if certificate_id in self._held:
                return False
            self._held.add(certificate_id)
            return True

    def release(self, certificate_id: str) -> None:
        with self._lock:
            self._held.discard(certificate_id)

    def is_held(self, certificate_id: str) -> bool:
        with self._lock:
            return certificate_id in self._held

    def held(self) -> frozenset[str]:
        with self._lock:
            return frozenset(self._held)

    @contextmanager
    def hold(self, certificate_id: str) -> Iterator[None]:
        """Context manager form of :meth:`acquire`.

        Raises
        ------
        ConflictError
            If a job for *certificate_id* is already running.

        """
        if not self.acquire(certificate_id):
            msg = f"A job for certificate {certificate_id} is already running"
            raise ConflictError(msg)
        try:
            yield
        finally:
            self.release(certificate_id)

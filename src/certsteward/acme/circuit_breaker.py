"""Circuit breaker for certificate authority calls.

Wraps a :class:`CertificateAuthority` so that a dead or overloaded
authority is not hammered by every due certificate on a tick.  Only
transient failures (``RateLimited``, ``AuthorityUnreachable``) count
toward the threshold; challenge and domain failures pass through.

States:
    **closed** -- requests pass through normally.  Failures are counted.
    **open** -- requests fail immediately with ``AuthorityUnreachable``.
    **half-open** -- one probe request is allowed through; success resets
    to closed, failure reopens.
"""

from __future__ import annotations

import logging
import threading
import time
from enum import Enum
from typing import TYPE_CHECKING

from certsteward.acme.base import CertificateAuthority
from certsteward.core.errors import AuthorityUnreachable, LifecycleError

if TYPE_CHECKING:
    from certsteward.core.types import ChallengeType, RevocationReason
    from certsteward.models.certificate import CertificateMaterial

log = logging.getLogger(__name__)


class _State(Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreakerAuthority(CertificateAuthority):
    """Transparent circuit breaker around a real authority adapter.

    Parameters
    ----------
    authority:
        The adapter to protect.
    failure_threshold:
        Consecutive transient failures before opening the circuit.
    recovery_timeout:
        Seconds to wait in the open state before allowing a probe.

    """

    def __init__(
        self,
        authority: CertificateAuthority,
        failure_threshold: int = 5,
        recovery_timeout: float = 300.0,
    ) -> None:
        self._authority = authority
        self._failure_threshold = failure_threshold
        self._recovery_timeout = recovery_timeout

        self._lock = threading.Lock()
        self._state = _State.CLOSED
        self._failure_count = 0
        self._last_failure_time: float = 0.0
        self._probe_in_flight = False

    @property
    def state(self) -> str:
        with self._lock:
            return self._state.value

    def request_certificate(
        self,
        domains: tuple[str, ...],
        challenge_type: ChallengeType,
        *,
        cancel: threading.Event | None = None,
    ) -> CertificateMaterial:
        self._check_state()
        try:
            result = self._authority.request_certificate(domains, challenge_type, cancel=cancel)
        except LifecycleError as exc:
            self._on_failure(exc)
            raise
        except Exception as exc:
            self._on_failure(exc)
            raise AuthorityUnreachable(str(exc)) from exc
        self._on_success()
        return result

    def revoke_certificate(
        self,
        chain_pem: str,
        reason: RevocationReason | None = None,
    ) -> None:
        self._check_state()
        try:
            self._authority.revoke_certificate(chain_pem, reason)
        except LifecycleError as exc:
            self._on_failure(exc)
            raise
        self._on_success()

    def startup_check(self) -> None:
        self._authority.startup_check()

    def close(self) -> None:
        self._authority.close()

    def _check_state(self) -> None:
        """Raise immediately if the circuit is open (fail-fast)."""
        with self._lock:
            if self._state == _State.CLOSED:
                return

            if self._state == _State.OPEN:
                elapsed = time.monotonic() - self._last_failure_time
                if elapsed < self._recovery_timeout:
                    msg = (
                        "Authority circuit breaker is open; failing fast "
                        f"(retry in {self._recovery_timeout - elapsed:.0f}s)"
                    )
                    raise AuthorityUnreachable(msg)
                self._state = _State.HALF_OPEN
                self._probe_in_flight = False
                log.info(
                    "Authority circuit breaker: open -> half_open (recovery timeout %.1fs elapsed)",
                    elapsed,
                )

            if self._probe_in_flight:
                msg = "Authority circuit breaker is half-open; probe in progress"
                raise AuthorityUnreachable(msg)
            self._probe_in_flight = True

    def _on_success(self) -> None:
        with self._lock:
            if self._state == _State.HALF_OPEN:
                log.info("Authority circuit breaker: half_open -> closed (probe succeeded)")
            self._state = _State.CLOSED
            self._failure_count = 0
            self._probe_in_flight = False

    def _on_failure(self, exc: Exception) -> None:
        with self._lock:
            if self._state == _State.HALF_OPEN:
                self._state = _State.OPEN
                self._last_failure_time = time.monotonic()
                self._probe_in_flight = False
                log.warning(
                    "Authority circuit breaker: half_open -> open (probe failed: %s)",
                    exc,
                )
                return

            # Only transient errors count toward the threshold
            if isinstance(exc, LifecycleError) and not exc.retryable:
                return

            self._failure_count += 1
            if self._failure_count >= self._failure_threshold:
                self._state = _State.OPEN
                self._last_failure_time = time.monotonic()
                log.warning(
                    "Authority circuit breaker: closed -> open (threshold %d reached: %s)",
                    self._failure_threshold,
                    exc,
                )

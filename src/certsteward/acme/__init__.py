"""Certificate authority adapters and challenge responders.

Public API::

    from certsteward.acme import CertificateAuthority, build_authority
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from certsteward.acme.base import CertificateAuthority
from certsteward.acme.circuit_breaker import CircuitBreakerAuthority
from certsteward.acme.client import AcmeowAuthority
from certsteward.acme.responders import ChallengeResponder, load_responder

if TYPE_CHECKING:
    from certsteward.config.settings import AcmeSettings, ChallengeSettings

__all__ = [
    "AcmeowAuthority",
    "CertificateAuthority",
    "ChallengeResponder",
    "CircuitBreakerAuthority",
    "build_authority",
    "load_responder",
]


def build_authority(acme: AcmeSettings, challenges: ChallengeSettings) -> CertificateAuthority:
    """Build the configured authority adapter, wrapped in a circuit breaker if enabled."""
    responder = load_responder(challenges.responder, challenges.config)
    authority: CertificateAuthority = AcmeowAuthority(acme, responder)
    breaker = acme.circuit_breaker
    if breaker.enabled:
        authority = CircuitBreakerAuthority(
            authority,
            failure_threshold=breaker.failure_threshold,
            recovery_timeout=breaker.recovery_timeout_seconds,
        )
    return authority

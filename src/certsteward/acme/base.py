"""Abstract interfaces for talking to a certificate authority.

:class:`CertificateAuthority` is what the orchestrator calls.  The
concrete adapter decides how challenges are completed by delegating to
a :class:`~certsteward.acme.responders.ChallengeResponder`.

Failures are always raised as members of the lifecycle error taxonomy:
:class:`ChallengeFailed`, :class:`InvalidDomain`, :class:`RateLimited`
or :class:`AuthorityUnreachable`.
"""

from __future__ import annotations

import abc
import logging
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    import threading

    from certsteward.core.types import ChallengeType, RevocationReason
    from certsteward.models.certificate import CertificateMaterial

log = logging.getLogger(__name__)


class CertificateAuthority(abc.ABC):
    """Base class for certificate authority adapters."""

    @abc.abstractmethod
    def request_certificate(
        self,
        domains: tuple[str, ...],
        challenge_type: ChallengeType,
        *,
        cancel: threading.Event | None = None,
    ) -> CertificateMaterial:
        """Obtain a certificate covering every name in *domains*.

        Performs order creation, challenge fulfilment, validation
        polling, finalisation and chain download.  Re-requesting a
        domain set whose validations are still cached must not place
        new challenges.

        Parameters
        ----------
        domains:
            Normalised domain set; the first entry is the primary name.
        challenge_type:
            ``http-01`` or ``dns-01``.
        cancel:
            Optional event checked between protocol steps.

        Returns
        -------
        CertificateMaterial
            Freshly generated key plus the issued chain.

        Raises
        ------
        ChallengeFailed, InvalidDomain, RateLimited, AuthorityUnreachable
            Classified authority failures.
        JobCancelled
            If *cancel* was set between steps.

        """

    @abc.abstractmethod
    def revoke_certificate(
        self,
        chain_pem: str,
        reason: RevocationReason | None = None,
    ) -> None:
        """Ask the authority to revoke the leaf certificate in *chain_pem*.

        Raises
        ------
        AuthorityUnreachable
            If the request could not be delivered.

        """

    def startup_check(self) -> None:
        """Optional startup health check (account registration etc.).

        Default implementation is a no-op.
        """

    def close(self) -> None:
        """Release network resources.  Default implementation is a no-op."""

"""ACME certificate authority adapter built on ACMEOW.

Drives the order, challenge, finalize and download flow against an
ACME directory and classifies every failure into the lifecycle error
taxonomy.  The private key is generated locally and only a CSR is sent
to the authority.

The ACMEOW client is stateful (one current order), so every request
gets its own client on the shared account storage.  The lock covers
loading the account only; orders for distinct domain sets run
concurrently.  Successful validations are remembered per domain for
``acme.validation_cache_seconds``; a request whose domains are all
cached skips challenge placement entirely.
"""

from __future__ import annotations

import logging
import subprocess
import threading
import time
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import TYPE_CHECKING, Any

from acmeow import (
    AcmeAuthorizationError,
    AcmeClient,
    AcmeDnsError,
    AcmeError,
    AcmeNetworkError,
    AcmeRateLimitError,
    AcmeServerError,
    AcmeTimeoutError,
    CallbackDnsHandler,
    CallbackHttpHandler,
    Identifier,
)
from acmeow import ChallengeType as AcmeChallengeType
from acmeow import RevocationReason as AcmeRevocationReason

from certsteward.acme.base import CertificateAuthority
from certsteward.acme.cert_utils import (
    build_csr,
    generate_private_key,
    parse_material,
    private_key_to_pem,
)
from certsteward.acme.responders import ResponderError
from certsteward.core.domains import normalize_domains
from certsteward.core.errors import (
    AuthorityUnreachable,
    ChallengeFailed,
    InvalidDomain,
    JobCancelled,
    LifecycleError,
    RateLimited,
)
from certsteward.core.types import ChallengeType

if TYPE_CHECKING:
    from collections.abc import Callable

    from certsteward.acme.responders import ChallengeResponder
    from certsteward.config.settings import AcmeSettings
    from certsteward.core.types import RevocationReason
    from certsteward.models.certificate import CertificateMaterial

log = logging.getLogger(__name__)

_ACME_ERROR_PREFIX = "urn:ietf:params:acme:error:"

# ACME problem types that mean the identifier itself is unacceptable.
_INVALID_DOMAIN_TYPES = frozenset(
    {"rejectedIdentifier", "unsupportedIdentifier", "caa", "malformed"},
)
# Problem types that mean the authority could not verify control.
_CHALLENGE_TYPES = frozenset(
    {"unauthorized", "incorrectResponse", "dns", "connection", "tls"},
)
_TRANSIENT_TYPES = frozenset({"badNonce", "serverInternal"})


class _Deadline:
    """Monotonic deadline checked between protocol steps."""

    def __init__(self, seconds: float, label: str) -> None:
        self._expires = time.monotonic() + seconds
        self._seconds = seconds
        self._label = label

    def check(self, step: str) -> None:
        if time.monotonic() >= self._expires:
            msg = f"{self._label} exceeded its {self._seconds:.0f}s deadline during {step}"
            raise AuthorityUnreachable(msg)


class AcmeowAuthority(CertificateAuthority):
    """Certificate authority adapter for any RFC 8555 directory.

    Parameters
    ----------
    settings:
        The ``acme`` configuration section.
    responder:
        Challenge responder used to place tokens / TXT records.
    client_factory:
        Callable returning an ``AcmeClient``-compatible object; defaults
        to :class:`acmeow.AcmeClient`.
    clock:
        Returns the current UTC time; used for the validation cache.

    """

    def __init__(
        self,
        settings: AcmeSettings,
        responder: ChallengeResponder,
        *,
        client_factory: Callable[..., Any] | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._settings = settings
        self._responder = responder
        self._client_factory = client_factory or AcmeClient
        self._clock = clock or (lambda: datetime.now(UTC))
        # Account client for startup checks and revocation; orders use their own.
        self._client: Any = None
        self._lock = threading.Lock()
        self._cache_lock = threading.Lock()
        self._validated: dict[tuple[str, ChallengeType], datetime] = {}

    # -- setup ---------------------------------------------------------------

    def startup_check(self) -> None:
        """Create the storage directory and register the ACME account.

        Raises
        ------
        AuthorityUnreachable
            If the directory cannot be reached or registration fails.

        """
        with self._lock:
            self._ensure_client()

    def _ensure_client(self) -> Any:
        if self._client is None:
            self._client = self._connect()
            log.info("Registered ACME account with %s", self._settings.directory_url)
        return self._client

    def _connect(self) -> Any:
        """Build a client on the account storage and load (or create) the account.

        Callers hold ``self._lock`` so that a first registration writes the
        account key exactly once.
        """
        settings = self._settings
        storage = Path(settings.storage_path)
        storage.mkdir(parents=True, exist_ok=True)

        client_kwargs: dict[str, Any] = {
            "server_url": settings.directory_url,
            "email": settings.email,
            "storage_path": storage,
            "timeout": settings.timeout_seconds,
            "order_ready_timeout": settings.order_ready_timeout_seconds,
        }
        if settings.proxy_url:
            client_kwargs["proxy_url"] = settings.proxy_url
        if not settings.verify_ssl:
            client_kwargs["verify_ssl"] = False

        try:
            client = self._client_factory(**client_kwargs)
            if settings.eab_kid and settings.eab_hmac_key:
                client.set_external_account_binding(settings.eab_kid, settings.eab_hmac_key)
            client.create_account(terms_agreed=True)
        except AcmeError as exc:
            raise _translate(exc) from exc
        return client

    def close(self) -> None:
        with self._lock:
            if self._client is not None:
                self._client.close()
                self._client = None

    # -- validation cache ----------------------------------------------------

    def _all_cached(self, domains: tuple[str, ...], challenge_type: ChallengeType) -> bool:
        now = self._clock()
        ttl = timedelta(seconds=self._settings.validation_cache_seconds)
        with self._cache_lock:
            for domain in domains:
                validated_at = self._validated.get((domain, challenge_type))
                if validated_at is None or now - validated_at >= ttl:
                    return False
        return True

    def _remember(self, domains: tuple[str, ...], challenge_type: ChallengeType) -> None:
        now = self._clock()
        with self._cache_lock:
            for domain in domains:
                self._validated[(domain, challenge_type)] = now

    def _forget(self, domains: tuple[str, ...]) -> None:
        with self._cache_lock:
            for key in [k for k in self._validated if k[0] in domains]:
                del self._validated[key]

    # -- issuance ------------------------------------------------------------

    def request_certificate(
        self,
        domains: tuple[str, ...],
        challenge_type: ChallengeType,
        *,
        cancel: threading.Event | None = None,
    ) -> CertificateMaterial:
        domains = normalize_domains(domains, challenge_type)
        deadline = _Deadline(self._settings.order_deadline_seconds, "ACME order")
        client = None
        try:
            with self._lock:
                client = self._connect()
            return self._execute_flow(client, domains, challenge_type, deadline, cancel)
        except LifecycleError as exc:
            if isinstance(exc, (ChallengeFailed, InvalidDomain)):
                self._forget(domains)
            raise
        except AcmeError as exc:
            translated = _translate(exc)
            if isinstance(translated, (ChallengeFailed, InvalidDomain)):
                self._forget(domains)
            raise translated from exc
        except (ResponderError, OSError, subprocess.SubprocessError) as exc:
            self._forget(domains)
            msg = f"Challenge responder failed: {exc}"
            raise ChallengeFailed(msg) from exc
        finally:
            if client is not None:
                client.close()

    def _execute_flow(
        self,
        client: Any,
        domains: tuple[str, ...],
        challenge_type: ChallengeType,
        deadline: _Deadline,
        cancel: threading.Event | None,
    ) -> CertificateMaterial:
        def checkpoint(step: str) -> None:
            if cancel is not None and cancel.is_set():
                msg = f"Cancelled before {step}"
                raise JobCancelled(msg)
            deadline.check(step)

        # 1. Order
        checkpoint("order creation")
        log.info("Creating ACME order for %s", ", ".join(domains))
        client.create_order([Identifier.dns(d) for d in domains])

        # 2. Challenges (skipped when every domain was validated recently)
        checkpoint("challenge completion")
        if self._all_cached(domains, challenge_type):
            log.info("Reusing cached validations for %s", ", ".join(domains))
        else:
            log.info("Completing %s challenges for %d domain(s)", challenge_type, len(domains))
            client.complete_challenges(
                self._build_handler(challenge_type),
                challenge_type=AcmeChallengeType(challenge_type.value),
                verify_dns=self._settings.verify_dns,
                dns_timeout=self._settings.dns_timeout_seconds,
            )
            self._remember(domains, challenge_type)

        # 3. Finalize with a locally generated key
        checkpoint("finalization")
        key = generate_private_key(self._settings.key_type)
        client.finalize_order(csr=build_csr(domains, key))

        # 4. Download
        checkpoint("certificate download")
        chain_pem, _ = client.get_certificate(preferred_chain=self._settings.preferred_chain)
        log.info("Certificate issued for %s", domains[0])
        return parse_material(chain_pem, private_key_to_pem(key))

    def _build_handler(self, challenge_type: ChallengeType) -> Any:
        responder = self._responder
        if challenge_type == ChallengeType.DNS_01:
            return CallbackDnsHandler(
                create_record=responder.create_dns_record,
                delete_record=responder.remove_dns_record,
                propagation_delay=self._settings.dns_propagation_seconds,
            )
        return CallbackHttpHandler(
            setup_callback=responder.place_http_token,
            cleanup_callback=responder.remove_http_token,
        )

    # -- revocation ----------------------------------------------------------

    def revoke_certificate(
        self,
        chain_pem: str,
        reason: RevocationReason | None = None,
    ) -> None:
        with self._lock:
            try:
                client = self._ensure_client()
                client.revoke_certificate(
                    chain_pem,
                    reason=AcmeRevocationReason(int(reason)) if reason is not None else None,
                )
            except AcmeError as exc:
                raise _translate(exc) from exc
        log.info("Revoked certificate upstream")


def _translate(exc: AcmeError) -> LifecycleError:  # noqa: PLR0911
    """Map an ACMEOW exception onto the lifecycle error taxonomy."""
    if isinstance(exc, AcmeRateLimitError):
        retry_after = timedelta(seconds=exc.retry_after) if exc.retry_after else None
        return RateLimited(str(exc), retry_after=retry_after)
    if isinstance(exc, (AcmeNetworkError, AcmeTimeoutError)):
        return AuthorityUnreachable(str(exc))
    if isinstance(exc, (AcmeAuthorizationError, AcmeDnsError)):
        return ChallengeFailed(str(exc))
    if isinstance(exc, AcmeServerError):
        problem = (exc.error_type or "").removeprefix(_ACME_ERROR_PREFIX)
        if problem == "rateLimited":
            return RateLimited(exc.detail)
        if problem in _INVALID_DOMAIN_TYPES:
            return InvalidDomain(exc.detail)
        if problem in _CHALLENGE_TYPES:
            return ChallengeFailed(exc.detail)
        if exc.status_code >= 500 or problem in _TRANSIENT_TYPES:  # noqa: PLR2004
            return AuthorityUnreachable(str(exc))
        return ChallengeFailed(str(exc))
    if _is_retryable(exc):
        return AuthorityUnreachable(str(exc))
    return ChallengeFailed(str(exc))


def _is_retryable(exc: Exception) -> bool:
    """Determine whether an error is transient via name/message heuristics."""
    exc_name = type(exc).__name__.lower()
    retryable_patterns = (
        "timeout",
        "timed out",
        "connection",
        "network",
        "503",
        "429",
    )
    msg = str(exc).lower()
    return any(p in exc_name or p in msg for p in retryable_patterns)

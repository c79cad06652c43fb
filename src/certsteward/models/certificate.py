"""Managed certificate entity and the material it points at."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from certsteward.core.types import (
    TRANSIENT_ERROR_KINDS,
    CertificateState,
    ChallengeType,
    ErrorKind,
)
from certsteward.models.policy import RenewalPolicy

if TYPE_CHECKING:
    from datetime import timedelta

_EPOCH = datetime(1970, 1, 1, tzinfo=UTC)


@dataclass(frozen=True)
class AttemptOutcome:
    """Timestamp and outcome of the most recent issuance or renewal attempt.

    Attributes
    ----------
    at:
        When the attempt finished.
    succeeded:
        Whether a certificate was obtained.
    error_kind:
        Concrete error kind on failure, ``None`` on success.
    detail:
        Human-readable failure detail.
    retry_after:
        Earliest time the next automatic attempt may start.

    """

    at: datetime
    succeeded: bool
    error_kind: ErrorKind | None = None
    detail: str | None = None
    retry_after: datetime | None = None

    @property
    def transient(self) -> bool:
        return self.error_kind in TRANSIENT_ERROR_KINDS


@dataclass(frozen=True)
class ArtifactRefs:
    """Opaque references to a stored key/chain generation."""

    private_key_ref: str
    certificate_chain_ref: str


@dataclass(frozen=True)
class CertificateRecord:
    id: str
    domains: tuple[str, ...]
    state: CertificateState = CertificateState.PENDING
    challenge_type: ChallengeType = ChallengeType.HTTP_01
    renewal_policy: RenewalPolicy = field(default_factory=RenewalPolicy)
    not_before: datetime | None = None
    not_after: datetime | None = None
    private_key_ref: str | None = None
    certificate_chain_ref: str | None = None
    serial_number: str | None = None
    fingerprint: str | None = None
    last_attempt: AttemptOutcome | None = None
    failure_count: int = 0
    hook_names: tuple[str, ...] = ()
    version: int = 0
    created_at: datetime = _EPOCH
    updated_at: datetime = _EPOCH

    @property
    def artifacts(self) -> ArtifactRefs | None:
        if self.private_key_ref and self.certificate_chain_ref:
            return ArtifactRefs(self.private_key_ref, self.certificate_chain_ref)
        return None

    @property
    def has_material(self) -> bool:
        return self.artifacts is not None and self.not_after is not None

    @property
    def retries_exhausted(self) -> bool:
        return self.failure_count >= self.renewal_policy.max_retries

    def renewal_due_at(self) -> datetime | None:
        """Start of the renewal window, or ``None`` before first issuance."""
        if self.not_after is None:
            return None
        return self.not_after - self.renewal_policy.renew_before_expiry

    def backoff_elapsed(self, now: datetime) -> bool:
        if self.last_attempt is None or self.last_attempt.retry_after is None:
            return True
        return self.last_attempt.retry_after <= now

    def in_renewal_window(self, now: datetime, horizon: timedelta) -> bool:
        if self.not_after is None:
            return False
        return self.not_after - now <= self.renewal_policy.renew_before_expiry + horizon


@dataclass(frozen=True)
class CertificateMaterial:
    """Result of a successful issuance.

    Attributes
    ----------
    private_key_pem:
        PEM-encoded private key generated for this certificate.
    chain_pem:
        Full PEM chain (leaf + intermediates).
    not_before:
        Certificate validity start time.
    not_after:
        Certificate validity end time.
    serial_number:
        Hex-encoded serial number.
    fingerprint:
        SHA-256 hex digest of the leaf certificate's DER encoding.

    """

    private_key_pem: str
    chain_pem: str
    not_before: datetime
    not_after: datetime
    serial_number: str
    fingerprint: str

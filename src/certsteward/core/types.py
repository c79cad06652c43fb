"""Enumerated types for the CertSteward lifecycle engine.

All enums inherit from :class:`enum.StrEnum` so their ``.value`` is a
plain string that psycopg serialises as TEXT and JSON round-trips
naturally.
"""

from __future__ import annotations

from enum import IntEnum, StrEnum

# ---------------------------------------------------------------------------
# Certificate lifecycle
# ---------------------------------------------------------------------------


class CertificateState(StrEnum):
    PENDING = "pending"
    CHALLENGE_PENDING = "challenge_pending"
    ISSUING = "issuing"
    ACTIVE = "active"
    RENEWAL_DUE = "renewal_due"
    RENEWING = "renewing"
    FAILED = "failed"
    REVOKED = "revoked"


# ---------------------------------------------------------------------------
# Challenge types
# ---------------------------------------------------------------------------


class ChallengeType(StrEnum):
    HTTP_01 = "http-01"
    DNS_01 = "dns-01"


# ---------------------------------------------------------------------------
# Error kinds (reported verbatim by status queries)
# ---------------------------------------------------------------------------


class ErrorKind(StrEnum):
    CHALLENGE_FAILED = "challenge_failed"
    INVALID_DOMAIN = "invalid_domain"
    RATE_LIMITED = "rate_limited"
    AUTHORITY_UNREACHABLE = "authority_unreachable"
    HOOK_TIMEOUT = "hook_timeout"
    HOOK_NON_ZERO_EXIT = "hook_non_zero_exit"
    CONFLICT = "conflict"
    ARTIFACT_CORRUPTION = "artifact_corruption"
    NOT_FOUND = "not_found"
    CANCELLED = "cancelled"


#: Error kinds the orchestrator retries automatically with backoff.
TRANSIENT_ERROR_KINDS: frozenset[ErrorKind] = frozenset(
    {ErrorKind.RATE_LIMITED, ErrorKind.AUTHORITY_UNREACHABLE},
)


# ---------------------------------------------------------------------------
# Revocation reasons (RFC 5280 section 5.3.1)
# ---------------------------------------------------------------------------


class RevocationReason(IntEnum):
    UNSPECIFIED = 0
    KEY_COMPROMISE = 1
    AFFILIATION_CHANGED = 3
    SUPERSEDED = 4
    CESSATION_OF_OPERATION = 5

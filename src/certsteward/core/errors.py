"""Error taxonomy shared by every CertSteward component.

Each error carries an :class:`~certsteward.core.types.ErrorKind` so the
orchestrator can record the concrete failure on the certificate record
and operators never see a generic message.  The ``retryable`` flag marks
transient authority-side failures that are retried with backoff.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from certsteward.core.types import ErrorKind

if TYPE_CHECKING:
    from datetime import timedelta


class LifecycleError(Exception):
    """Base class for every failure raised inside the lifecycle engine.

    Parameters
    ----------
    detail:
        Human-readable description of the failure.
    retryable:
        Whether the failure is transient and the operation may be retried.

    """

    kind: ErrorKind = ErrorKind.AUTHORITY_UNREACHABLE

    def __init__(self, detail: str, *, retryable: bool = False) -> None:
        self.detail = detail
        self.retryable = retryable
        super().__init__(detail)


# ---------------------------------------------------------------------------
# Authority-side failures
# ---------------------------------------------------------------------------


class ChallengeFailed(LifecycleError):
    """The authority rejected (or could not verify) a domain challenge."""

    kind = ErrorKind.CHALLENGE_FAILED


class InvalidDomain(LifecycleError):
    """A requested domain is malformed or refused by the authority."""

    kind = ErrorKind.INVALID_DOMAIN


class RateLimited(LifecycleError):
    """The authority throttled the request.

    Parameters
    ----------
    detail:
        Description returned by the authority.
    retry_after:
        How long to wait before any resubmission for the same domain
        set, or ``None`` when the authority gave no hint.

    """

    kind = ErrorKind.RATE_LIMITED

    def __init__(self, detail: str, *, retry_after: timedelta | None = None) -> None:
        super().__init__(detail, retryable=True)
        self.retry_after = retry_after


class AuthorityUnreachable(LifecycleError):
    """Network failure, server error or deadline exceeded talking to the authority."""

    kind = ErrorKind.AUTHORITY_UNREACHABLE

    def __init__(self, detail: str) -> None:
        super().__init__(detail, retryable=True)


# ---------------------------------------------------------------------------
# Hook failures
# ---------------------------------------------------------------------------


class HookError(LifecycleError):
    """Base class for hook execution failures."""


class HookTimeout(HookError):
    kind = ErrorKind.HOOK_TIMEOUT

    def __init__(self, detail: str) -> None:
        super().__init__(detail, retryable=True)


class HookNonZeroExit(HookError):
    """A hook command exited with a non-zero status."""

    kind = ErrorKind.HOOK_NON_ZERO_EXIT

    def __init__(self, detail: str, *, returncode: int | None = None) -> None:
        super().__init__(detail, retryable=True)
        self.returncode = returncode


# ---------------------------------------------------------------------------
# Store failures
# ---------------------------------------------------------------------------


class ConflictError(LifecycleError):
    """Optimistic-concurrency violation: the record changed since it was read."""

    kind = ErrorKind.CONFLICT

    def __init__(self, detail: str) -> None:
        super().__init__(detail, retryable=True)


class ArtifactCorruption(LifecycleError):
    """Referenced key or chain material is missing or unreadable."""

    kind = ErrorKind.ARTIFACT_CORRUPTION


class CertificateNotFound(LifecycleError):
    kind = ErrorKind.NOT_FOUND


class JobCancelled(LifecycleError):
    """A lifecycle job observed its cancellation signal between steps."""

    kind = ErrorKind.CANCELLED

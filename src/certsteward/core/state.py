"""Certificate lifecycle state machine.

Defines the valid state transitions for managed certificates.  All
transitions performed by the orchestrator are checked with
:func:`assert_transition` and reported with :func:`log_transition`.

Usage::

    from certsteward.core.state import CERTIFICATE_TRANSITIONS, assert_transition
    from certsteward.core.types import CertificateState

    assert_transition(
        CertificateState.PENDING, CertificateState.CHALLENGE_PENDING,
        CERTIFICATE_TRANSITIONS,
    )
"""

from __future__ import annotations

import logging

from certsteward.core.types import CertificateState

log = logging.getLogger(__name__)
audit_log = logging.getLogger("certsteward.audit")

_S = CertificateState

# ---------------------------------------------------------------------------
# pending -> challenge_pending -> issuing -> active
# active -> renewal_due -> renewing -> active (new material) or failed
# failed -> pending on reset or once backoff elapsed.  revoked is terminal.
# ---------------------------------------------------------------------------

CERTIFICATE_TRANSITIONS: dict[CertificateState, frozenset[CertificateState]] = {
    _S.PENDING: frozenset({_S.CHALLENGE_PENDING, _S.FAILED, _S.REVOKED}),
    _S.CHALLENGE_PENDING: frozenset(
        {
            _S.ISSUING,
            _S.FAILED,
            _S.PENDING,  # transient failure or interrupted job
            _S.REVOKED,
        }
    ),
    _S.ISSUING: frozenset({_S.ACTIVE, _S.FAILED, _S.PENDING, _S.REVOKED}),
    _S.ACTIVE: frozenset(
        {
            _S.RENEWAL_DUE,
            _S.RENEWING,
            _S.FAILED,  # artifact corruption
            _S.REVOKED,
        }
    ),
    _S.RENEWAL_DUE: frozenset({_S.RENEWING, _S.ACTIVE, _S.FAILED, _S.REVOKED}),
    _S.RENEWING: frozenset({_S.ACTIVE, _S.FAILED, _S.REVOKED}),
    _S.FAILED: frozenset({_S.PENDING, _S.REVOKED}),
    _S.REVOKED: frozenset(),
}

#: States in which a record may hold servable key material.
SERVABLE_STATES: frozenset[CertificateState] = frozenset(
    {_S.ACTIVE, _S.RENEWAL_DUE, _S.RENEWING, _S.FAILED},
)

#: States a job can be interrupted in; recovered on startup.
IN_FLIGHT_STATES: frozenset[CertificateState] = frozenset(
    {_S.CHALLENGE_PENDING, _S.ISSUING, _S.RENEWING},
)


def assert_transition(
    current: CertificateState,
    target: CertificateState,
    table: dict = CERTIFICATE_TRANSITIONS,
) -> None:
    """Raise :class:`ValueError` if *current* -> *target* is not allowed.

    Parameters
    ----------
    current:
        The current state of the certificate.
    target:
        The desired new state.
    table:
        Transition table, :data:`CERTIFICATE_TRANSITIONS` by default.

    """
    allowed = table.get(current)
    if allowed is None:
        msg = f"Unknown state {current!r}"
        raise ValueError(msg)
    if target not in allowed:
        msg = (
            f"Invalid transition {current.value!r} -> {target.value!r}; "
            f"allowed targets: {sorted(s.value for s in allowed) or '(terminal)'}"
        )
        raise ValueError(msg)


def log_transition(
    certificate_id: str,
    from_state,
    to_state,
    *,
    reason: str | None = None,
) -> None:
    """Emit a structured log entry for a state transition.

    Parameters
    ----------
    certificate_id:
        Identifier of the managed certificate.
    from_state:
        The previous state value.
    to_state:
        The new state value.
    reason:
        Optional human-readable reason for the transition.

    """
    extra = {
        "event": "state_transition",
        "certificate_id": certificate_id,
        "from_state": from_state.value if hasattr(from_state, "value") else str(from_state),
        "to_state": to_state.value if hasattr(to_state, "value") else str(to_state),
    }
    if reason:
        extra["reason"] = reason
    log.info(
        "certificate %s: %s -> %s%s",
        certificate_id,
        extra["from_state"],
        extra["to_state"],
        f" ({reason})" if reason else "",
        extra=extra,
    )
    audit_log.info("state_transition", extra=extra)

"""JSON-compatible (de)serialisation of :class:`CertificateRecord`.

Datetimes are ISO 8601 strings, durations are whole seconds and enums
are their string values.  Used by the filesystem store for its metadata
documents and by the operator surfaces for status output.
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from typing import Any

from certsteward.core.types import CertificateState, ChallengeType, ErrorKind
from certsteward.models.certificate import AttemptOutcome, CertificateRecord
from certsteward.models.policy import BackoffSchedule, RenewalPolicy


def _dt(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def _parse_dt(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


def policy_to_dict(policy: RenewalPolicy) -> dict[str, Any]:
    backoff = policy.retry_backoff
    return {
        "renew_before_expiry_seconds": int(policy.renew_before_expiry.total_seconds()),
        "max_retries": policy.max_retries,
        "retry_backoff": {
            "initial_seconds": int(backoff.initial.total_seconds()),
            "multiplier": backoff.multiplier,
            "max_delay_seconds": int(backoff.max_delay.total_seconds()),
        },
    }


def policy_from_dict(data: dict[str, Any]) -> RenewalPolicy:
    backoff = data.get("retry_backoff", {})
    defaults = BackoffSchedule()
    return RenewalPolicy(
        renew_before_expiry=timedelta(
            seconds=data.get("renew_before_expiry_seconds", 30 * 86400),
        ),
        max_retries=data.get("max_retries", 5),
        retry_backoff=BackoffSchedule(
            initial=timedelta(
                seconds=backoff.get("initial_seconds", defaults.initial.total_seconds()),
            ),
            multiplier=backoff.get("multiplier", defaults.multiplier),
            max_delay=timedelta(
                seconds=backoff.get("max_delay_seconds", defaults.max_delay.total_seconds()),
            ),
        ),
    )


def attempt_to_dict(attempt: AttemptOutcome | None) -> dict[str, Any] | None:
    if attempt is None:
        return None
    return {
        "at": _dt(attempt.at),
        "succeeded": attempt.succeeded,
        "error_kind": attempt.error_kind.value if attempt.error_kind else None,
        "detail": attempt.detail,
        "retry_after": _dt(attempt.retry_after),
    }


def attempt_from_dict(data: dict[str, Any] | None) -> AttemptOutcome | None:
    if not data:
        return None
    return AttemptOutcome(
        at=datetime.fromisoformat(data["at"]),
        succeeded=data["succeeded"],
        error_kind=ErrorKind(data["error_kind"]) if data.get("error_kind") else None,
        detail=data.get("detail"),
        retry_after=_parse_dt(data.get("retry_after")),
    )


def record_to_dict(record: CertificateRecord) -> dict[str, Any]:
    """Serialise *record* to a JSON-compatible dict."""
    return {
        "id": record.id,
        "domains": list(record.domains),
        "state": record.state.value,
        "challenge_type": record.challenge_type.value,
        "renewal_policy": policy_to_dict(record.renewal_policy),
        "not_before": _dt(record.not_before),
        "not_after": _dt(record.not_after),
        "private_key_ref": record.private_key_ref,
        "certificate_chain_ref": record.certificate_chain_ref,
        "serial_number": record.serial_number,
        "fingerprint": record.fingerprint,
        "last_attempt": attempt_to_dict(record.last_attempt),
        "failure_count": record.failure_count,
        "hook_names": list(record.hook_names),
        "version": record.version,
        "created_at": _dt(record.created_at),
        "updated_at": _dt(record.updated_at),
    }


def record_from_dict(data: dict[str, Any]) -> CertificateRecord:
    """Inverse of :func:`record_to_dict`.

    Raises
    ------
    KeyError, ValueError
        If the document is missing required fields or holds bad values.

    """
    return CertificateRecord(
        id=data["id"],
        domains=tuple(data["domains"]),
        state=CertificateState(data["state"]),
        challenge_type=ChallengeType(data.get("challenge_type", "http-01")),
        renewal_policy=policy_from_dict(data.get("renewal_policy", {})),
        not_before=_parse_dt(data.get("not_before")),
        not_after=_parse_dt(data.get("not_after")),
        private_key_ref=data.get("private_key_ref"),
        certificate_chain_ref=data.get("certificate_chain_ref"),
        serial_number=data.get("serial_number"),
        fingerprint=data.get("fingerprint"),
        last_attempt=attempt_from_dict(data.get("last_attempt")),
        failure_count=data.get("failure_count", 0),
        hook_names=tuple(data.get("hook_names", ())),
        version=data.get("version", 0),
        created_at=_parse_dt(data.get("created_at")) or datetime(1970, 1, 1, tzinfo=UTC),
        updated_at=_parse_dt(data.get("updated_at")) or datetime(1970, 1, 1, tzinfo=UTC),
    )


def status_view(record: CertificateRecord) -> dict[str, Any]:
    """Operator-facing status: the record minus artifact references."""
    data = record_to_dict(record)
    data.pop("private_key_ref")
    data.pop("certificate_chain_ref")
    data["has_material"] = record.has_material
    data["renewal_due_at"] = _dt(record.renewal_due_at())
    attempt = record.last_attempt
    data["last_error"] = (
        {"kind": attempt.error_kind.value, "at": _dt(attempt.at), "detail": attempt.detail}
        if attempt is not None and attempt.error_kind is not None
        else None
    )
    return data

"""Certificate record repository (PostgreSQL backend)."""

from __future__ import annotations

from typing import TYPE_CHECKING

from psycopg.types.json import Jsonb
from pypgkit import BaseRepository

from certsteward.core.types import CertificateState, ChallengeType
from certsteward.models.certificate import CertificateRecord
from certsteward.store.serialization import (
    attempt_from_dict,
    attempt_to_dict,
    policy_from_dict,
    policy_to_dict,
)

if TYPE_CHECKING:
    from datetime import datetime, timedelta


class CertificateRecordRepository(BaseRepository[CertificateRecord]):
    table_name = "certificates"
    primary_key = "id"

    def _row_to_entity(self, row: dict) -> CertificateRecord:
        return CertificateRecord(
            id=row["id"],
            domains=tuple(row["domains"]),
            state=CertificateState(row["state"]),
            challenge_type=ChallengeType(row["challenge_type"]),
            renewal_policy=policy_from_dict(row["renewal_policy"] or {}),
            not_before=row.get("not_before"),
            not_after=row.get("not_after"),
            private_key_ref=row.get("private_key_ref"),
            certificate_chain_ref=row.get("certificate_chain_ref"),
            serial_number=row.get("serial_number"),
            fingerprint=row.get("fingerprint"),
            last_attempt=attempt_from_dict(row.get("last_attempt")),
            failure_count=row["failure_count"],
            hook_names=tuple(row.get("hook_names") or ()),
            version=row["version"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def _entity_to_row(self, entity: CertificateRecord) -> dict:
        attempt = attempt_to_dict(entity.last_attempt)
        return {
            "id": entity.id,
            "domains": list(entity.domains),
            "state": entity.state.value,
            "challenge_type": entity.challenge_type.value,
            "renewal_policy": Jsonb(policy_to_dict(entity.renewal_policy)),
            "not_before": entity.not_before,
            "not_after": entity.not_after,
            "private_key_ref": entity.private_key_ref,
            "certificate_chain_ref": entity.certificate_chain_ref,
            "serial_number": entity.serial_number,
            "fingerprint": entity.fingerprint,
            "last_attempt": Jsonb(attempt) if attempt is not None else None,
            "failure_count": entity.failure_count,
            "hook_names": list(entity.hook_names),
        }

    def find_candidates(self, now: datetime, horizon: timedelta) -> list[CertificateRecord]:
        """Coarse SQL pre-filter for ``list_due``.

        Returns every pending or failed record plus active records inside
        the widest possible renewal window; the store applies the exact
        per-record policy afterwards.
        """
        rows = self._db.fetch_all(
            "SELECT * FROM certificates "
            "WHERE state IN (%s, %s) "
            "   OR (state IN (%s, %s) "
            "       AND not_after - %s <= "
            "           make_interval(secs => (renewal_policy->>'renew_before_expiry_seconds')::float) "
            "           + %s) "
            "ORDER BY not_after NULLS LAST, id",
            (
                CertificateState.PENDING.value,
                CertificateState.FAILED.value,
                CertificateState.ACTIVE.value,
                CertificateState.RENEWAL_DUE.value,
                now,
                horizon,
            ),
            as_dict=True,
        )
        return [self._row_to_entity(r) for r in rows]

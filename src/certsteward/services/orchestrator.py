"""Lifecycle orchestrator: drives one certificate through its state machine.

The orchestrator is the only component that changes a record's state.
It coordinates the store (metadata and artifacts), the certificate
authority adapter and the hook runner:

- ``pending -> challenge_pending -> issuing -> active`` for first issuance
- ``active -> renewal_due -> renewing -> active`` for renewal; the old
  material stays servable until the new generation is committed, and
  is retired only afterwards
- transient authority errors (``RateLimited``, ``AuthorityUnreachable``)
  are recorded with a ``retry_after`` and retried with exponential
  backoff until ``max_retries``; ``ChallengeFailed`` / ``InvalidDomain``
  move the record to ``failed`` at once
- a ``ConflictError`` on a write is retried once against a fresh read

Every method is synchronous; callers provide concurrency and the
per-id serialisation (see :class:`~certsteward.services.scheduler.RenewalScheduler`).
"""

from __future__ import annotations

import logging
from dataclasses import replace
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING

from certsteward.core.domains import normalize_domains, validate_certificate_id
from certsteward.core.errors import (
    ArtifactCorruption,
    AuthorityUnreachable,
    CertificateNotFound,
    ConflictError,
    JobCancelled,
    LifecycleError,
    RateLimited,
)
from certsteward.core.state import IN_FLIGHT_STATES, assert_transition, log_transition
from certsteward.core.types import CertificateState, ChallengeType
from certsteward.hooks import events
from certsteward.models.certificate import AttemptOutcome, CertificateRecord
from certsteward.models.policy import RenewalPolicy
from certsteward.store.base import is_due

if TYPE_CHECKING:
    import threading
    from collections.abc import Callable, Iterable

    from certsteward.acme.base import CertificateAuthority
    from certsteward.core.types import RevocationReason
    from certsteward.hooks.runner import HookResult, HookRunner
    from certsteward.models.certificate import CertificateMaterial
    from certsteward.store.base import CertificateStore

log = logging.getLogger(__name__)

_S = CertificateState


class LifecycleOrchestrator:
    """State machine driver for managed certificates.

    Parameters
    ----------
    store:
        Certificate store (the only shared mutable resource).
    authority:
        Certificate authority adapter.
    hooks:
        Hook runner notified after activation, failure and revocation;
        ``None`` disables hooks.
    default_policy:
        Renewal policy applied to registrations that do not carry one.
    default_challenge:
        Challenge type applied to registrations that do not name one.
    clock:
        Returns the current UTC time.

    """

    def __init__(
        self,
        store: CertificateStore,
        authority: CertificateAuthority,
        hooks: HookRunner | None = None,
        *,
        default_policy: RenewalPolicy | None = None,
        default_challenge: ChallengeType = ChallengeType.HTTP_01,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._store = store
        self._authority = authority
        self._hooks = hooks
        self._default_policy = default_policy or RenewalPolicy()
        self._default_challenge = default_challenge
        self._clock = clock or (lambda: datetime.now(UTC))

    @property
    def store(self) -> CertificateStore:
        return self._store

    @property
    def default_policy(self) -> RenewalPolicy:
        return self._default_policy

    def now(self) -> datetime:
        return self._clock()

    # ------------------------------------------------------------------
    # Read paths
    # ------------------------------------------------------------------

    def status(self, certificate_id: str) -> CertificateRecord:
        """Return the current record.

        Raises
        ------
        CertificateNotFound
            If no record exists for *certificate_id*.

        """
        record = self._store.get(certificate_id)
        if record is None:
            msg = f"Certificate {certificate_id} is not registered"
            raise CertificateNotFound(msg)
        return record

    def run_hook(
        self,
        certificate_id: str,
        hook_name: str,
        *,
        event: str = events.CERTIFICATE_ISSUED,
    ) -> HookResult:
        """Run one configured hook synchronously for a certificate.

        The hook receives the same context an automatic dispatch would.
        Its outcome never changes the record.

        Raises
        ------
        CertificateNotFound
            If the certificate is not registered.
        KeyError
            If no hook named *hook_name* is loaded.
        HookTimeout, HookNonZeroExit
            If the hook still fails after its retries.

        """
        record = self.status(certificate_id)
        if self._hooks is None:
            msg = f"Unknown hook '{hook_name}'; hooks are disabled"
            raise KeyError(msg)
        return self._hooks.notify(
            certificate_id,
            hook_name,
            self._hook_context(record, {}),
            event=event,
        )

    def list_failed(self) -> list[CertificateRecord]:
        return self._store.list_by_state(_S.FAILED)

    def list_certificates(self, state: CertificateState | None = None) -> list[CertificateRecord]:
        if state is None:
            return self._store.list_all()
        return self._store.list_by_state(state)

    # ------------------------------------------------------------------
    # Registration / removal
    # ------------------------------------------------------------------

    def register(
        self,
        domains: Iterable[str],
        policy: RenewalPolicy | None = None,
        *,
        challenge_type: ChallengeType | None = None,
        certificate_id: str | None = None,
        hook_names: Iterable[str] = (),
    ) -> CertificateRecord:
        """Create a ``pending`` record for a new domain set.

        The record is picked up by the next scheduler tick (or issued
        right away by the caller via :meth:`issue`).

        Raises
        ------
        InvalidDomain
            If the domain set or id is malformed.
        ConflictError
            If *certificate_id* is already registered.
        ValueError
            If a named hook is not configured.

        """
        challenge = ChallengeType(challenge_type or self._default_challenge)
        normalized = normalize_domains(list(domains), challenge)
        cid = certificate_id or normalized[0]
        validate_certificate_id(cid)

        names = tuple(hook_names)
        if names and self._hooks is not None:
            unknown = sorted(set(names) - set(self._hooks.hook_names))
            if unknown:
                msg = f"Unknown hook(s) {unknown}; configured hooks: {self._hooks.hook_names}"
                raise ValueError(msg)

        if self._store.get(cid) is not None:
            msg = f"Certificate {cid} is already registered"
            raise ConflictError(msg)

        record = CertificateRecord(
            id=cid,
            domains=normalized,
            state=_S.PENDING,
            challenge_type=challenge,
            renewal_policy=policy or self._default_policy,
            hook_names=names,
        )
        stored = self._store.upsert(record)
        log.info(
            "Registered certificate %s for %s",
            cid,
            ", ".join(normalized),
            extra={"certificate_id": cid},
        )
        return stored

    def remove(self, certificate_id: str) -> None:
        """Delete a record and all of its artifacts.

        Raises
        ------
        CertificateNotFound
            If no record exists.

        """
        if not self._store.delete(certificate_id):
            msg = f"Certificate {certificate_id} is not registered"
            raise CertificateNotFound(msg)

    # ------------------------------------------------------------------
    # Scheduler entry point
    # ------------------------------------------------------------------

    def process(
        self,
        certificate_id: str,
        *,
        cancel: threading.Event | None = None,
        horizon: timedelta = timedelta(0),
    ) -> CertificateRecord | None:
        """Run whatever the record is due for; ``None`` if nothing is due.

        Due-ness is re-checked against a fresh read so that a stale
        listing (another process already renewed) is a no-op.
        """
        record = self.status(certificate_id)
        if not is_due(record, self.now(), horizon):
            log.debug("Certificate %s is no longer due", certificate_id)
            return None
        if record.state in (_S.ACTIVE, _S.RENEWAL_DUE):
            return self.renew(certificate_id, cancel=cancel)
        if record.state == _S.FAILED:
            self._mutate(
                record,
                lambda r: replace(r, state=_S.PENDING),
                reason="backoff elapsed, retries remain",
            )
        return self.issue(certificate_id, cancel=cancel)

    # ------------------------------------------------------------------
    # Issuance
    # ------------------------------------------------------------------

    def issue(
        self,
        certificate_id: str,
        *,
        cancel: threading.Event | None = None,
    ) -> CertificateRecord:
        """Drive a ``pending`` record to ``active``.

        Returns
        -------
        CertificateRecord
            The committed ``active`` record.

        Raises
        ------
        LifecycleError
            The classified failure, after it has been recorded.
        JobCancelled
            If *cancel* was set; the record is returned to ``pending``.

        """
        record = self.status(certificate_id)
        if record.state != _S.PENDING:
            msg = f"Certificate {certificate_id} is {record.state}, expected pending"
            raise ConflictError(msg)

        record = self._mutate(
            record,
            lambda r: replace(r, state=_S.CHALLENGE_PENDING),
            reason="order submitted",
        )
        return self._obtain_and_commit(
            record,
            revert_to=_S.PENDING,
            event=events.CERTIFICATE_ISSUED,
            cancel=cancel,
        )

    # ------------------------------------------------------------------
    # Renewal
    # ------------------------------------------------------------------

    def renew(
        self,
        certificate_id: str,
        *,
        cancel: threading.Event | None = None,
        force: bool = False,
    ) -> CertificateRecord:
        """Renew an ``active`` certificate into a new artifact generation.

        The previous material stays servable throughout.  On transient
        failure the record reverts to ``active`` with ``failure_count``
        incremented and a ``retry_after``; on challenge / domain failure
        (or exhausted retries) it moves to ``failed``, still pointing at
        the old, servable generation.

        Raises
        ------
        LifecycleError
            The classified failure, after it has been recorded.

        """
        record = self.status(certificate_id)
        if record.state not in (_S.ACTIVE, _S.RENEWAL_DUE):
            msg = f"Certificate {certificate_id} is {record.state}, expected active"
            raise ConflictError(msg)

        if record.state == _S.ACTIVE and not force:
            record = self._mutate(
                record,
                lambda r: replace(r, state=_S.RENEWAL_DUE),
                reason="renewal window reached",
            )
        record = self._mutate(
            record,
            lambda r: replace(r, state=_S.RENEWING),
            reason="forced renewal" if force else "renewal started",
        )
        return self._obtain_and_commit(
            record,
            revert_to=_S.ACTIVE,
            event=events.CERTIFICATE_RENEWED,
            cancel=cancel,
        )

    def force_renew(
        self,
        certificate_id: str,
        *,
        cancel: threading.Event | None = None,
    ) -> CertificateRecord:
        """Operator-triggered renewal regardless of the renewal window.

        ``active`` records are renewed, ``pending`` ones issued and
        ``failed`` ones reset and re-issued.

        Raises
        ------
        ConflictError
            If the record is revoked or a job is in flight.

        """
        record = self.status(certificate_id)
        if record.state in (_S.ACTIVE, _S.RENEWAL_DUE):
            return self.renew(certificate_id, cancel=cancel, force=True)
        if record.state == _S.FAILED:
            self.reset(certificate_id)
            return self.issue(certificate_id, cancel=cancel)
        if record.state == _S.PENDING:
            return self.issue(certificate_id, cancel=cancel)
        msg = f"Certificate {certificate_id} is {record.state}; cannot renew"
        raise ConflictError(msg)

    def reset(self, certificate_id: str) -> CertificateRecord:
        """Return a ``failed`` record to ``pending`` with a cleared failure count.

        Raises
        ------
        ConflictError
            If the record is not ``failed``.

        """
        record = self.status(certificate_id)
        if record.state != _S.FAILED:
            msg = f"Certificate {certificate_id} is {record.state}; only failed records can be reset"
            raise ConflictError(msg)

        def clear(r: CertificateRecord) -> CertificateRecord:
            attempt = r.last_attempt
            if attempt is not None and attempt.retry_after is not None:
                attempt = replace(attempt, retry_after=None)
            return replace(r, state=_S.PENDING, failure_count=0, last_attempt=attempt)

        return self._mutate(record, clear, reason="manual reset")

    # ------------------------------------------------------------------
    # Revocation
    # ------------------------------------------------------------------

    def revoke(
        self,
        certificate_id: str,
        reason: RevocationReason | None = None,
        *,
        local_only: bool = False,
    ) -> CertificateRecord:
        """Revoke the certificate upstream and mark the record ``revoked``.

        If the upstream call fails the record is left unchanged so the
        operator can retry.  ``local_only`` skips the authority.

        Raises
        ------
        ConflictError
            If the record is already revoked or a job is in flight.
        AuthorityUnreachable, ChallengeFailed
            If upstream revocation fails.

        """
        record = self.status(certificate_id)
        if record.state == _S.REVOKED:
            msg = f"Certificate {certificate_id} is already revoked"
            raise ConflictError(msg)
        if record.state in IN_FLIGHT_STATES:
            msg = f"Certificate {certificate_id} has a job in flight ({record.state})"
            raise ConflictError(msg)

        if record.has_material and not local_only:
            _, chain_pem = self._store.load_material(record)
            self._authority.revoke_certificate(chain_pem, reason)

        revoked = self._mutate(
            record,
            lambda r: replace(r, state=_S.REVOKED, private_key_ref=None, certificate_chain_ref=None),
            reason=f"operator revocation (reason={int(reason) if reason is not None else 0})",
        )
        self._store.remove_artifacts(certificate_id)
        self._notify(
            events.CERTIFICATE_REVOKED,
            revoked,
            {"reason": int(reason) if reason is not None else 0, "serial_number": record.serial_number},
        )
        return revoked

    # ------------------------------------------------------------------
    # Startup recovery
    # ------------------------------------------------------------------

    def recover_interrupted(self) -> list[CertificateRecord]:
        """Roll back jobs interrupted by a crash or hard stop.

        ``challenge_pending`` / ``issuing`` return to ``pending``,
        ``renewing`` returns to ``active``.  Artifact generations no
        record points at are removed, and records whose artifacts are
        missing are marked ``failed``.
        """
        recovered = []
        for record in self._store.verify_artifacts():
            log.error("Certificate %s has missing artifacts; marked failed", record.id)
        for record in self._store.list_all():
            if record.state in IN_FLIGHT_STATES:
                target = _S.ACTIVE if record.state == _S.RENEWING else _S.PENDING
                record = self._mutate(  # noqa: PLW2901
                    record,
                    lambda r, t=target: replace(r, state=t),
                    reason="interrupted job recovered",
                )
                recovered.append(record)
            if record.state != _S.REVOKED:
                self._store.prune_orphans(record)
        return recovered

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _obtain_and_commit(
        self,
        record: CertificateRecord,
        *,
        revert_to: CertificateState,
        event: str,
        cancel: threading.Event | None,
    ) -> CertificateRecord:
        renewing = revert_to == _S.ACTIVE
        try:
            material = self._authority.request_certificate(
                record.domains,
                record.challenge_type,
                cancel=cancel,
            )
        except JobCancelled:
            self._revert(record, revert_to)
            raise
        except LifecycleError as exc:
            raise self._record_failure(record, exc, renewing=renewing) from exc
        except Exception as exc:
            log.exception("Unexpected error from certificate authority for %s", record.id)
            wrapped = AuthorityUnreachable(f"{type(exc).__name__}: {exc}")
            raise self._record_failure(record, wrapped, renewing=renewing) from exc

        if cancel is not None and cancel.is_set():
            self._revert(record, revert_to)
            msg = f"Job for {record.id} cancelled after issuance; material discarded"
            raise JobCancelled(msg)

        if not renewing:
            record = self._mutate(
                record,
                lambda r: replace(r, state=_S.ISSUING),
                reason="challenges validated, chain received",
            )
        return self._commit(record, material, event=event, cancel=cancel, revert_to=revert_to)

    def _commit(
        self,
        record: CertificateRecord,
        material: CertificateMaterial,
        *,
        event: str,
        cancel: threading.Event | None,
        revert_to: CertificateState,
    ) -> CertificateRecord:
        """Write artifacts first, then flip the record to ``active``."""
        old_refs = record.artifacts
        previous_serial = record.serial_number
        try:
            refs = self._store.stage_material(record.id, material)
        except OSError as exc:
            failure = ArtifactCorruption(f"Failed to write artifacts: {exc}")
            raise self._record_failure(record, failure, renewing=revert_to == _S.ACTIVE) from exc

        if cancel is not None and cancel.is_set():
            self._store.discard_material(refs)
            self._revert(record, revert_to)
            msg = f"Job for {record.id} cancelled before commit; material discarded"
            raise JobCancelled(msg)

        now = self.now()
        try:
            active = self._mutate(
                record,
                lambda r: replace(
                    r,
                    state=_S.ACTIVE,
                    not_before=material.not_before,
                    not_after=material.not_after,
                    private_key_ref=refs.private_key_ref,
                    certificate_chain_ref=refs.certificate_chain_ref,
                    serial_number=material.serial_number,
                    fingerprint=material.fingerprint,
                    failure_count=0,
                    last_attempt=AttemptOutcome(at=now, succeeded=True),
                ),
                reason=f"serial {material.serial_number}, valid until {material.not_after:%Y-%m-%d}",
            )
        except BaseException:
            self._store.discard_material(refs)
            raise

        self._store.install_live(active)
        if old_refs is not None and old_refs != refs:
            self._store.retire_material(old_refs)
            log.info("Retired previous material for %s", active.id)

        extra = {}
        if event == events.CERTIFICATE_RENEWED:
            extra["previous_serial_number"] = previous_serial
        self._notify(event, active, extra)
        return active

    def _record_failure(
        self,
        record: CertificateRecord,
        exc: LifecycleError,
        *,
        renewing: bool,
    ) -> LifecycleError:
        """Persist a failed attempt and return *exc* for the caller to raise."""
        now = self.now()
        policy = record.renewal_policy
        count = min(record.failure_count + 1, policy.max_retries)
        retry_after = None

        if exc.retryable and count < policy.max_retries:
            delay = policy.retry_backoff.delay_for(count)
            if isinstance(exc, RateLimited) and exc.retry_after is not None:
                delay = max(delay, exc.retry_after)
            retry_after = now + delay
            target = _S.ACTIVE if renewing else _S.PENDING
        else:
            target = _S.FAILED

        attempt = AttemptOutcome(
            at=now,
            succeeded=False,
            error_kind=exc.kind,
            detail=exc.detail,
            retry_after=retry_after,
        )
        stored = self._mutate(
            record,
            lambda r: replace(r, state=target, failure_count=count, last_attempt=attempt),
            reason=f"{exc.kind}: {exc.detail}",
        )
        if target == _S.FAILED:
            log.error(
                "Certificate %s failed (%s): %s",
                record.id,
                exc.kind,
                exc.detail,
                extra={"certificate_id": record.id, "error_kind": exc.kind.value},
            )
            self._notify(
                events.CERTIFICATE_FAILED,
                stored,
                {"error_kind": exc.kind.value, "detail": exc.detail},
            )
        else:
            log.warning(
                "Certificate %s: transient %s (attempt %d/%d), next attempt after %s",
                record.id,
                exc.kind,
                count,
                policy.max_retries,
                retry_after.isoformat() if retry_after else "-",
                extra={"certificate_id": record.id, "error_kind": exc.kind.value},
            )
        return exc

    def _revert(self, record: CertificateRecord, target: CertificateState) -> None:
        current = self._store.get(record.id)
        if current is None or current.state == target:
            return
        self._mutate(current, lambda r: replace(r, state=target), reason="job cancelled")

    def _mutate(
        self,
        record: CertificateRecord,
        mutation: Callable[[CertificateRecord], CertificateRecord],
        *,
        reason: str | None = None,
    ) -> CertificateRecord:
        """Apply *mutation* and store the result with compare-and-swap.

        A :class:`ConflictError` is retried once against a fresh read;
        a second conflict, or a fresh record that no longer permits the
        transition, propagates as :class:`ConflictError`.
        """
        for attempt in range(2):
            updated = mutation(record)
            if updated.state != record.state:
                try:
                    assert_transition(record.state, updated.state)
                except ValueError as exc:
                    if attempt == 0:
                        raise
                    raise ConflictError(str(exc)) from exc
            try:
                stored = self._store.upsert(updated)
            except ConflictError:
                if attempt:
                    raise
                fresh = self._store.get(record.id)
                if fresh is None:
                    msg = f"Certificate {record.id} was removed concurrently"
                    raise CertificateNotFound(msg) from None
                log.info(
                    "Version conflict on %s (v%d vs v%d); retrying once",
                    record.id,
                    record.version,
                    fresh.version,
                )
                record = fresh
                continue
            if stored.state != record.state:
                log_transition(record.id, record.state, stored.state, reason=reason)
            return stored
        msg = f"Certificate {record.id}: conflict retry exhausted"
        raise ConflictError(msg)

    def _hook_context(self, record: CertificateRecord, extra: dict) -> dict:
        key_path, chain_path = self._store.live_paths(record.id)
        return {
            "certificate_id": record.id,
            "domains": list(record.domains),
            "state": record.state.value,
            "serial_number": record.serial_number,
            "fingerprint": record.fingerprint,
            "not_after": record.not_after.isoformat() if record.not_after else None,
            "failure_count": record.failure_count,
            "chain_path": chain_path,
            "key_path": key_path,
            **extra,
        }

    def _notify(self, event: str, record: CertificateRecord, extra: dict) -> None:
        """Dispatch *event* to hooks; failures are logged, never raised."""
        if self._hooks is None:
            return
        try:
            self._hooks.dispatch(
                event,
                self._hook_context(record, extra),
                certificate_id=record.id,
                hook_names=record.hook_names,
            )
        except Exception:
            log.exception("Failed to dispatch %s hooks for %s", event, record.id)

"""Certificate management subcommands.

Each command builds a dependency container without starting the
scheduler, runs one orchestrator operation, prints the result as JSON
on stdout and maps lifecycle errors to the CLI's exit codes.
"""

from __future__ import annotations

import json
import logging
import sys
from typing import TYPE_CHECKING, Any

from certsteward.core.errors import (
    CertificateNotFound,
    ConflictError,
    HookError,
    InvalidDomain,
    JobCancelled,
    LifecycleError,
)
from certsteward.core.types import CertificateState, ChallengeType, ErrorKind, RevocationReason
from certsteward.store.serialization import status_view

if TYPE_CHECKING:
    from certsteward.app.context import Container

log = logging.getLogger(__name__)

_AUTHORITY_KINDS = frozenset(
    {
        ErrorKind.CHALLENGE_FAILED,
        ErrorKind.RATE_LIMITED,
        ErrorKind.AUTHORITY_UNREACHABLE,
    },
)


def exit_code_for(exc: LifecycleError) -> int:
    """Map a lifecycle error to a process exit code."""
    from certsteward.cli.main import (  # noqa: PLC0415
        EXIT_AUTHORITY,
        EXIT_CONFLICT,
        EXIT_HOOK,
        EXIT_NOT_FOUND,
        EXIT_USAGE,
    )

    if isinstance(exc, CertificateNotFound):
        return EXIT_NOT_FOUND
    if isinstance(exc, (ConflictError, JobCancelled)):
        return EXIT_CONFLICT
    if isinstance(exc, HookError):
        return EXIT_HOOK
    if isinstance(exc, InvalidDomain):
        return EXIT_USAGE
    if exc.kind in _AUTHORITY_KINDS:
        return EXIT_AUTHORITY
    return EXIT_USAGE


def _emit(payload: Any) -> None:
    sys.stdout.write(json.dumps(payload, indent=2, sort_keys=True) + "\n")


def _fail(message: str) -> None:
    sys.stderr.write(f"certsteward: error: {message}\n")


def build_container(config) -> Container:
    """Container for one-shot commands; the scheduler is never started."""
    from certsteward.app.context import Container  # noqa: PLC0415

    return Container(config.settings)


def run_certs(config, args) -> int:
    """Handle certificate subcommands; return the exit code."""
    handler = _HANDLERS.get(args.command)
    if handler is None:
        _fail(f"unknown command {args.command!r}")
        return 1

    container = build_container(config)
    try:
        handler(container, args)
    except LifecycleError as exc:
        _fail(f"{exc.kind.value}: {exc.detail}")
        return exit_code_for(exc)
    except (KeyError, ValueError) as exc:
        _fail(str(exc.args[0]) if exc.args else str(exc))
        return 1
    finally:
        container.close()
    return 0


# ---------------------------------------------------------------------------
# Handlers
# ---------------------------------------------------------------------------


def _register(c: Container, args) -> None:
    orchestrator = c.orchestrator
    policy = orchestrator.default_policy.with_overrides(
        renew_before_days=args.renew_before_days,
        max_retries=args.max_retries,
    )
    record = orchestrator.register(
        args.domains,
        policy,
        challenge_type=ChallengeType(args.challenge) if args.challenge else None,
        certificate_id=args.certificate_id,
        hook_names=args.hooks,
    )
    if args.issue:
        with c.locks.hold(record.id):
            record = orchestrator.issue(record.id)
    _emit(status_view(record))


def _status(c: Container, args) -> None:
    _emit(status_view(c.orchestrator.status(args.certificate_id)))


def _list(c: Container, args) -> None:
    state = CertificateState(args.state) if args.state else None
    _emit([status_view(r) for r in c.orchestrator.list_certificates(state)])


def _list_failed(c: Container, args) -> None:  # noqa: ARG001
    _emit([status_view(r) for r in c.orchestrator.list_failed()])


def _force_renew(c: Container, args) -> None:
    with c.locks.hold(args.certificate_id):
        record = c.orchestrator.force_renew(args.certificate_id)
    _emit(status_view(record))


def _reset(c: Container, args) -> None:
    with c.locks.hold(args.certificate_id):
        record = c.orchestrator.reset(args.certificate_id)
        if args.issue:
            record = c.orchestrator.issue(args.certificate_id)
    _emit(status_view(record))


def _revoke(c: Container, args) -> None:
    reason = RevocationReason(args.reason) if args.reason is not None else None
    with c.locks.hold(args.certificate_id):
        record = c.orchestrator.revoke(args.certificate_id, reason, local_only=args.local_only)
    _emit(status_view(record))


def _remove(c: Container, args) -> None:
    with c.locks.hold(args.certificate_id):
        c.orchestrator.remove(args.certificate_id)
    _emit({"removed": args.certificate_id})


def _tick(c: Container, args) -> None:  # noqa: ARG001
    jobs = c.scheduler.run_once()
    failed = [r.id for r in c.orchestrator.list_failed()]
    _emit({"jobs": jobs, "failed": failed})


def _verify(c: Container, args) -> None:  # noqa: ARG001
    recovered = c.orchestrator.recover_interrupted()
    _emit({"recovered": [status_view(r) for r in recovered]})


def _hook(c: Container, args) -> None:
    result = c.orchestrator.run_hook(args.certificate_id, args.hook_name, event=args.event)
    _emit(
        {
            "hook_name": result.hook_name,
            "event": result.event,
            "outcome": result.outcome,
            "attempts": result.attempts,
            "duration_ms": result.duration_ms,
        },
    )


_HANDLERS = {
    "register": _register,
    "status": _status,
    "list": _list,
    "list-failed": _list_failed,
    "force-renew": _force_renew,
    "reset": _reset,
    "revoke": _revoke,
    "remove": _remove,
    "tick": _tick,
    "verify": _verify,
    "hook": _hook,
}

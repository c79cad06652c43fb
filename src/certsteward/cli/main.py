"""CertSteward command-line entry point.

Usage::

    certsteward -c /etc/certsteward/config.yaml            # run the daemon
    certsteward -c config.yaml --validate-only
    certsteward -c config.yaml register example.com www.example.com --issue
    certsteward -c config.yaml status example.com
    certsteward -c config.yaml list --state failed
    certsteward -c config.yaml force-renew example.com
    certsteward -c config.yaml reset example.com --issue
    certsteward -c config.yaml revoke example.com --reason 4
    certsteward -c config.yaml hook example.com reload-nginx
    certsteward -c config.yaml serve-api --dev
    certsteward -c config.yaml db status
    python -m certsteward -c config.yaml tick

Exit codes: 0 success, 1 usage or configuration error, 2 certificate
not found, 3 conflicting state, 4 certificate authority failure,
5 hook failure.
"""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path

from certsteward.core.types import ChallengeType
from certsteward.hooks.events import KNOWN_EVENTS

log = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_USAGE = 1
EXIT_NOT_FOUND = 2
EXIT_CONFLICT = 3
EXIT_AUTHORITY = 4
EXIT_HOOK = 5


def _get_version() -> str:
    from certsteward import __version__  # noqa: PLC0415

    return __version__


def _build_parser() -> argparse.ArgumentParser:  # noqa: PLR0915
    parser = argparse.ArgumentParser(
        prog="certsteward",
        description="CertSteward: ACME certificate lifecycle manager",
    )
    parser.add_argument(
        "-c",
        "--config",
        required=True,
        metavar="PATH",
        help="Path to the configuration file (YAML or JSON).",
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        default=False,
        help="Enable debug output (full tracebacks, verbose logging).",
    )
    parser.add_argument(
        "--validate-only",
        action="store_true",
        default=False,
        help="Validate the configuration file and exit.",
    )
    parser.add_argument(
        "-v",
        "--version",
        action="version",
        version=f"%(prog)s {_get_version()}",
    )

    subparsers = parser.add_subparsers(dest="command")

    # run
    run_parser = subparsers.add_parser("run", help="Run the renewal daemon (default)")
    run_parser.add_argument(
        "--with-api",
        action="store_true",
        default=False,
        help="Also serve the operator API with the Flask development server.",
    )

    # register
    reg = subparsers.add_parser("register", help="Register a domain set")
    reg.add_argument("domains", nargs="+", help="Domain names; the first is the primary")
    reg.add_argument("--id", dest="certificate_id", help="Certificate id (default: first domain)")
    reg.add_argument(
        "--challenge",
        choices=[t.value for t in ChallengeType],
        help="Challenge type (default: challenges.default_type)",
    )
    reg.add_argument("--renew-before-days", type=int, help="Renewal window in days")
    reg.add_argument("--max-retries", type=int, help="Retry budget for transient failures")
    reg.add_argument(
        "--hook",
        dest="hooks",
        action="append",
        default=[],
        help="Hook to run on lifecycle events (repeatable)",
    )
    reg.add_argument("--issue", action="store_true", default=False, help="Issue immediately")

    # read-only queries
    status = subparsers.add_parser("status", help="Show one certificate")
    status.add_argument("certificate_id")
    lst = subparsers.add_parser("list", help="List certificates")
    lst.add_argument("--state", help="Only show certificates in this state")
    subparsers.add_parser("list-failed", help="List certificates needing attention")

    # mutations
    fr = subparsers.add_parser("force-renew", help="Renew or reissue now")
    fr.add_argument("certificate_id")
    reset = subparsers.add_parser("reset", help="Return a failed certificate to pending")
    reset.add_argument("certificate_id")
    reset.add_argument("--issue", action="store_true", default=False, help="Issue immediately")
    revoke = subparsers.add_parser("revoke", help="Revoke a certificate")
    revoke.add_argument("certificate_id")
    revoke.add_argument("--reason", type=int, help="RFC 5280 reason code")
    revoke.add_argument(
        "--local-only",
        action="store_true",
        default=False,
        help="Mark revoked without contacting the authority",
    )
    remove = subparsers.add_parser("remove", help="Stop managing a certificate")
    remove.add_argument("certificate_id")

    # maintenance
    subparsers.add_parser("tick", help="Run one scheduler tick and exit")
    subparsers.add_parser("verify", help="Check stored artifacts and recover interrupted jobs")
    hook = subparsers.add_parser("hook", help="Run one hook now")
    hook.add_argument("certificate_id")
    hook.add_argument("hook_name")
    hook.add_argument(
        "--event",
        default="certificate.issued",
        choices=sorted(KNOWN_EVENTS),
        help="Event to present to the hook",
    )

    # serve-api
    serve_parser = subparsers.add_parser("serve-api", help="Serve the operator API")
    serve_parser.add_argument("--dev", action="store_true", default=False, dest="dev")

    # db
    db_parser = subparsers.add_parser("db", help="Database management (postgres backend)")
    db_sub = db_parser.add_subparsers(dest="db_command")
    db_sub.add_parser("status", help="Check database connectivity")
    db_sub.add_parser("migrate", help="Apply the bundled schema")

    return parser


def _print_error(message: str) -> None:
    """Print a user-facing error to stderr."""
    sys.stderr.write(f"certsteward: error: {message}\n")


def main(argv: list[str] | None = None) -> None:
    """CLI entry point.  Parses arguments, loads config, dispatches."""
    parser = _build_parser()
    args = parser.parse_args(argv)

    # -- resolve config path ---
    config_path = Path(args.config)
    if not config_path.is_file():
        _print_error(f"configuration file not found: {config_path}")
        sys.exit(EXIT_USAGE)

    # -- bootstrap logging early (basic stderr until config is loaded) ---
    logging.basicConfig(
        level=logging.DEBUG if args.debug else logging.WARNING,
        format="%(levelname)s: %(message)s",
        stream=sys.stderr,
    )

    # -- load & validate config ---
    try:
        from certsteward.config import (  # noqa: PLC0415
            CertstewardConfig,
            ConfigValidationError,
        )

        config = CertstewardConfig(
            config_file=str(config_path),
            schema_file="bundled",
        )
    except ConfigValidationError as exc:
        _print_error(str(exc))
        sys.exit(EXIT_USAGE)
    except Exception as exc:
        if args.debug:
            raise
        _print_error(f"failed to load configuration: {exc}")
        sys.exit(EXIT_USAGE)

    # -- replace bootstrap logging with structured logging ---
    from certsteward.logging import configure_logging  # noqa: PLC0415

    configure_logging(config.settings.logging)

    if args.validate_only:
        _print_settings_summary(config)
        sys.exit(EXIT_OK)

    sys.exit(_dispatch(config, args))


def _dispatch(config, args) -> int:
    command = args.command or "run"

    if command == "run":
        from certsteward.cli.commands.run import run_daemon  # noqa: PLC0415

        return run_daemon(config, args)
    if command == "serve-api":
        from certsteward.cli.commands.serve import run_serve  # noqa: PLC0415

        return run_serve(config, args)
    if command == "db":
        from certsteward.cli.commands.db import run_db  # noqa: PLC0415

        return run_db(config, args)

    from certsteward.cli.commands.certs import run_certs  # noqa: PLC0415

    return run_certs(config, args)


def _print_settings_summary(config) -> None:
    """Print a short summary of the loaded configuration."""
    s = config.settings
    lines = [
        f"Configuration OK: {config.data.get('_source', '?')}",
        f"  acme directory : {s.acme.directory_url}",
        f"  store          : {s.store.backend} ({s.store.path})",
        f"  challenges     : {s.challenges.default_type} via {s.challenges.responder}",
        f"  renewal window : {s.renewal.renew_before_days} days, {s.renewal.max_retries} retries",
        f"  scheduler      : {'enabled' if s.scheduler.enabled else 'disabled'}"
        f" (every {s.scheduler.tick_seconds}s)",
        f"  hooks          : {', '.join(h.name for h in s.hooks.registered) or 'none'}",
    ]
    sys.stdout.write("\n".join(lines) + "\n")

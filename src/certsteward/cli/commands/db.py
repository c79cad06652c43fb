"""Database management subcommands (postgres store backend only)."""

from __future__ import annotations

import json
import logging
import sys

log = logging.getLogger(__name__)


def run_db(config, args) -> int:
    """Handle db subcommands; return the exit code."""
    if config.settings.database is None:
        sys.stderr.write("certsteward: error: no database section is configured\n")
        return 1
    if args.db_command == "status":
        return _db_status(config)
    if args.db_command == "migrate":
        return _db_migrate(config)
    sys.stderr.write("certsteward: error: expected 'db status' or 'db migrate'\n")
    return 1


def _db_status(config) -> int:
    """Check database connectivity and whether the schema exists."""
    from certsteward.store.postgres import connect, schema_status  # noqa: PLC0415

    try:
        status = schema_status(connect(config.settings.database))
    except Exception as exc:
        log.exception("Database status check failed")
        sys.stderr.write(f"certsteward: error: database unreachable: {exc}\n")
        return 1
    sys.stdout.write(json.dumps({"connected": True, **status}) + "\n")
    return 0


def _db_migrate(config) -> int:
    from certsteward.store.postgres import apply_schema, connect  # noqa: PLC0415

    try:
        apply_schema(connect(config.settings.database))
    except Exception as exc:
        log.exception("Schema migration failed")
        sys.stderr.write(f"certsteward: error: migration failed: {exc}\n")
        return 1
    sys.stdout.write("Schema applied\n")
    return 0

"""``serve-api`` subcommand: operator API under gunicorn or the dev server."""

from __future__ import annotations

import logging
import sys

log = logging.getLogger(__name__)


def run_serve(config, args) -> int:
    """Start the operator API; return the exit code."""
    from certsteward.app import create_app  # noqa: PLC0415

    try:
        app = create_app(config=config)
    except Exception as exc:
        if args.debug:
            raise
        sys.stderr.write(f"certsteward: error: application startup failed: {exc}\n")
        return 1

    server = config.settings.server
    if args.dev:
        log.info("Starting development server (not for production)")
        app.run(host=server.bind, port=server.port, debug=True, use_reloader=False)
        return 0

    from certsteward.server.gunicorn_app import run_gunicorn  # noqa: PLC0415

    try:
        run_gunicorn(app, server)
    except RuntimeError as exc:
        sys.stderr.write(f"certsteward: error: {exc}\n")
        return 1
    return 0

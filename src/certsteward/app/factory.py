"""Flask application factory for the CertSteward operator API.

Usage::

    from certsteward.app import create_app
    from certsteward.config import get_config

    app = create_app(config=get_config())
"""

from __future__ import annotations

import atexit
import logging
import time
from typing import TYPE_CHECKING

from flask import Flask, g, request

if TYPE_CHECKING:
    from pypgkit import Database

    from certsteward.app.context import Container
    from certsteward.config.certsteward_config import CertstewardConfig

log = logging.getLogger(__name__)


def create_app(
    config: CertstewardConfig | None = None,
    *,
    container: Container | None = None,
    database: Database | None = None,
    start_background: bool = True,
) -> Flask:
    """Create and configure the CertSteward Flask application.

    Parameters
    ----------
    config:
        Loaded :class:`CertstewardConfig`.  Falls back to
        :func:`get_config` when neither *config* nor *container* is
        given.
    container:
        Pre-built dependency container (tests inject one wired with
        fakes).  When supplied, the factory neither runs startup
        recovery nor starts the scheduler; the caller owns it.
    database:
        Initialised PyPGKit database for the postgres store backend.
    start_background:
        Run startup recovery and start the renewal scheduler inside
        this process (subject to ``server.run_scheduler``).

    Returns
    -------
    Flask
        Fully configured WSGI application.

    """
    if container is not None:
        settings = container.settings
    else:
        if config is None:
            from certsteward.config import get_config  # noqa: PLC0415

            config = get_config()
        settings = config.settings

    app = Flask("certsteward")
    app.config["CERTSTEWARD_SETTINGS"] = settings
    app.config["CERTSTEWARD_CONFIG"] = config

    # -- Dependency container -----------------------------------------------
    if container is None:
        from certsteward.app.context import Container  # noqa: PLC0415
        from certsteward.app.shutdown import ShutdownCoordinator  # noqa: PLC0415

        shutdown_coordinator = ShutdownCoordinator(
            graceful_timeout=settings.server.graceful_timeout,
        )
        container = Container(
            settings,
            database=database,
            shutdown_coordinator=shutdown_coordinator,
        )
        atexit.register(shutdown_coordinator.initiate)
        if start_background:
            container.startup(start_scheduler=settings.server.run_scheduler)
    app.extensions["container"] = container
    app.extensions["shutdown_coordinator"] = container.shutdown_coordinator

    # -- Error handlers (RFC 7807) ------------------------------------------
    from certsteward.app.errors import register_error_handlers  # noqa: PLC0415

    register_error_handlers(app)

    # -- Request lifecycle hooks --------------------------------------------
    _register_request_hooks(app)

    # -- Operator API routes ------------------------------------------------
    from certsteward.api import register_blueprints  # noqa: PLC0415

    register_blueprints(app)

    log.info(
        "CertSteward API ready (base path %r, scheduler %s)",
        settings.api.base_path or "/",
        "running" if container.scheduler.is_running() else "idle",
    )
    return app


def _register_request_hooks(app: Flask) -> None:
    """Timing, response headers and access logging."""

    @app.before_request
    def _start_timer() -> None:
        g.start_time = time.monotonic()

    @app.after_request
    def _after_request(response):
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["Cache-Control"] = response.headers.get("Cache-Control", "no-store")

        request_id = getattr(g, "request_id", None)
        if request_id:
            response.headers["X-Request-ID"] = request_id

        start = getattr(g, "start_time", None)
        duration_ms = (time.monotonic() - start) * 1000 if start is not None else 0.0
        log.info(
            "%s %s %d (%.1fms)",
            request.method,
            request.path,
            response.status_code,
            duration_ms,
        )
        return response

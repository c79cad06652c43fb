"""Programmatic gunicorn runner for the operator API.

Starts gunicorn with settings taken from the ``server`` config section
instead of a separate gunicorn config file.

Usage::

    from certsteward.server.gunicorn_app import run_gunicorn

    run_gunicorn(flask_app, settings.server)
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from flask import Flask

    from certsteward.config.settings import ServerSettings

log = logging.getLogger(__name__)


def run_gunicorn(app: Flask, settings: ServerSettings) -> None:
    """Serve *app* with gunicorn.

    Raises :class:`RuntimeError` if gunicorn cannot be imported (it
    only runs on Unix; use ``serve-api --dev`` elsewhere).
    """
    try:
        from gunicorn.app.base import BaseApplication  # noqa: PLC0415
    except ImportError as exc:
        msg = (
            "gunicorn is not available on this platform.  "
            "Use --dev for the Flask development server."
        )
        raise RuntimeError(msg) from exc

    class _App(BaseApplication):
        def __init__(self, flask_app: Flask, server: ServerSettings) -> None:
            self.application = flask_app
            self._server = server
            super().__init__()

        def load_config(self) -> None:
            s = self._server
            self.cfg.set("bind", f"{s.bind}:{s.port}")
            self.cfg.set("workers", s.workers)
            self.cfg.set("timeout", s.timeout)
            self.cfg.set("graceful_timeout", s.graceful_timeout)
            # request logging happens in the app
            self.cfg.set("accesslog", None)

        def load(self) -> Flask:
            return self.application

    log.info(
        "Starting gunicorn on %s:%s (%d workers)",
        settings.bind,
        settings.port,
        settings.workers,
    )
    _App(app, settings).run()

"""The renewal daemon: recovery, scheduler loop, graceful shutdown."""

from __future__ import annotations

import logging

log = logging.getLogger(__name__)


def run_daemon(config, args) -> int:
    """Run until SIGTERM/SIGINT; return the exit code."""
    from certsteward.app.context import Container  # noqa: PLC0415
    from certsteward.app.shutdown import ShutdownCoordinator  # noqa: PLC0415

    settings = config.settings
    if not settings.scheduler.enabled:
        log.warning("scheduler.enabled is false; the daemon will only recover and exit")

    coordinator = ShutdownCoordinator(graceful_timeout=settings.server.graceful_timeout)
    container = Container(settings, shutdown_coordinator=coordinator)
    container.startup(start_scheduler=True)

    if not settings.scheduler.enabled:
        coordinator.initiate()
        return 0

    if getattr(args, "with_api", False):
        from certsteward.app import create_app  # noqa: PLC0415

        app = create_app(config, container=container)
        log.info("Serving operator API on %s:%s", settings.server.bind, settings.server.port)
        try:
            app.run(
                host=settings.server.bind,
                port=settings.server.port,
                use_reloader=False,
            )
        finally:
            coordinator.initiate()
        return 0

    coordinator.register_signals()
    log.info("CertSteward daemon running (%d certificates managed)", len(container.store.list_all()))
    coordinator.wait()
    log.info("CertSteward daemon stopped")
    return 0

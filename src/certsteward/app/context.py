"""Dependency container for CertSteward.

Built once at startup from the typed settings tree and shared by the
daemon, the CLI and the operator API (stored on the Flask app via
``app.extensions["container"]`` and reachable with
:func:`get_container`).

Usage::

    from certsteward.app.context import Container

    c = Container(settings)
    c.orchestrator.register(["example.com"])
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from flask import current_app

from certsteward.core.errors import AuthorityUnreachable
from certsteward.core.types import ChallengeType
from certsteward.services.locks import LockTable
from certsteward.services.orchestrator import LifecycleOrchestrator
from certsteward.services.scheduler import RenewalScheduler

if TYPE_CHECKING:
    from collections.abc import Callable
    from datetime import datetime

    from pypgkit import Database

    from certsteward.acme.base import CertificateAuthority
    from certsteward.app.shutdown import ShutdownCoordinator
    from certsteward.config.settings import CertstewardSettings
    from certsteward.hooks.runner import HookRunner
    from certsteward.store.base import CertificateStore

log = logging.getLogger(__name__)


def build_store(settings: CertstewardSettings, database: Database | None = None) -> CertificateStore:
    """Build the configured store backend."""
    if settings.store.backend == "postgres":
        from certsteward.store.postgres import PostgresCertificateStore  # noqa: PLC0415

        if database is not None:
            return PostgresCertificateStore(database, settings.store.path)
        if settings.database is None:
            msg = "store.backend is 'postgres' but no database section is configured"
            raise RuntimeError(msg)
        return PostgresCertificateStore.from_settings(settings.database, settings.store.path)

    from certsteward.store.filesystem import FileCertificateStore  # noqa: PLC0415

    return FileCertificateStore(settings.store.path)


class Container:
    """Application-wide dependency container.

    Every collaborator can be injected (tests pass fakes); anything not
    injected is built from *settings*.

    Parameters
    ----------
    settings:
        Fully built settings tree.
    store, authority, hooks:
        Optional pre-built collaborators.
    database:
        Initialised PyPGKit database for the postgres store backend.
    shutdown_coordinator:
        Coordinator that will stop the scheduler and hook runner.
    clock:
        Current-time source passed to the orchestrator.

    """

    def __init__(
        self,
        settings: CertstewardSettings,
        *,
        store: CertificateStore | None = None,
        authority: CertificateAuthority | None = None,
        hooks: HookRunner | None = None,
        database: Database | None = None,
        shutdown_coordinator: ShutdownCoordinator | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.settings = settings
        self.store: CertificateStore = store or build_store(settings, database)

        if authority is None:
            from certsteward.acme import build_authority  # noqa: PLC0415

            authority = build_authority(settings.acme, settings.challenges)
        self.authority: CertificateAuthority = authority

        if hooks is None:
            from certsteward.hooks.runner import HookRunner  # noqa: PLC0415

            hooks = HookRunner(settings.hooks)
        self.hooks: HookRunner = hooks

        self.locks = LockTable()
        self.orchestrator = LifecycleOrchestrator(
            self.store,
            self.authority,
            self.hooks,
            default_policy=settings.renewal.policy(),
            default_challenge=ChallengeType(settings.challenges.default_type),
            clock=clock,
        )
        self.scheduler = RenewalScheduler(
            self.store,
            self.orchestrator,
            settings.scheduler,
            self.locks,
        )
        self.shutdown_coordinator = shutdown_coordinator
        if shutdown_coordinator is not None:
            shutdown_coordinator.on_shutdown(self.close, name="container")

    def startup(self, *, start_scheduler: bool = True) -> None:
        """Recover interrupted jobs, verify the authority, start ticking."""
        recovered = self.orchestrator.recover_interrupted()
        if recovered:
            log.warning("Recovered %d interrupted job(s)", len(recovered))
        try:
            self.authority.startup_check()
        except AuthorityUnreachable as exc:
            # jobs back off and retry; the daemon keeps running
            log.warning("Certificate authority not reachable at startup: %s", exc.detail)
        if start_scheduler and self.settings.scheduler.enabled:
            self.scheduler.start()

    def close(self) -> None:
        """Stop the scheduler (cancelling running jobs), hooks and authority."""
        self.scheduler.stop(cancel_running=True)
        self.hooks.shutdown(wait=True)
        self.authority.close()


def get_container() -> Container:
    """Return the :class:`Container` from the current Flask app."""
    container = current_app.extensions.get("container")
    if container is None:
        msg = "Dependency container not available -- was create_app() given one?"
        raise RuntimeError(msg)
    return container

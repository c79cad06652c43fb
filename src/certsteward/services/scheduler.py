"""Renewal scheduler.

Daemon thread that periodically asks the store which certificates are
due and hands each one to the orchestrator on a bounded worker pool.
Jobs for the same certificate id never overlap: an id whose lock is
held (by a running job or an operator action) is skipped until the
next tick.

Usage::

    scheduler = RenewalScheduler(store, orchestrator, settings.scheduler, locks)
    scheduler.start()
    ...
    scheduler.stop()
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor, wait
from datetime import datetime, timedelta
from typing import TYPE_CHECKING

from certsteward.core.errors import JobCancelled, LifecycleError
from certsteward.logging import job_context

if TYPE_CHECKING:
    from certsteward.config.settings import SchedulerSettings
    from certsteward.models.certificate import CertificateRecord
    from certsteward.services.locks import LockTable
    from certsteward.services.orchestrator import LifecycleOrchestrator
    from certsteward.store.base import CertificateStore

log = logging.getLogger(__name__)

_MAX_BACKOFF_FACTOR = 8


class RenewalScheduler:
    """Tick loop feeding due certificates to the orchestrator.

    Parameters
    ----------
    store:
        Certificate store queried with :meth:`CertificateStore.list_due`.
    orchestrator:
        Runs the actual issuance / renewal.
    settings:
        Tick interval, worker count and look-ahead horizon.
    locks:
        Per-id lock table shared with the operator surfaces.

    """

    def __init__(
        self,
        store: CertificateStore,
        orchestrator: LifecycleOrchestrator,
        settings: SchedulerSettings,
        locks: LockTable,
    ) -> None:
        self._store = store
        self._orchestrator = orchestrator
        self._settings = settings
        self._locks = locks
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None
        self._executor: ThreadPoolExecutor | None = self._new_executor()
        self._cancel_events: dict[str, threading.Event] = {}
        self._jobs_lock = threading.Lock()
        self._consecutive_failures = 0

    @property
    def horizon(self) -> timedelta:
        return timedelta(seconds=self._settings.horizon_seconds)

    @property
    def running_jobs(self) -> list[str]:
        with self._jobs_lock:
            return sorted(self._cancel_events)

    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        """Start the background tick thread."""
        if self.is_running():
            return
        if self._executor is None:
            self._executor = self._new_executor()
        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._run,
            name="renewal-scheduler",
            daemon=True,
        )
        self._thread.start()
        log.info(
            "Renewal scheduler started (interval=%ds, workers=%d, horizon=%ds)",
            self._settings.tick_seconds,
            self._settings.max_workers,
            self._settings.horizon_seconds,
        )

    def stop(self, *, cancel_running: bool = True) -> None:
        """Stop ticking and wait for running jobs.

        With *cancel_running*, in-flight jobs are asked to stop at their
        next checkpoint; they roll their record back and discard any
        staged material.
        """
        self._stop_event.set()
        if cancel_running:
            with self._jobs_lock:
                for event in self._cancel_events.values():
                    event.set()
        if self._thread is not None:
            self._thread.join(timeout=self._settings.tick_seconds + 5)
            self._thread = None
        if self._executor is not None:
            self._executor.shutdown(wait=True, cancel_futures=True)
            self._executor = None
        log.info("Renewal scheduler stopped")

    def _new_executor(self) -> ThreadPoolExecutor:
        return ThreadPoolExecutor(
            max_workers=self._settings.max_workers,
            thread_name_prefix="renewal",
        )

    def cancel(self, certificate_id: str) -> bool:
        """Signal the running job for *certificate_id*; return whether one existed."""
        with self._jobs_lock:
            event = self._cancel_events.get(certificate_id)
        if event is None:
            return False
        event.set()
        return True

    def tick(self, now: datetime | None = None) -> list[Future]:
        """Submit every due certificate whose lock is free.

        Returns
        -------
        list[Future]
            One future per submitted job.

        """
        now = now or self._orchestrator.now()
        due = self._store.list_due(now, self.horizon)
        futures: list[Future] = []
        for record in due:
            executor = self._executor
            if self._stop_event.is_set() or executor is None:
                break
            if not self._locks.acquire(record.id):
                log.debug("Skipping %s: a job is already running", record.id)
                continue
            cancel = threading.Event()
            with self._jobs_lock:
                self._cancel_events[record.id] = cancel
            try:
                futures.append(executor.submit(self._run_job, record, cancel))
            except RuntimeError:
                self._finish_job(record.id)
                raise
        if due:
            log.info("Scheduler tick: %d due, %d submitted", len(due), len(futures))
        return futures

    def run_once(self, now: datetime | None = None, timeout: float | None = None) -> int:
        """Run one tick and wait for its jobs; return the number of jobs run."""
        futures = self.tick(now)
        wait(futures, timeout=timeout)
        return len(futures)

    def _run(self) -> None:
        """Main scheduler loop."""
        while not self._stop_event.is_set():
            try:
                self.tick()
                self._consecutive_failures = 0
            except Exception:
                self._consecutive_failures += 1
                log.exception(
                    "Scheduler tick failed (consecutive: %d)",
                    self._consecutive_failures,
                )
                backoff = min(
                    self._settings.tick_seconds * (2**self._consecutive_failures),
                    self._settings.tick_seconds * _MAX_BACKOFF_FACTOR,
                )
                self._stop_event.wait(timeout=backoff)
                continue
            self._stop_event.wait(timeout=self._settings.tick_seconds)

    def _run_job(self, record: CertificateRecord, cancel: threading.Event) -> CertificateRecord | None:
        try:
            with job_context(record.id):
                return self._orchestrator.process(record.id, cancel=cancel, horizon=self.horizon)
        except JobCancelled:
            log.info("Job for %s cancelled", record.id)
        except LifecycleError as exc:
            log.warning(
                "Job for %s ended with %s: %s",
                record.id,
                exc.kind,
                exc.detail,
                extra={"certificate_id": record.id, "error_kind": exc.kind.value},
            )
        except Exception:
            log.exception("Unexpected error processing certificate %s", record.id)
        finally:
            self._finish_job(record.id)
        return None

    def _finish_job(self, certificate_id: str) -> None:
        with self._jobs_lock:
            self._cancel_events.pop(certificate_id, None)
        self._locks.release(certificate_id)

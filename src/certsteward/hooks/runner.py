"""Hook runner: loads, dispatches and retries post-issuance hooks.

Loads :class:`Hook` subclasses from configuration at startup, manages
a :class:`~concurrent.futures.ThreadPoolExecutor` for async dispatch,
and exposes :meth:`HookRunner.notify` for running one hook
synchronously (operator retries, tests).

Guarantees:
- Fire-and-forget dispatch (never blocks the orchestrator)
- Context isolation via ``copy.deepcopy`` + shallow copy per hook
- Bounded retries with exponential backoff per hook invocation
- Exhausted failures go to the dead-letter log and the result table;
  they never touch the certificate record
- Fail-loud hook loading (broken hook -> service refuses to start)

Usage::

    runner = HookRunner(settings.hooks)
    runner.dispatch("certificate.renewed", ctx, certificate_id="example.com")
"""

from __future__ import annotations

import copy
import importlib
import json
import logging
import re
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from certsteward.core.errors import HookError, HookNonZeroExit, HookTimeout
from certsteward.hooks.base import Hook
from certsteward.hooks.events import EVENT_METHOD_MAP, KNOWN_EVENTS

if TYPE_CHECKING:
    from collections.abc import Iterable

    from certsteward.config.settings import HookEntrySettings, HookSettings

log = logging.getLogger(__name__)

_CLASS_PATH_RE = re.compile(r"^[a-zA-Z_][a-zA-Z0-9_]*(\.[a-zA-Z_][a-zA-Z0-9_]*)+$")


@dataclass
class _LoadedHook:
    """Internal wrapper for a loaded hook instance."""

    instance: Hook
    entry: HookEntrySettings
    timeout: int
    subscribed_events: frozenset = field(default_factory=frozenset)


@dataclass(frozen=True)
class HookResult:
    """Outcome of one hook invocation (after retries)."""

    hook_name: str
    event: str
    certificate_id: str
    outcome: str
    attempts: int
    duration_ms: float
    error_kind: str | None = None
    error: str | None = None
    finished_at: datetime | None = None


class HookRunner:
    """Registry of loaded hooks with fire-and-forget dispatch.

    Parameters
    ----------
    settings:
        The ``hooks`` section from :class:`CertstewardSettings`.

    """

    def __init__(self, settings: HookSettings) -> None:
        self._settings = settings
        self._hooks: dict[str, _LoadedHook] = {}
        self._executor: ThreadPoolExecutor | None = None
        self._shutdown_event = threading.Event()
        self._dispatch_count = 0
        self._error_count = 0
        self._results: dict[tuple[str, str], HookResult] = {}
        self._lock = threading.Lock()
        self._load()

    # -- metrics properties ------------------------------------------------

    @property
    def dispatch_count(self) -> int:
        with self._lock:
            return self._dispatch_count

    @property
    def error_count(self) -> int:
        with self._lock:
            return self._error_count

    @property
    def hook_names(self) -> list[str]:
        return list(self._hooks)

    @property
    def is_shutdown(self) -> bool:
        return self._shutdown_event.is_set()

    def results_for(self, certificate_id: str) -> list[HookResult]:
        """Most recent result of every hook run for *certificate_id*."""
        with self._lock:
            return [r for (cid, _), r in self._results.items() if cid == certificate_id]

    # -- loading -----------------------------------------------------------

    def _load(self) -> None:
        """Load all enabled hooks from configuration.

        Raises on any failure; the service must not start with broken hooks.
        """
        for entry in self._settings.registered:
            if not entry.enabled:
                log.debug("Hook '%s' is disabled, skipping", entry.name)
                continue
            try:
                self._load_hook(entry)
            except Exception:
                log.critical(
                    "Failed to load hook '%s' (%s); refusing to start",
                    entry.name,
                    entry.class_path,
                    exc_info=True,
                )
                raise

        if self._hooks:
            self._executor = ThreadPoolExecutor(
                max_workers=self._settings.max_workers,
                thread_name_prefix="certsteward-hook",
            )
            log.info(
                "Loaded %d hook(s), executor pool=%d",
                len(self._hooks),
                self._settings.max_workers,
            )

    def _load_hook(self, entry: HookEntrySettings) -> None:
        if entry.name in self._hooks:
            msg = f"Duplicate hook name '{entry.name}'"
            raise ValueError(msg)
        if not _CLASS_PATH_RE.match(entry.class_path):
            msg = (
                f"Invalid hook class path '{entry.class_path}': must match "
                "'package.module.ClassName' (only alphanumerics and underscores)"
            )
            raise ValueError(msg)

        module_path, _, cls_name = entry.class_path.rpartition(".")
        module = importlib.import_module(module_path)
        cls = getattr(module, cls_name)

        if not (isinstance(cls, type) and issubclass(cls, Hook)):
            msg = f"Hook '{entry.class_path}' must be a subclass of certsteward.hooks.Hook"
            raise TypeError(msg)

        cls.validate_config(entry.config)
        timeout = (
            entry.timeout_seconds
            if entry.timeout_seconds is not None
            else self._settings.timeout_seconds
        )
        instance = cls(config=entry.config, timeout_seconds=timeout)

        if entry.events:
            unknown = frozenset(entry.events) - KNOWN_EVENTS
            if unknown:
                msg = (
                    f"Hook '{entry.name}' subscribes to unknown events: "
                    f"{sorted(unknown)}. Known events: {sorted(KNOWN_EVENTS)}"
                )
                raise ValueError(msg)
            subscribed = frozenset(entry.events)
        else:
            subscribed = KNOWN_EVENTS

        self._hooks[entry.name] = _LoadedHook(
            instance=instance,
            entry=entry,
            timeout=timeout,
            subscribed_events=subscribed,
        )
        log.info(
            "Loaded hook: %s -> %s (events=%s)",
            entry.name,
            entry.class_path,
            "all" if subscribed == KNOWN_EVENTS else sorted(subscribed),
        )

    # -- dispatch ----------------------------------------------------------

    def dispatch(
        self,
        event: str,
        context: dict,
        *,
        certificate_id: str,
        hook_names: Iterable[str] = (),
    ) -> list[Future]:
        """Dispatch an event to all subscribed hooks (fire-and-forget).

        Parameters
        ----------
        event:
            The event name (e.g. ``"certificate.renewed"``).
        context:
            Event-specific context.  Deep-copied once; each hook
            receives its own shallow copy.
        certificate_id:
            Certificate the event concerns.
        hook_names:
            Restrict dispatch to these hooks; empty means every hook.

        Returns
        -------
        list[Future]
            One future per submitted hook, resolving to a :class:`HookResult`.

        """
        method_name = EVENT_METHOD_MAP.get(event)
        if method_name is None:
            msg = f"Unknown hook event '{event}'. Known events: {sorted(KNOWN_EVENTS)}"
            raise ValueError(msg)

        if self._shutdown_event.is_set() or self._executor is None:
            return []

        wanted = set(hook_names)
        base_context = copy.deepcopy(context)
        base_context.setdefault("event", event)
        base_context.setdefault("certificate_id", certificate_id)

        futures: list[Future] = []
        for name, loaded in self._hooks.items():
            if event not in loaded.subscribed_events:
                continue
            if wanted and name not in wanted:
                continue
            try:
                future = self._executor.submit(
                    self._execute_hook,
                    loaded,
                    method_name,
                    base_context.copy(),
                    event,
                    certificate_id,
                )
            except RuntimeError:
                log.warning(
                    "Executor shut down, cannot dispatch '%s' to '%s'",
                    event,
                    name,
                )
                continue
            future.add_done_callback(self._on_hook_done)
            futures.append(future)
        return futures

    def notify(
        self,
        certificate_id: str,
        hook_spec: str | HookEntrySettings,
        context: dict | None = None,
        *,
        event: str = "certificate.issued",
    ) -> HookResult:
        """Run one hook synchronously, with retries.

        Parameters
        ----------
        certificate_id:
            Certificate the notification concerns.
        hook_spec:
            Name of a loaded hook, or a hook entry to load ad hoc.
        context:
            Event context passed to the hook.
        event:
            Event whose handler method is invoked.

        Returns
        -------
        HookResult
            The successful result.

        Raises
        ------
        HookTimeout, HookNonZeroExit
            When the hook still fails after all retries.

        """
        if isinstance(hook_spec, str):
            loaded = self._hooks.get(hook_spec)
            if loaded is None:
                msg = f"Unknown hook '{hook_spec}'; loaded hooks: {sorted(self._hooks)}"
                raise KeyError(msg)
        else:
            loaded = self._hooks.get(hook_spec.name)
            if loaded is None or loaded.entry != hook_spec:
                loaded = self._build_adhoc(hook_spec)

        ctx = copy.deepcopy(context or {})
        ctx.setdefault("event", event)
        ctx.setdefault("certificate_id", certificate_id)
        result = self._execute_hook(loaded, EVENT_METHOD_MAP[event], ctx, event, certificate_id)
        self._record(result)
        if result.outcome == "success":
            return result
        if result.error_kind == "hook_timeout":
            raise HookTimeout(result.error or "hook timed out")
        raise HookNonZeroExit(result.error or "hook failed")

    def _build_adhoc(self, entry: HookEntrySettings) -> _LoadedHook:
        saved = self._hooks
        self._hooks = {}
        try:
            self._load_hook(entry)
            return self._hooks[entry.name]
        finally:
            self._hooks = saved

    def _execute_hook(
        self,
        loaded: _LoadedHook,
        method_name: str,
        context: dict,
        event: str,
        certificate_id: str,
    ) -> HookResult:
        """Run a single hook method with bounded retries."""
        max_retries = self._settings.max_retries
        backoff = self._settings.retry_backoff_seconds
        start = time.monotonic()
        last_exc: Exception | None = None

        for attempt in range(max_retries + 1):
            try:
                getattr(loaded.instance, method_name)(context)
            except Exception as exc:  # noqa: BLE001
                last_exc = exc
                log.warning(
                    "Hook '%s' failed for %s (attempt %d/%d): %s",
                    loaded.entry.name,
                    certificate_id,
                    attempt + 1,
                    max_retries + 1,
                    exc,
                )
                if attempt < max_retries and not self._shutdown_event.is_set():
                    time.sleep(backoff * (2**attempt))
                    continue
                break
            return HookResult(
                hook_name=loaded.entry.name,
                event=event,
                certificate_id=certificate_id,
                outcome="success",
                attempts=attempt + 1,
                duration_ms=round((time.monotonic() - start) * 1000, 2),
                finished_at=datetime.now(UTC),
            )

        kind = last_exc.kind.value if isinstance(last_exc, HookError) else "hook_non_zero_exit"
        return HookResult(
            hook_name=loaded.entry.name,
            event=event,
            certificate_id=certificate_id,
            outcome="error",
            attempts=attempt + 1,
            duration_ms=round((time.monotonic() - start) * 1000, 2),
            error_kind=kind,
            error=str(last_exc),
            finished_at=datetime.now(UTC),
        )

    def _record(self, result: HookResult) -> None:
        with self._lock:
            self._dispatch_count += 1
            if result.outcome == "error":
                self._error_count += 1
            self._results[(result.certificate_id, result.hook_name)] = result

    def _on_hook_done(self, future: Future) -> None:
        """Done-callback: structured logging, counters, dead letter."""
        try:
            result: HookResult = future.result(timeout=0)
        except Exception:
            with self._lock:
                self._dispatch_count += 1
                self._error_count += 1
            log.exception("Hook future failed unexpectedly")
            return

        self._record(result)
        extra = {
            "hook_name": result.hook_name,
            "event": result.event,
            "certificate_id": result.certificate_id,
            "outcome": result.outcome,
            "duration_ms": result.duration_ms,
        }
        if result.outcome == "error":
            log.error(
                "Hook '%s' gave up on event '%s' for %s after %d attempt(s): %s",
                result.hook_name,
                result.event,
                result.certificate_id,
                result.attempts,
                result.error,
                extra=extra,
            )
            if self._settings.dead_letter_log:
                self._write_dead_letter(result)
        else:
            log.debug(
                "Hook '%s' completed event '%s' in %.1fms",
                result.hook_name,
                result.event,
                result.duration_ms,
                extra=extra,
            )

    def _write_dead_letter(self, result: HookResult) -> None:
        """Append a failed hook result to the dead-letter log file."""
        entry = asdict(result)
        entry["finished_at"] = result.finished_at.isoformat() if result.finished_at else None
        try:
            with open(self._settings.dead_letter_log, "a", encoding="utf-8") as f:  # type: ignore[arg-type]
                f.write(json.dumps(entry) + "\n")
        except OSError:
            log.exception("Failed to write dead-letter log entry")

    # -- lifecycle ---------------------------------------------------------

    def shutdown(self, wait: bool = True) -> None:  # noqa: FBT001, FBT002
        """Shut the executor down.  Safe to call more than once."""
        if self._shutdown_event.is_set():
            return
        self._shutdown_event.set()

        if self._executor is not None:
            self._executor.shutdown(wait=wait)
            log.info(
                "Hook executor shut down (dispatched=%d, errors=%d)",
                self.dispatch_count,
                self.error_count,
            )

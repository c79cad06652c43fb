"""Typed, frozen dataclasses for every configuration section.

This module is the **single source of truth** for default values.
JSON Schema defaults exist only for documentation; these builders
are what the application actually reads.

Access pattern::

    from certsteward.config import get_config

    sched = get_config().settings.scheduler
    print(sched.tick_seconds, sched.max_workers)
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta
from typing import Any

from certsteward.models.policy import BackoffSchedule, RenewalPolicy

COMMAND_HOOK_CLASS = "certsteward.hooks.command.CommandHook"

# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class StoreSettings:
    """Where records and artifacts live."""

    backend: str
    path: str


def _build_store(data: dict | None) -> StoreSettings:
    d = data or {}
    return StoreSettings(
        backend=d.get("backend", "file"),
        path=d.get("path", "/var/lib/certsteward"),
    )


# ---------------------------------------------------------------------------
# Database (postgres store backend only)
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class DatabaseSettings:
    """PostgreSQL connection and pool settings."""

    host: str
    port: int
    database: str
    user: str
    password: str
    sslmode: str
    min_connections: int
    max_connections: int
    connection_timeout: float
    auto_setup: bool


def _build_database(data: dict | None) -> DatabaseSettings | None:
    if not data:
        return None
    d = data
    return DatabaseSettings(
        host=d.get("host", "localhost"),
        port=d.get("port", 5432),
        database=d["database"],
        user=d["user"],
        password=d.get("password", ""),
        sslmode=d.get("sslmode", "prefer"),
        min_connections=d.get("min_connections", 1),
        max_connections=d.get("max_connections", 5),
        connection_timeout=d.get("connection_timeout", 30.0),
        auto_setup=d.get("auto_setup", False),
    )


# ---------------------------------------------------------------------------
# ACME
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class CircuitBreakerSettings:
    enabled: bool
    failure_threshold: int
    recovery_timeout_seconds: float


@dataclass(frozen=True)
class AcmeSettings:
    """ACME authority account, timeouts and idempotence window."""

    directory_url: str
    email: str
    storage_path: str
    eab_kid: str | None
    eab_hmac_key: str | None
    key_type: str
    preferred_chain: str | None
    proxy_url: str | None
    verify_ssl: bool
    timeout_seconds: int
    order_ready_timeout_seconds: int
    order_deadline_seconds: int
    validation_cache_seconds: int
    verify_dns: bool
    dns_timeout_seconds: int
    dns_propagation_seconds: int
    circuit_breaker: CircuitBreakerSettings


def _build_acme(data: dict | None, store_path: str) -> AcmeSettings:
    d = data or {}
    cb = d.get("circuit_breaker") or {}
    return AcmeSettings(
        directory_url=d["directory_url"],
        email=d["email"],
        storage_path=d.get("storage_path") or f"{store_path}/acme-account",
        eab_kid=d.get("eab_kid"),
        eab_hmac_key=d.get("eab_hmac_key"),
        key_type=d.get("key_type", "ec256"),
        preferred_chain=d.get("preferred_chain"),
        proxy_url=d.get("proxy_url"),
        verify_ssl=d.get("verify_ssl", True),
        timeout_seconds=d.get("timeout_seconds", 30),
        order_ready_timeout_seconds=d.get("order_ready_timeout_seconds", 30),
        order_deadline_seconds=d.get("order_deadline_seconds", 600),
        validation_cache_seconds=d.get("validation_cache_seconds", 3600),
        verify_dns=d.get("verify_dns", True),
        dns_timeout_seconds=d.get("dns_timeout_seconds", 300),
        dns_propagation_seconds=d.get("dns_propagation_seconds", 60),
        circuit_breaker=CircuitBreakerSettings(
            enabled=cb.get("enabled", True),
            failure_threshold=cb.get("failure_threshold", 5),
            recovery_timeout_seconds=cb.get("recovery_timeout_seconds", 300.0),
        ),
    )


# ---------------------------------------------------------------------------
# Challenges
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ChallengeSettings:
    """Challenge responder selection and its configuration."""

    default_type: str
    responder: str
    config: dict[str, Any]


def _build_challenges(data: dict | None) -> ChallengeSettings:
    d = data or {}
    return ChallengeSettings(
        default_type=d.get("default_type", "http-01"),
        responder=d.get("responder", "webroot"),
        config=dict(d.get("config") or {}),
    )


# ---------------------------------------------------------------------------
# Scheduler / renewal policy
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class SchedulerSettings:
    enabled: bool
    tick_seconds: int
    max_workers: int
    horizon_seconds: int


def _build_scheduler(data: dict | None) -> SchedulerSettings:
    d = data or {}
    return SchedulerSettings(
        enabled=d.get("enabled", True),
        tick_seconds=d.get("tick_seconds", 86400),
        max_workers=d.get("max_workers", 4),
        horizon_seconds=d.get("horizon_seconds", 0),
    )


@dataclass(frozen=True)
class RenewalSettings:
    """Default renewal policy for records registered without one."""

    renew_before_days: int
    max_retries: int
    retry_initial_seconds: int
    retry_multiplier: float
    retry_max_seconds: int

    def policy(self) -> RenewalPolicy:
        return RenewalPolicy(
            renew_before_expiry=timedelta(days=self.renew_before_days),
            max_retries=self.max_retries,
            retry_backoff=BackoffSchedule(
                initial=timedelta(seconds=self.retry_initial_seconds),
                multiplier=self.retry_multiplier,
                max_delay=timedelta(seconds=self.retry_max_seconds),
            ),
        )


def _build_renewal(data: dict | None) -> RenewalSettings:
    d = data or {}
    return RenewalSettings(
        renew_before_days=d.get("renew_before_days", 30),
        max_retries=d.get("max_retries", 5),
        retry_initial_seconds=d.get("retry_initial_seconds", 3600),
        retry_multiplier=d.get("retry_multiplier", 2.0),
        retry_max_seconds=d.get("retry_max_seconds", 86400),
    )


# ---------------------------------------------------------------------------
# Hooks
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class HookEntrySettings:
    """Single registered hook entry with events and config."""

    name: str
    class_path: str
    enabled: bool
    events: tuple[str, ...]
    timeout_seconds: int | None
    config: dict[str, Any]


@dataclass(frozen=True)
class HookSettings:
    """Hook runner settings (workers, retries, registry)."""

    timeout_seconds: int
    max_workers: int
    max_retries: int
    retry_backoff_seconds: float
    dead_letter_log: str | None
    registered: tuple[HookEntrySettings, ...]


def _build_hook_entry(idx: int, entry: dict) -> HookEntrySettings:
    from certsteward.hooks.events import KNOWN_EVENTS  # noqa: PLC0415

    events = tuple(entry.get("events", []))
    for evt in events:
        if evt not in KNOWN_EVENTS:
            msg = (
                f"hooks.registered[{idx}].events: unknown event "
                f"'{evt}'. Known events: {sorted(KNOWN_EVENTS)}"
            )
            raise ValueError(msg)

    config = dict(entry.get("config") or {})
    if "command" in entry:
        class_path = COMMAND_HOOK_CLASS
        config.setdefault("command", entry["command"])
    else:
        class_path = entry["class"]
    return HookEntrySettings(
        name=entry.get("name") or class_path.rpartition(".")[2],
        class_path=class_path,
        enabled=entry.get("enabled", True),
        events=events,
        timeout_seconds=entry.get("timeout_seconds"),
        config=config,
    )


def _build_hooks(data: dict | None) -> HookSettings:
    d = data or {}
    return HookSettings(
        timeout_seconds=d.get("timeout_seconds", 30),
        max_workers=d.get("max_workers", 4),
        max_retries=d.get("max_retries", 2),
        retry_backoff_seconds=d.get("retry_backoff_seconds", 0.5),
        dead_letter_log=d.get("dead_letter_log"),
        registered=tuple(
            _build_hook_entry(idx, entry) for idx, entry in enumerate(d.get("registered", []))
        ),
    )


# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class AuditLogSettings:
    """Audit log of state transitions (rotating file)."""

    enabled: bool
    file: str | None
    max_file_size_bytes: int
    backup_count: int


@dataclass(frozen=True)
class LoggingSettings:
    level: str
    format: str
    audit: AuditLogSettings


def _build_logging(data: dict | None) -> LoggingSettings:
    d = data or {}
    a = d.get("audit") or {}
    return LoggingSettings(
        level=d.get("level", "INFO"),
        format=d.get("format", "json"),
        audit=AuditLogSettings(
            enabled=a.get("enabled", False),
            file=a.get("file"),
            max_file_size_bytes=a.get("max_file_size_bytes", 10485760),
            backup_count=a.get("backup_count", 5),
        ),
    )


# ---------------------------------------------------------------------------
# Operator API / server
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ApiSettings:
    base_path: str
    token: str | None


def _build_api(data: dict | None) -> ApiSettings:
    d = data or {}
    return ApiSettings(
        base_path=d.get("base_path", "").rstrip("/"),
        token=d.get("token") or None,
    )


@dataclass(frozen=True)
class ServerSettings:
    """HTTP server configuration for the operator API."""

    bind: str
    port: int
    workers: int
    timeout: int
    graceful_timeout: int
    run_scheduler: bool


def _build_server(data: dict | None) -> ServerSettings:
    d = data or {}
    return ServerSettings(
        bind=d.get("bind", "127.0.0.1"),
        port=d.get("port", 8470),
        workers=d.get("workers", 1),
        timeout=d.get("timeout", 30),
        graceful_timeout=d.get("graceful_timeout", 30),
        run_scheduler=d.get("run_scheduler", True),
    )


# ---------------------------------------------------------------------------
# Root settings aggregate
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class CertstewardSettings:
    store: StoreSettings
    database: DatabaseSettings | None
    acme: AcmeSettings
    challenges: ChallengeSettings
    scheduler: SchedulerSettings
    renewal: RenewalSettings
    hooks: HookSettings
    logging: LoggingSettings
    api: ApiSettings
    server: ServerSettings


def build_settings(data: dict) -> CertstewardSettings:
    """Build the full typed settings tree from raw config data.

    Called once during :class:`CertstewardConfig` initialization after
    schema validation and environment-variable resolution.
    """
    store = _build_store(data.get("store"))
    return CertstewardSettings(
        store=store,
        database=_build_database(data.get("database")),
        acme=_build_acme(data.get("acme"), store.path),
        challenges=_build_challenges(data.get("challenges")),
        scheduler=_build_scheduler(data.get("scheduler")),
        renewal=_build_renewal(data.get("renewal")),
        hooks=_build_hooks(data.get("hooks")),
        logging=_build_logging(data.get("logging")),
        api=_build_api(data.get("api")),
        server=_build_server(data.get("server")),
    )

"""Configuration subsystem for CertSteward.

Public API::

    from certsteward.config import get_config, CertstewardConfig

    # At startup (CLI only):
    CertstewardConfig(config_file="config.yaml", schema_file="bundled")

    # Everywhere else:
    cfg = get_config()
    tick = cfg.settings.scheduler.tick_seconds
"""

from certsteward.config.certsteward_config import (
    CertstewardConfig,
    ConfigValidationError,
    get_config,
)
from certsteward.config.settings import (
    AcmeSettings,
    ApiSettings,
    AuditLogSettings,
    CertstewardSettings,
    ChallengeSettings,
    CircuitBreakerSettings,
    DatabaseSettings,
    HookEntrySettings,
    HookSettings,
    LoggingSettings,
    RenewalSettings,
    SchedulerSettings,
    ServerSettings,
    StoreSettings,
    build_settings,
)

__all__ = [
    "AcmeSettings",
    "ApiSettings",
    "AuditLogSettings",
    "CertstewardConfig",
    "CertstewardSettings",
    "ChallengeSettings",
    "CircuitBreakerSettings",
    "ConfigValidationError",
    "DatabaseSettings",
    "HookEntrySettings",
    "HookSettings",
    "LoggingSettings",
    "RenewalSettings",
    "SchedulerSettings",
    "ServerSettings",
    "StoreSettings",
    "build_settings",
    "get_config",
]

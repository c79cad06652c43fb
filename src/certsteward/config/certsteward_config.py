"""CertSteward configuration loader built on ConfigKit.

Lifecycle::

    # 1. CLI creates the singleton (once, at startup)
    CertstewardConfig(config_file="/etc/certsteward/config.yaml", schema_file="bundled")

    # 2. Any module retrieves it afterwards
    from certsteward.config import get_config
    cfg = get_config()
    cfg.settings.scheduler.tick_seconds  # typed access

    # 3. Dynamic access
    cfg.get("challenges.config.webroot", default="/var/www/html")
"""

from __future__ import annotations

import logging
import os
import re
from pathlib import Path
from typing import Any

from configkit import ConfigKit, ConfigKitMeta

from certsteward.config.settings import CertstewardSettings, build_settings

_SCHEMA_PATH = Path(__file__).parent / "schema.json"

_ENV_RE = re.compile(
    r"^\$\{([^}:]+?)(?::-(.*))?\}$",
    re.DOTALL,
)

_CLASS_PATH_RE = re.compile(
    r"^[a-zA-Z_][a-zA-Z0-9_]*(\.[a-zA-Z_][a-zA-Z0-9_]*)+$",
)

_BUILTIN_RESPONDERS = frozenset({"webroot", "script"})

log = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Module-level singleton reference
# ---------------------------------------------------------------------------
_instance: CertstewardConfig | None = None


def get_config() -> CertstewardConfig:
    """Return the initialised configuration singleton.

    Raises :class:`RuntimeError` if :class:`CertstewardConfig` has not
    been created yet (i.e. the CLI entry point has not run).
    """
    if _instance is None:
        msg = (
            "Configuration not initialised. "
            "CertstewardConfig must be created with config_file= before calling get_config()."
        )
        raise RuntimeError(msg)
    return _instance


class ConfigValidationError(Exception):
    """Raised when cross-field validation finds one or more problems."""

    def __init__(self, errors: list[str]) -> None:
        self.errors = errors
        body = "\n".join(f"  - {e}" for e in errors)
        super().__init__(f"Configuration validation failed:\n{body}")


# ---------------------------------------------------------------------------
# Environment variable resolution
# ---------------------------------------------------------------------------


def _resolve_value(value: str, path: str) -> str:
    """Replace ``${VAR}`` or ``${VAR:-default}`` with env var value."""
    match = _ENV_RE.match(value)
    if match is None:
        return value
    var_name = match.group(1)
    fallback = match.group(2)
    resolved = os.environ.get(var_name)
    if resolved is not None:
        return resolved
    if fallback is not None:
        return fallback
    raise ConfigValidationError(
        [
            f"Environment variable '${{{var_name}}}' referenced "
            f"at '{path}' is not set and has no default",
        ],
    )


def _resolve_env_vars(data: Any, path: str = "") -> None:  # noqa: ANN401
    """Walk *data* in-place and resolve ``${VAR}``/``${VAR:-default}`` strings."""
    if isinstance(data, dict):
        for key in data:
            child_path = f"{path}.{key}" if path else key
            if isinstance(data[key], str):
                data[key] = _resolve_value(data[key], child_path)
            elif isinstance(data[key], (dict, list)):
                _resolve_env_vars(data[key], child_path)
    elif isinstance(data, list):
        for idx, item in enumerate(data):
            child_path = f"{path}[{idx}]"
            if isinstance(item, str):
                data[idx] = _resolve_value(item, child_path)
            elif isinstance(item, (dict, list)):
                _resolve_env_vars(item, child_path)


# ---------------------------------------------------------------------------
# Config class
# ---------------------------------------------------------------------------


class CertstewardConfig(ConfigKit):
    """Central configuration for CertSteward.

    The JSON schema is bundled at ``config/schema.json``; callers
    supply only ``config_file``.  After construction the typed settings
    tree is available at :pyattr:`settings`.
    """

    def __init__(
        self,
        *,
        config_file: str | Path,
        schema_file: str | Path | None = None,  # noqa: ARG002
    ) -> None:
        """Initialise the configuration singleton.

        Parameters
        ----------
        config_file:
            Path to the YAML/JSON configuration file.
        schema_file:
            Ignored.  Exists only to satisfy the
            :class:`ConfigKitMeta` singleton guard.

        """
        global _instance  # noqa: PLW0603

        super().__init__(
            config_file=config_file,
            schema_file=_SCHEMA_PATH,
        )
        self._settings: CertstewardSettings = build_settings(self.data)
        _instance = self

    def _load(self) -> None:
        """Load the config file, then resolve env-var references.

        Runs before schema validation so substituted values are checked
        against the schema's enum and type constraints.
        """
        super()._load()
        _resolve_env_vars(self._data)
        self._data.setdefault("_source", str(self._config_path))

    @property
    def settings(self) -> CertstewardSettings:
        """Fully-typed, frozen settings tree."""
        return self._settings

    def additional_checks(self) -> None:  # noqa: C901, PLR0912
        """Cross-field validation, run by ConfigKit after the schema passes."""
        errors: list[str] = []
        warnings: list[str] = []

        store = self.data.get("store") or {}
        database = self.data.get("database") or {}
        acme = self.data.get("acme") or {}
        challenges = self.data.get("challenges") or {}
        renewal = self.data.get("renewal") or {}
        scheduler = self.data.get("scheduler") or {}
        hooks = self.data.get("hooks") or {}
        api = self.data.get("api") or {}
        server = self.data.get("server") or {}
        logging_cfg = self.data.get("logging") or {}

        # -- store --
        if store.get("backend", "file") == "postgres" and not database:
            errors.append("database section is required when store.backend is 'postgres'")
        if database and database.get("min_connections", 1) > database.get("max_connections", 5):
            errors.append(
                f"database.min_connections ({database['min_connections']}) must be <= "
                f"database.max_connections ({database.get('max_connections', 5)})",
            )

        # -- ACME --
        if bool(acme.get("eab_kid")) != bool(acme.get("eab_hmac_key")):
            errors.append("acme.eab_kid and acme.eab_hmac_key must be set together")
        if not acme.get("verify_ssl", True):
            warnings.append("acme.verify_ssl is false; TLS to the authority is not verified")

        # -- challenges --
        responder = challenges.get("responder", "webroot")
        responder_cfg = challenges.get("config") or {}
        if responder.startswith("ext:"):
            if not _CLASS_PATH_RE.match(responder[4:]):
                errors.append(
                    f"challenges.responder '{responder}' is not a valid "
                    "'ext:package.module.Class' reference",
                )
        elif responder not in _BUILTIN_RESPONDERS:
            errors.append(
                f"challenges.responder '{responder}' is unknown. "
                f"Built-in responders: {sorted(_BUILTIN_RESPONDERS)}",
            )
        elif responder == "webroot" and not responder_cfg.get("webroot"):
            errors.append("challenges.config.webroot is required for the 'webroot' responder")
        if responder == "webroot" and challenges.get("default_type") == "dns-01":
            errors.append(
                "challenges.default_type 'dns-01' cannot be served by the 'webroot' responder",
            )

        # -- renewal --
        renew_days = renewal.get("renew_before_days", 30)
        if renewal.get("retry_initial_seconds", 3600) > renewal.get("retry_max_seconds", 86400):
            errors.append("renewal.retry_initial_seconds must be <= renewal.retry_max_seconds")
        tick = scheduler.get("tick_seconds", 86400)
        if tick > renew_days * 86400:
            errors.append(
                f"scheduler.tick_seconds ({tick}) exceeds the renewal window "
                f"({renew_days} days); certificates could expire between ticks",
            )

        # -- hooks --
        names: set[str] = set()
        for idx, entry in enumerate(hooks.get("registered", [])):
            class_path = entry.get("class", "")
            if class_path and not _CLASS_PATH_RE.match(class_path):
                errors.append(
                    f"hooks.registered[{idx}].class '{class_path}' is not a "
                    "valid fully qualified Python class path "
                    "(expected 'package.module.ClassName')",
                )
            name = entry.get("name") or (class_path.rpartition(".")[2] if class_path else "")
            if "command" in entry and not entry.get("name"):
                errors.append(f"hooks.registered[{idx}].name is required for command hooks")
            elif name in names:
                errors.append(f"hooks.registered[{idx}].name '{name}' is not unique")
            names.add(name)

        # -- api / server --
        if not api.get("token") and server.get("bind", "127.0.0.1") not in ("127.0.0.1", "::1", "localhost"):
            warnings.append(
                f"api.token is not set and server.bind is {server.get('bind')!r}; "
                "the operator API is reachable without authentication",
            )
        if server.get("workers", 1) > 1 and server.get("run_scheduler", True):
            warnings.append(
                "server.workers > 1 with server.run_scheduler; each worker runs a "
                "scheduler and relies on the store's compare-and-swap to avoid duplicate work",
            )

        audit = logging_cfg.get("audit") or {}
        if audit.get("enabled") and not audit.get("file"):
            errors.append("logging.audit.file is required when logging.audit.enabled is true")

        for w in warnings:
            log.warning("Config warning: %s", w)

        if errors:
            raise ConfigValidationError(errors)

    @classmethod
    def reset(cls) -> None:
        """Reset the singleton -- testing only."""
        global _instance  # noqa: PLW0603
        _instance = None
        ConfigKitMeta.reset()

    def __repr__(self) -> str:
        source = self.data.get("_source", "?")
        return f"<CertstewardConfig config_file={source}>"

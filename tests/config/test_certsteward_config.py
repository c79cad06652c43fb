"""Tests for CertstewardConfig: loading, env-var resolution, cross-field checks.

Invalid combinations that should be rejected:
- postgres store without a database section
- half-configured external account binding
- webroot responder without a webroot, or asked to serve dns-01
- scheduler tick longer than the renewal window
- duplicate or unnamed hooks
"""

from __future__ import annotations

import logging
from datetime import timedelta
from pathlib import Path

import pytest
import yaml

from certsteward.config import get_config
from certsteward.config.certsteward_config import CertstewardConfig, ConfigValidationError
from certsteward.config.settings import COMMAND_HOOK_CLASS
from certsteward.core.types import ChallengeType


def _write_config(tmp_path: Path, overrides: dict | None = None) -> Path:
    """Write a minimal valid config, merging *overrides*, return path."""
    cfg = {
        "acme": {
            "directory_url": "https://acme.test/directory",
            "email": "ops@example.com",
        },
        "store": {"path": str(tmp_path / "store")},
        "challenges": {"config": {"webroot": str(tmp_path / "www")}},
    }
    if overrides:
        _deep_merge(cfg, overrides)
    path = tmp_path / "config.yaml"
    path.write_text(
        yaml.safe_dump(cfg, default_flow_style=False, sort_keys=False),
        encoding="utf-8",
    )
    return path


def _deep_merge(base: dict, overrides: dict) -> None:
    """Recursively merge overrides into base."""
    for key, value in overrides.items():
        if key in base and isinstance(base[key], dict) and isinstance(value, dict):
            _deep_merge(base[key], value)
        else:
            base[key] = value


def _make_config(tmp_path: Path, overrides: dict | None = None) -> CertstewardConfig:
    return CertstewardConfig(config_file=_write_config(tmp_path, overrides), schema_file="bundled")


class TestLoading:
    def test_defaults(self, tmp_path):
        settings = _make_config(tmp_path).settings
        assert settings.store.backend == "file"
        assert settings.acme.storage_path == f"{tmp_path / 'store'}/acme-account"
        assert settings.scheduler.tick_seconds == 86400
        assert settings.challenges.default_type == ChallengeType.HTTP_01
        policy = settings.renewal.policy()
        assert policy.renew_before_expiry == timedelta(days=30)
        assert policy.max_retries == 5
        assert policy.retry_backoff.initial == timedelta(hours=1)

    def test_singleton_and_get_config(self, tmp_path):
        config = _make_config(tmp_path)
        assert get_config() is config
        assert CertstewardConfig(config_file="ignored", schema_file="ignored") is config

    def test_get_config_before_init(self):
        with pytest.raises(RuntimeError, match="not initialised"):
            get_config()

    def test_source_recorded(self, tmp_path):
        config = _make_config(tmp_path)
        assert config.data["_source"].endswith("config.yaml")
        assert "config.yaml" in repr(config)

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            CertstewardConfig(config_file=tmp_path / "absent.yaml", schema_file="bundled")

    def test_schema_violation(self, tmp_path):
        with pytest.raises(ValueError, match="Schema validation failed"):
            _make_config(tmp_path, {"scheduler": {"tick_seconds": 0}})

    def test_unknown_section_rejected(self, tmp_path):
        with pytest.raises(ValueError, match="Schema validation failed"):
            _make_config(tmp_path, {"notifications": {"enabled": True}})

    def test_command_hook_entry(self, tmp_path):
        config = _make_config(
            tmp_path,
            {
                "hooks": {
                    "registered": [
                        {
                            "name": "reload-nginx",
                            "command": ["systemctl", "reload", "nginx"],
                            "events": ["certificate.renewed"],
                        },
                    ],
                },
            },
        )
        [entry] = config.settings.hooks.registered
        assert entry.class_path == COMMAND_HOOK_CLASS
        assert entry.config["command"] == ["systemctl", "reload", "nginx"]
        assert entry.events == ("certificate.renewed",)


class TestEnvVars:
    def test_value_substituted(self, tmp_path, monkeypatch):
        monkeypatch.setenv("CS_EAB_KID", "kid-123")
        monkeypatch.setenv("CS_EAB_KEY", "c2VjcmV0")
        config = _make_config(
            tmp_path,
            {"acme": {"eab_kid": "${CS_EAB_KID}", "eab_hmac_key": "${CS_EAB_KEY}"}},
        )
        assert config.settings.acme.eab_kid == "kid-123"

    def test_default_used(self, tmp_path, monkeypatch):
        monkeypatch.delenv("CS_API_TOKEN", raising=False)
        config = _make_config(tmp_path, {"api": {"token": "${CS_API_TOKEN:-fallback}"}})
        assert config.settings.api.token == "fallback"

    def test_unset_without_default(self, tmp_path, monkeypatch):
        monkeypatch.delenv("CS_MISSING", raising=False)
        with pytest.raises(ConfigValidationError, match="CS_MISSING") as info:
            _make_config(tmp_path, {"api": {"token": "${CS_MISSING}"}})
        assert "api.token" in info.value.errors[0]


class TestCrossFieldValidation:
    @pytest.mark.parametrize(
        "overrides,message",
        [
            ({"store": {"backend": "postgres"}}, "database section is required"),
            ({"acme": {"eab_kid": "kid"}}, "must be set together"),
            ({"challenges": {"config": {"webroot": ""}}}, "webroot is required"),
            ({"challenges": {"default_type": "dns-01"}}, "cannot be served"),
            ({"challenges": {"responder": "route53"}}, "is unknown"),
            ({"challenges": {"responder": "ext:NoModule"}}, "not a valid"),
            (
                {"renewal": {"retry_initial_seconds": 7200, "retry_max_seconds": 60}},
                "retry_initial_seconds must be <=",
            ),
            (
                {"renewal": {"renew_before_days": 1}, "scheduler": {"tick_seconds": 172800}},
                "exceeds the renewal window",
            ),
            (
                {"hooks": {"registered": [{"command": "true"}]}},
                "name is required for command hooks",
            ),
            (
                {
                    "hooks": {
                        "registered": [
                            {"name": "a", "command": "true"},
                            {"name": "a", "command": "false"},
                        ],
                    },
                },
                "not unique",
            ),
            ({"logging": {"audit": {"enabled": True}}}, "logging.audit.file is required"),
            (
                {"database": {"database": "cs", "user": "cs", "min_connections": 9, "max_connections": 2}},
                "min_connections",
            ),
        ],
    )
    def test_rejected(self, tmp_path, overrides, message):
        with pytest.raises(ConfigValidationError, match=message):
            _make_config(tmp_path, overrides)

    def test_errors_collected(self, tmp_path):
        with pytest.raises(ConfigValidationError) as info:
            _make_config(
                tmp_path,
                {"acme": {"eab_kid": "kid"}, "logging": {"audit": {"enabled": True}}},
            )
        assert len(info.value.errors) == 2

    def test_script_responder_accepted(self, tmp_path):
        config = _make_config(
            tmp_path,
            {
                "challenges": {
                    "default_type": "dns-01",
                    "responder": "script",
                    "config": {"dns_create_script": "/a", "dns_delete_script": "/b"},
                },
            },
        )
        assert config.settings.challenges.responder == "script"

    def test_warnings_logged(self, tmp_path, caplog):
        with caplog.at_level(logging.WARNING, logger="certsteward.config.certsteward_config"):
            _make_config(
                tmp_path,
                {"acme": {"verify_ssl": False}, "server": {"bind": "0.0.0.0", "workers": 2}},  # noqa: S104
            )
        assert "verify_ssl is false" in caplog.text
        assert "reachable without authentication" in caplog.text
        assert "each worker runs a scheduler" in caplog.text

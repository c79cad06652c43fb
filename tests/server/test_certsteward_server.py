"""Tests for certsteward.server: the gunicorn runner and the WSGI entry point.

gunicorn is replaced by a fake module so these run everywhere.
"""

from __future__ import annotations

import importlib
import sys
import types
from unittest.mock import MagicMock, patch

import pytest

from certsteward.config.settings import ServerSettings
from certsteward.server.gunicorn_app import run_gunicorn


def _server(**overrides) -> ServerSettings:
    values = {
        "bind": "127.0.0.1",
        "port": 8443,
        "workers": 1,
        "timeout": 30,
        "graceful_timeout": 20,
        "run_scheduler": True,
    }
    values.update(overrides)
    return ServerSettings(**values)


def _fake_gunicorn(captured: dict) -> dict:
    """sys.modules entries whose BaseApplication records cfg and load()."""

    class FakeCfg:
        def __init__(self):
            self.settings = {}

        def set(self, key, value):
            self.settings[key] = value

    class FakeBaseApplication:
        def __init__(self):
            self.cfg = FakeCfg()
            self.load_config()

        def load_config(self):
            pass

        def run(self):
            captured.update(self.cfg.settings)
            captured["app"] = self.load()

    base = types.ModuleType("gunicorn.app.base")
    base.BaseApplication = FakeBaseApplication
    app_mod = types.ModuleType("gunicorn.app")
    app_mod.base = base
    root = types.ModuleType("gunicorn")
    root.app = app_mod
    return {"gunicorn": root, "gunicorn.app": app_mod, "gunicorn.app.base": base}


class TestRunGunicorn:
    def test_missing_gunicorn(self):
        with (
            patch.dict(sys.modules, {"gunicorn": None, "gunicorn.app": None, "gunicorn.app.base": None}),
            pytest.raises(RuntimeError, match="--dev"),
        ):
            run_gunicorn(MagicMock(), _server())

    def test_settings_applied(self):
        captured: dict = {}
        flask_app = MagicMock()
        with patch.dict(sys.modules, _fake_gunicorn(captured)):
            run_gunicorn(flask_app, _server(bind="0.0.0.0", port=9000, workers=2))  # noqa: S104
        assert captured["bind"] == "0.0.0.0:9000"
        assert captured["workers"] == 2
        assert captured["graceful_timeout"] == 20
        assert captured["accesslog"] is None
        assert captured["app"] is flask_app


class TestWsgi:
    def teardown_method(self):
        sys.modules.pop("certsteward.server.wsgi", None)

    def test_exits_without_config_path(self):
        sys.modules.pop("certsteward.server.wsgi", None)
        with patch.dict("os.environ", {}, clear=True), pytest.raises(SystemExit) as exc_info:
            importlib.import_module("certsteward.server.wsgi")
        assert exc_info.value.code == 1

    def test_bootstrap_order(self, tmp_path):
        sys.modules.pop("certsteward.server.wsgi", None)
        calls = []
        config = MagicMock()
        app = MagicMock()

        def make_config(**kwargs):
            calls.append(("config", kwargs))
            return config

        with (
            patch.dict("os.environ", {"CERTSTEWARD_CONFIG": str(tmp_path / "c.yaml")}, clear=True),
            patch("certsteward.config.CertstewardConfig", side_effect=make_config),
            patch(
                "certsteward.logging.configure_logging",
                side_effect=lambda s: calls.append(("logging", s)),
            ),
            patch(
                "certsteward.app.create_app",
                side_effect=lambda **kw: calls.append(("app", kw)) or app,
            ),
        ):
            module = importlib.import_module("certsteward.server.wsgi")

        assert [name for name, _ in calls] == ["config", "logging", "app"]
        assert calls[0][1] == {"config_file": str(tmp_path / "c.yaml"), "schema_file": "bundled"}
        assert calls[2][1] == {"config": config}
        assert module.app is app

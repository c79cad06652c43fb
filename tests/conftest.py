"""Root conftest for the CertSteward test suite."""

from __future__ import annotations

import logging
import sys
from pathlib import Path

import pytest
import yaml

# ---------------------------------------------------------------------------
# Make ``src/`` importable without installing the package
# ---------------------------------------------------------------------------
_SRC = str(Path(__file__).resolve().parent.parent / "src")
if _SRC not in sys.path:
    sys.path.insert(0, _SRC)

from lifecycle_doubles import FakeAuthority, FakeClock  # noqa: E402

# ---------------------------------------------------------------------------
# Minimal config data shared by multiple test modules
# ---------------------------------------------------------------------------


@pytest.fixture()
def minimal_config_data(tmp_path: Path) -> dict:
    """Return a dict containing the minimum required config fields."""
    return {
        "acme": {
            "directory_url": "https://acme.test/directory",
            "email": "ops@example.com",
        },
        "store": {"path": str(tmp_path / "store")},
        "challenges": {"config": {"webroot": str(tmp_path / "webroot")}},
    }


@pytest.fixture()
def tmp_config_file(tmp_path: Path, minimal_config_data: dict) -> Path:
    """Write *minimal_config_data* to a temp YAML file and return its path."""
    cfg = tmp_path / "config.yaml"
    cfg.write_text(
        yaml.safe_dump(minimal_config_data, default_flow_style=False, sort_keys=False),
        encoding="utf-8",
    )
    return cfg


# ---------------------------------------------------------------------------
# ConfigKit singleton cleanup: autouse so every test gets a fresh slate
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def fresh_config():
    """Reset the CertstewardConfig singleton before and after every test."""
    from certsteward.config.certsteward_config import CertstewardConfig

    CertstewardConfig.reset()
    yield
    CertstewardConfig.reset()


@pytest.fixture(autouse=True)
def restore_loggers():
    """Undo configure_logging() so caplog keeps seeing certsteward records."""
    names = ("certsteward", "certsteward.audit")
    saved = {}
    for name in names:
        logger = logging.getLogger(name)
        saved[name] = (list(logger.handlers), logger.propagate, logger.level)
    yield
    for name, (handlers, propagate, level) in saved.items():
        logger = logging.getLogger(name)
        logger.handlers[:] = handlers
        logger.propagate = propagate
        logger.setLevel(level)


# ---------------------------------------------------------------------------
# Clock, authority and store
# ---------------------------------------------------------------------------


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def authority(clock: FakeClock) -> FakeAuthority:
    return FakeAuthority(clock)


@pytest.fixture()
def file_store(tmp_path: Path):
    from certsteward.store.filesystem import FileCertificateStore

    return FileCertificateStore(tmp_path / "store")

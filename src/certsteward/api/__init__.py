"""Operator HTTP API: Flask blueprint registration.

Call :func:`register_blueprints` during application startup.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from flask import Flask


def register_blueprints(app: Flask) -> None:
    """Mount the certificate routes under ``api.base_path``."""
    from certsteward.api.certificates import certificates_bp  # noqa: PLC0415

    base = app.config["CERTSTEWARD_SETTINGS"].api.base_path.rstrip("/")
    app.register_blueprint(certificates_bp, url_prefix=base or None)

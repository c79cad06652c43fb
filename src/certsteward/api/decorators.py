"""Request pipeline helpers for the operator API.

Provides:
- ``require_token``: before-request hook enforcing the ``api.token`` bearer token
- ``assign_request_id``: before-request hook tagging logs with a request id
- ``json_body``: parse and type-check the JSON request body
"""

from __future__ import annotations

import hmac
import uuid
from typing import Any

from flask import current_app, g, request

from certsteward.app.errors import BAD_REQUEST, UNAUTHORIZED, Problem

_OPEN_ENDPOINTS = frozenset({"certificates.healthz"})


def assign_request_id() -> None:
    g.request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex


def require_token() -> None:
    """Reject the request unless it carries the configured bearer token.

    No-op when ``api.token`` is unset.  Tokens are compared in constant time.
    """
    if request.endpoint in _OPEN_ENDPOINTS:
        return
    token = current_app.config["CERTSTEWARD_SETTINGS"].api.token
    if not token:
        return
    header = request.headers.get("Authorization", "")
    scheme, _, supplied = header.partition(" ")
    if scheme.lower() != "bearer" or not hmac.compare_digest(
        supplied.strip().encode(),
        token.encode(),
    ):
        raise Problem(
            UNAUTHORIZED,
            "Missing or invalid bearer token",
            401,
            headers={"WWW-Authenticate": 'Bearer realm="certsteward"'},
        )


def json_body() -> dict[str, Any]:
    """Return the JSON object body, or an empty dict for an empty body."""
    if not request.get_data():
        return {}
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        raise Problem(BAD_REQUEST, "Request body must be a JSON object", 400)
    return data

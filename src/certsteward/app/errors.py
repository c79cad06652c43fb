"""RFC 7807 Problem Details for the operator API.

Provides :class:`Problem`, an exception that renders itself as an
``application/problem+json`` response, the problem-type URNs used by
CertSteward, the mapping from lifecycle errors to HTTP statuses and
the Flask error-handler registration function.

Usage::

    raise Problem(BAD_REQUEST, "domains must be a non-empty list", 400)
"""

from __future__ import annotations

import logging
from typing import Any

from flask import Flask, jsonify
from werkzeug.exceptions import HTTPException

from certsteward.core.errors import (
    CertificateNotFound,
    ConflictError,
    InvalidDomain,
    JobCancelled,
    LifecycleError,
    RateLimited,
)
from certsteward.core.types import ErrorKind

log = logging.getLogger(__name__)

_P = "urn:certsteward:error:"

BAD_REQUEST = _P + "badRequest"
UNAUTHORIZED = _P + "unauthorized"
SERVER_INTERNAL = _P + "serverInternal"
NOT_FOUND = _P + "not_found"

PROBLEM_CONTENT_TYPE = "application/problem+json"

_UPSTREAM_KINDS = frozenset(
    {
        ErrorKind.CHALLENGE_FAILED,
        ErrorKind.RATE_LIMITED,
        ErrorKind.AUTHORITY_UNREACHABLE,
        ErrorKind.HOOK_TIMEOUT,
        ErrorKind.HOOK_NON_ZERO_EXIT,
    }
)


class Problem(Exception):
    """An RFC 7807 *problem details* object that doubles as an exception.

    Parameters
    ----------
    error_type:
        A URN string or ``"about:blank"`` for generic HTTP errors.
    detail:
        Human-readable explanation of the problem.
    status:
        HTTP status code (default 400).
    title:
        Short summary.
    headers:
        Extra HTTP headers to include on the response
        (e.g. ``Retry-After``).

    """

    def __init__(
        self,
        error_type: str,
        detail: str,
        status: int = 400,
        *,
        title: str | None = None,
        headers: dict[str, str] | None = None,
    ) -> None:
        self.error_type = error_type
        self.detail = detail
        self.status = status
        self.title = title
        self.extra_headers = headers or {}
        super().__init__(detail)

    def to_dict(self) -> dict[str, Any]:
        body: dict[str, Any] = {
            "type": self.error_type,
            "detail": self.detail,
            "status": self.status,
        }
        if self.title is not None:
            body["title"] = self.title
        return body

    def to_response(self):
        resp = jsonify(self.to_dict())
        resp.status_code = self.status
        resp.headers["Content-Type"] = PROBLEM_CONTENT_TYPE
        resp.headers["Cache-Control"] = "no-store"
        for key, value in self.extra_headers.items():
            resp.headers[key] = value
        return resp

    @classmethod
    def from_lifecycle_error(cls, exc: LifecycleError) -> Problem:
        """Translate a lifecycle error into its HTTP problem.

        ``not_found`` -> 404, ``conflict`` -> 409, ``invalid_domain`` ->
        400, authority and hook failures -> 502, everything else -> 500.
        """
        kind = exc.kind
        headers: dict[str, str] = {}
        if isinstance(exc, CertificateNotFound):
            status = 404
        elif isinstance(exc, (ConflictError, JobCancelled)):
            status = 409
        elif isinstance(exc, InvalidDomain):
            status = 400
        elif kind in _UPSTREAM_KINDS:
            status = 502
            if isinstance(exc, RateLimited) and exc.retry_after is not None:
                headers["Retry-After"] = str(int(exc.retry_after.total_seconds()))
        else:
            status = 500
        return cls(_P + kind.value, exc.detail, status, title=kind.value, headers=headers)


def register_error_handlers(app: Flask) -> None:
    """Attach handlers that produce RFC 7807 responses for all errors."""

    @app.errorhandler(Problem)
    def _handle_problem(exc: Problem):
        return exc.to_response()

    @app.errorhandler(LifecycleError)
    def _handle_lifecycle_error(exc: LifecycleError):
        return Problem.from_lifecycle_error(exc).to_response()

    @app.errorhandler(HTTPException)
    def _handle_http_exception(exc: HTTPException):
        problem = Problem(
            "about:blank",
            exc.description or "An error occurred",
            exc.code or 500,
            title=exc.name,
        )
        return problem.to_response()

    @app.errorhandler(Exception)
    def _handle_unhandled(exc: Exception):  # noqa: ARG001
        log.exception("Unhandled exception during request")
        problem = Problem(
            SERVER_INTERNAL,
            "An unexpected internal error occurred",
            500,
        )
        return problem.to_response()

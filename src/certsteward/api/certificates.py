"""Operator API routes for managed certificates.

Every mutating route takes the certificate's entry in the shared lock
table, so an operator action never overlaps a scheduled job for the
same id (it answers 409 instead).
"""

from __future__ import annotations

import logging
from contextlib import nullcontext
from typing import TYPE_CHECKING, Any

from flask import Blueprint, jsonify, request

from certsteward import __version__
from certsteward.api.decorators import assign_request_id, json_body, require_token
from certsteward.app.context import get_container
from certsteward.app.errors import BAD_REQUEST, NOT_FOUND, Problem
from certsteward.core.types import CertificateState, ChallengeType, RevocationReason
from certsteward.hooks.events import KNOWN_EVENTS
from certsteward.store.serialization import status_view

if TYPE_CHECKING:
    from flask.typing import ResponseReturnValue

    from certsteward.app.context import Container

log = logging.getLogger(__name__)

certificates_bp = Blueprint("certificates", __name__)
certificates_bp.before_request(assign_request_id)
certificates_bp.before_request(require_token)


def _tracked(container: Container, name: str):
    coordinator = container.shutdown_coordinator
    return coordinator.track(name) if coordinator is not None else nullcontext()


def _optional_int(data: dict[str, Any], key: str) -> int | None:
    value = data.get(key)
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise Problem(BAD_REQUEST, f"'{key}' must be a non-negative integer", 400)
    return value


def _flag(data: dict[str, Any], key: str) -> bool:
    value = data.get(key, False)
    if not isinstance(value, bool):
        raise Problem(BAD_REQUEST, f"'{key}' must be a boolean", 400)
    return value


@certificates_bp.route("/healthz", methods=["GET"])
def healthz() -> ResponseReturnValue:
    c = get_container()
    records = c.store.list_all()
    failed = sum(1 for r in records if r.state == CertificateState.FAILED)
    body = {
        "status": "ok",
        "version": __version__,
        "certificates": len(records),
        "failed": failed,
        "scheduler_running": c.scheduler.is_running(),
        "running_jobs": c.scheduler.running_jobs,
    }
    return jsonify(body), 200


@certificates_bp.route("/certificates", methods=["POST"])
def register() -> ResponseReturnValue:
    """Register a domain set; ``{"issue": true}`` also issues right away."""
    c = get_container()
    data = json_body()

    domains = data.get("domains")
    if not isinstance(domains, list) or not all(isinstance(d, str) for d in domains):
        raise Problem(BAD_REQUEST, "'domains' must be a list of strings", 400)
    challenge = data.get("challenge_type")
    if challenge is not None and challenge not in {t.value for t in ChallengeType}:
        raise Problem(BAD_REQUEST, f"Unsupported challenge_type '{challenge}'", 400)
    hooks = data.get("hooks", [])
    if not isinstance(hooks, list) or not all(isinstance(h, str) for h in hooks):
        raise Problem(BAD_REQUEST, "'hooks' must be a list of hook names", 400)
    cert_id = data.get("id")
    if cert_id is not None and not isinstance(cert_id, str):
        raise Problem(BAD_REQUEST, "'id' must be a string", 400)

    orchestrator = c.orchestrator
    policy = orchestrator.default_policy.with_overrides(
        renew_before_days=_optional_int(data, "renew_before_days"),
        max_retries=_optional_int(data, "max_retries"),
    )
    try:
        record = orchestrator.register(
            domains,
            policy,
            challenge_type=ChallengeType(challenge) if challenge else None,
            certificate_id=cert_id,
            hook_names=hooks,
        )
    except ValueError as exc:
        raise Problem(BAD_REQUEST, str(exc), 400) from exc

    if _flag(data, "issue"):
        with c.locks.hold(record.id), _tracked(c, f"issue:{record.id}"):
            record = orchestrator.issue(record.id)
    return jsonify(status_view(record)), 201


@certificates_bp.route("/certificates", methods=["GET"])
def list_certificates() -> ResponseReturnValue:
    state = request.args.get("state")
    if state is not None and state not in {s.value for s in CertificateState}:
        raise Problem(BAD_REQUEST, f"Unknown state '{state}'", 400)
    records = get_container().orchestrator.list_certificates(
        CertificateState(state) if state else None,
    )
    return jsonify([status_view(r) for r in records]), 200


@certificates_bp.route("/certificates/failed", methods=["GET"])
def list_failed() -> ResponseReturnValue:
    records = get_container().orchestrator.list_failed()
    return jsonify([status_view(r) for r in records]), 200


@certificates_bp.route("/certificates/<cert_id>", methods=["GET"])
def status(cert_id: str) -> ResponseReturnValue:
    record = get_container().orchestrator.status(cert_id)
    return jsonify(status_view(record)), 200


@certificates_bp.route("/certificates/<cert_id>/renew", methods=["POST"])
def force_renew(cert_id: str) -> ResponseReturnValue:
    c = get_container()
    with c.locks.hold(cert_id), _tracked(c, f"renew:{cert_id}"):
        record = c.orchestrator.force_renew(cert_id)
    return jsonify(status_view(record)), 200


@certificates_bp.route("/certificates/<cert_id>/reset", methods=["POST"])
def reset(cert_id: str) -> ResponseReturnValue:
    c = get_container()
    issue = _flag(json_body(), "issue")
    with c.locks.hold(cert_id), _tracked(c, f"reset:{cert_id}"):
        record = c.orchestrator.reset(cert_id)
        if issue:
            record = c.orchestrator.issue(cert_id)
    return jsonify(status_view(record)), 200


@certificates_bp.route("/certificates/<cert_id>/revoke", methods=["POST"])
def revoke(cert_id: str) -> ResponseReturnValue:
    c = get_container()
    data = json_body()
    reason_code = _optional_int(data, "reason")
    try:
        reason = RevocationReason(reason_code) if reason_code is not None else None
    except ValueError as exc:
        raise Problem(BAD_REQUEST, f"Unsupported revocation reason {reason_code}", 400) from exc
    with c.locks.hold(cert_id), _tracked(c, f"revoke:{cert_id}"):
        record = c.orchestrator.revoke(cert_id, reason, local_only=_flag(data, "local_only"))
    return jsonify(status_view(record)), 200


@certificates_bp.route("/certificates/<cert_id>", methods=["DELETE"])
def remove(cert_id: str) -> ResponseReturnValue:
    c = get_container()
    with c.locks.hold(cert_id):
        c.orchestrator.remove(cert_id)
    return "", 204


@certificates_bp.route("/certificates/<cert_id>/hooks", methods=["GET"])
def hook_results(cert_id: str) -> ResponseReturnValue:
    c = get_container()
    c.orchestrator.status(cert_id)
    results = c.hooks.results_for(cert_id)
    return jsonify([_result_view(r) for r in results]), 200


@certificates_bp.route("/certificates/<cert_id>/hooks/<hook_name>", methods=["POST"])
def run_hook(cert_id: str, hook_name: str) -> ResponseReturnValue:
    """Run one hook now; 502 if it still fails after its retries."""
    c = get_container()
    event = json_body().get("event", "certificate.issued")
    if event not in KNOWN_EVENTS:
        raise Problem(BAD_REQUEST, f"Unknown event '{event}'", 400)
    try:
        result = c.orchestrator.run_hook(cert_id, hook_name, event=event)
    except KeyError as exc:
        raise Problem(NOT_FOUND, str(exc.args[0]), 404) from exc
    return jsonify(_result_view(result)), 200


def _result_view(result) -> dict[str, Any]:
    return {
        "hook_name": result.hook_name,
        "event": result.event,
        "certificate_id": result.certificate_id,
        "outcome": result.outcome,
        "attempts": result.attempts,
        "duration_ms": result.duration_ms,
        "error_kind": result.error_kind,
        "error": result.error,
        "finished_at": result.finished_at.isoformat() if result.finished_at else None,
    }

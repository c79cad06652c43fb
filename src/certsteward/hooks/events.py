"""Canonical hook event definitions.

Single source of truth for all lifecycle event names and their
corresponding :class:`~certsteward.hooks.base.Hook` method names.

This module has **zero** internal dependencies; it can be imported
from anywhere without circular import risk.
"""

from __future__ import annotations

CERTIFICATE_ISSUED = "certificate.issued"
CERTIFICATE_RENEWED = "certificate.renewed"
CERTIFICATE_FAILED = "certificate.failed"
CERTIFICATE_REVOKED = "certificate.revoked"

EVENT_METHOD_MAP: dict[str, str] = {
    CERTIFICATE_ISSUED: "on_certificate_issued",
    CERTIFICATE_RENEWED: "on_certificate_renewed",
    CERTIFICATE_FAILED: "on_certificate_failed",
    CERTIFICATE_REVOKED: "on_certificate_revoked",
}

KNOWN_EVENTS: frozenset[str] = frozenset(EVENT_METHOD_MAP.keys())

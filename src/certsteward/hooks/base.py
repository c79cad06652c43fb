"""Abstract base class for CertSteward lifecycle hooks.

All custom hooks must inherit from :class:`Hook` and override the
event methods they are interested in.  Unimplemented methods are
no-ops by default.  A hook signals failure by raising; the runner
retries it and never lets the failure touch the certificate record.

Usage::

    from certsteward.hooks import Hook

    class ReloadHaproxy(Hook):
        def on_certificate_renewed(self, ctx: dict) -> None:
            haproxy_admin_socket("reload")
"""

from __future__ import annotations

import abc


class Hook(abc.ABC):
    """Base class for all CertSteward lifecycle hooks.

    Parameters
    ----------
    config:
        Optional passthrough configuration from the hook entry's
        ``config`` dict in the config file.
    timeout_seconds:
        Time budget for a single invocation.  Hooks that spawn
        processes should enforce it; for in-process hooks the runner
        logs a warning when it is exceeded.

    """

    def __init__(self, config: dict | None = None, *, timeout_seconds: int = 30) -> None:
        self.config = config or {}
        self.timeout_seconds = timeout_seconds

    @classmethod
    def validate_config(cls, config: dict) -> None:
        """Validate hook-specific configuration at load time.

        Override in subclasses to reject invalid config before the
        hook is instantiated.  Raise :class:`ValueError` if *config*
        is not acceptable.

        The default implementation is a no-op.
        """

    def on_certificate_issued(self, ctx: dict) -> None:
        """Called after a first issuance reaches ``active``.

        Context keys: ``certificate_id``, ``domains``, ``serial_number``,
        ``fingerprint``, ``not_after``, ``chain_path``, ``key_path``.
        """

    def on_certificate_renewed(self, ctx: dict) -> None:
        """Called after a renewal reaches ``active`` with new material.

        Same context keys as :meth:`on_certificate_issued` plus
        ``previous_serial_number``.
        """

    def on_certificate_failed(self, ctx: dict) -> None:
        """Called when a certificate enters ``failed``.

        Context keys: ``certificate_id``, ``domains``, ``error_kind``,
        ``detail``, ``failure_count``.
        """

    def on_certificate_revoked(self, ctx: dict) -> None:
        """Called after a certificate is revoked.

        Context keys: ``certificate_id``, ``domains``,
        ``serial_number``, ``reason``.
        """

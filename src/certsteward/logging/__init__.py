"""Logging subsystem for CertSteward.

Public API::

    from certsteward.logging import configure_logging

    configure_logging(settings.logging)
"""

from certsteward.logging.setup import configure_logging, job_context

__all__ = ["configure_logging", "job_context"]

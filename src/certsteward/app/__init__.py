"""Flask application package for CertSteward.

Public API::

    from certsteward.app import create_app
"""

from certsteward.app.factory import create_app

__all__ = ["create_app"]

"""WSGI entry point for external servers (gunicorn, uWSGI, etc.).

The config file path is read from the ``CERTSTEWARD_CONFIG``
environment variable.

Example::

    export CERTSTEWARD_CONFIG=/etc/certsteward/config.yaml
    gunicorn "certsteward.server.wsgi:app"
"""

from __future__ import annotations

import os
import sys

_config_path = os.environ.get("CERTSTEWARD_CONFIG")
if _config_path is None:
    sys.stderr.write("CERTSTEWARD_CONFIG is not set\n")
    sys.exit(1)

# Bootstrap the singleton before anything else imports it.
from certsteward.config import CertstewardConfig  # noqa: E402

_config = CertstewardConfig(config_file=_config_path, schema_file="bundled")

from certsteward.logging import configure_logging  # noqa: E402

configure_logging(_config.settings.logging)

from certsteward.app import create_app  # noqa: E402

app = create_app(config=_config)

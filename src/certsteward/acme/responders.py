"""Challenge responder capability.

A responder makes challenge material visible to the authority: an
HTTP-01 token file or a DNS-01 TXT record.  CertSteward never manages
web servers or DNS zones itself; it only calls the responder.

Built-in responders:

- ``webroot``  -- write HTTP-01 tokens under ``<webroot>/.well-known/acme-challenge/``
- ``script``   -- run operator scripts for HTTP-01 and/or DNS-01

Custom responders can be loaded via the ``ext:`` prefix
(e.g. ``ext:mypackage.responders.Route53Responder``).
"""

from __future__ import annotations

import abc
import importlib
import logging
import os
import subprocess
from pathlib import Path
from typing import Any

log = logging.getLogger(__name__)

_CHALLENGE_PATH = Path(".well-known") / "acme-challenge"


class ResponderError(Exception):
    """Raised when a responder is misconfigured or cannot act."""


class ChallengeResponder(abc.ABC):
    """Place and remove challenge material for the authority to verify.

    Subclasses override the pair of methods for each challenge type they
    support; the defaults raise :class:`ResponderError`.

    Parameters
    ----------
    config:
        Responder-specific options from ``challenges.config``.

    """

    def __init__(self, config: dict[str, Any] | None = None) -> None:
        self.config = config or {}

    @classmethod
    def validate_config(cls, config: dict[str, Any]) -> None:
        """Validate responder configuration at load time (fail-loud)."""

    def place_http_token(self, domain: str, token: str, value: str) -> None:
        msg = f"{type(self).__name__} does not support http-01"
        raise ResponderError(msg)

    def remove_http_token(self, domain: str, token: str) -> None:
        msg = f"{type(self).__name__} does not support http-01"
        raise ResponderError(msg)

    def create_dns_record(self, domain: str, name: str, value: str) -> None:
        msg = f"{type(self).__name__} does not support dns-01"
        raise ResponderError(msg)

    def remove_dns_record(self, domain: str, name: str) -> None:
        msg = f"{type(self).__name__} does not support dns-01"
        raise ResponderError(msg)


class WebrootResponder(ChallengeResponder):
    """Serve HTTP-01 tokens from a directory the web server exposes.

    Required config keys:

    - ``webroot``: directory containing ``.well-known/acme-challenge/``

    """

    @classmethod
    def validate_config(cls, config: dict[str, Any]) -> None:
        if not config.get("webroot"):
            msg = "webroot responder requires 'webroot' in config"
            raise ResponderError(msg)

    def _token_path(self, token: str) -> Path:
        if "/" in token or token.startswith("."):
            msg = f"Refusing unsafe challenge token {token!r}"
            raise ResponderError(msg)
        return Path(self.config["webroot"]) / _CHALLENGE_PATH / token

    def place_http_token(self, domain: str, token: str, value: str) -> None:
        path = self._token_path(token)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(value, encoding="ascii")
        os.chmod(path, 0o644)
        log.info("HTTP token placed for %s at %s", domain, path)

    def remove_http_token(self, domain: str, token: str) -> None:
        self._token_path(token).unlink(missing_ok=True)
        log.debug("HTTP token removed for %s", domain)


class ScriptResponder(ChallengeResponder):
    """Delegate challenge placement to operator-provided executables.

    Config keys (each optional, but a challenge type needs both of its
    scripts):

    - ``http_deploy_script``: called as ``script <domain> <token> <value>``
    - ``http_cleanup_script``: called as ``script <domain> <token>``
    - ``dns_create_script``: called as ``script <domain> <record_name> <value>``
    - ``dns_delete_script``: called as ``script <domain> <record_name>``
    - ``script_timeout``: seconds per invocation (default: 60)

    """

    @classmethod
    def validate_config(cls, config: dict[str, Any]) -> None:
        pairs = (
            ("http_deploy_script", "http_cleanup_script"),
            ("dns_create_script", "dns_delete_script"),
        )
        configured = [p for p in pairs if config.get(p[0]) or config.get(p[1])]
        if not configured:
            msg = "script responder requires http_* or dns_* scripts in config"
            raise ResponderError(msg)
        for first, second in configured:
            if not (config.get(first) and config.get(second)):
                msg = f"script responder requires both '{first}' and '{second}'"
                raise ResponderError(msg)

    def _run(self, key: str, *args: str) -> None:
        script = self.config.get(key)
        if not script:
            msg = f"script responder has no '{key}' configured"
            raise ResponderError(msg)
        log.info("Running %s: %s %s", key, script, args[0])
        subprocess.run(  # noqa: S603
            [script, *args],
            check=True,
            timeout=self.config.get("script_timeout", 60),
            capture_output=True,
            text=True,
        )

    def place_http_token(self, domain: str, token: str, value: str) -> None:
        self._run("http_deploy_script", domain, token, value)

    def remove_http_token(self, domain: str, token: str) -> None:
        self._run("http_cleanup_script", domain, token)

    def create_dns_record(self, domain: str, name: str, value: str) -> None:
        self._run("dns_create_script", domain, name, value)

    def remove_dns_record(self, domain: str, name: str) -> None:
        self._run("dns_delete_script", domain, name)


_BUILTIN_RESPONDERS: dict[str, type[ChallengeResponder]] = {
    "webroot": WebrootResponder,
    "script": ScriptResponder,
}


def load_responder(name: str, config: dict[str, Any]) -> ChallengeResponder:
    """Load and configure a challenge responder.

    Parameters
    ----------
    name:
        Built-in name (``webroot``, ``script``) or
        ``ext:fully.qualified.ResponderClass``.
    config:
        The ``challenges.config`` dict from settings.

    Raises
    ------
    ResponderError
        If the responder cannot be loaded or its config is invalid.

    """
    if name in _BUILTIN_RESPONDERS:
        cls = _BUILTIN_RESPONDERS[name]
    elif name.startswith("ext:"):
        cls = _load_external(name[4:])
    else:
        msg = (
            f"Unknown challenge responder '{name}'; "
            f"built-in options: {sorted(_BUILTIN_RESPONDERS)}. "
            "Use 'ext:mypackage.module.ResponderClass' for custom responders."
        )
        raise ResponderError(msg)
    cls.validate_config(config)
    return cls(config)


def _load_external(fqn: str) -> type[ChallengeResponder]:
    module_path, _, cls_name = fqn.rpartition(".")
    if not module_path:
        msg = (
            f"Invalid external responder '{fqn}': must be fully qualified "
            "(e.g. 'mypackage.module.ResponderClass')"
        )
        raise ResponderError(msg)
    try:
        module = importlib.import_module(module_path)
        cls = getattr(module, cls_name)
    except (ImportError, AttributeError) as exc:
        msg = f"Failed to load external responder '{fqn}': {exc}"
        raise ResponderError(msg) from exc

    if not (isinstance(cls, type) and issubclass(cls, ChallengeResponder)):
        msg = f"External responder '{fqn}' must be a subclass of ChallengeResponder"
        raise ResponderError(msg)
    return cls

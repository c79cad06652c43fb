"""Hook that runs an external command.

This is the usual way to reload a reverse proxy after renewal::

    hooks:
      registered:
        - name: reload-nginx
          command: ["systemctl", "reload", "nginx"]
          events: [certificate.issued, certificate.renewed]

Arguments may contain ``{certificate_id}``, ``{domains}``, ``{event}``,
``{chain_path}``, ``{key_path}`` and ``{not_after}`` placeholders; any
other braces are passed through untouched.  The same values are
exported as ``CERTSTEWARD_*`` environment variables.
"""

from __future__ import annotations

import logging
import os
import re
import shlex
import subprocess

from certsteward.core.errors import HookNonZeroExit, HookTimeout
from certsteward.hooks.base import Hook

log = logging.getLogger(__name__)

_PLACEHOLDERS = ("certificate_id", "domains", "event", "chain_path", "key_path", "not_after")
_PLACEHOLDER_RE = re.compile(r"\{(" + "|".join(_PLACEHOLDERS) + r")\}")


class CommandHook(Hook):
    """Run ``config["command"]`` for every subscribed event."""

    @classmethod
    def validate_config(cls, config: dict) -> None:
        command = config.get("command")
        if not command:
            msg = "CommandHook requires a non-empty 'command'"
            raise ValueError(msg)
        if not isinstance(command, (str, list)):
            msg = "CommandHook 'command' must be a string or a list of arguments"
            raise ValueError(msg)

    def _argv(self, ctx: dict) -> list[str]:
        command = self.config["command"]
        argv = shlex.split(command) if isinstance(command, str) else list(command)
        values = {key: _flatten(ctx.get(key, "")) for key in _PLACEHOLDERS}
        return [_PLACEHOLDER_RE.sub(lambda m: values[m.group(1)], arg) for arg in argv]

    def _run(self, ctx: dict) -> None:
        argv = self._argv(ctx)
        env = dict(os.environ)
        for key in _PLACEHOLDERS:
            env[f"CERTSTEWARD_{key.upper()}"] = _flatten(ctx.get(key, ""))
        try:
            completed = subprocess.run(  # noqa: S603
                argv,
                timeout=self.timeout_seconds,
                capture_output=True,
                text=True,
                env=env,
                check=False,
            )
        except subprocess.TimeoutExpired as exc:
            msg = f"Command {argv[0]!r} timed out after {self.timeout_seconds}s"
            raise HookTimeout(msg) from exc
        except OSError as exc:
            msg = f"Command {argv[0]!r} could not be started: {exc}"
            raise HookNonZeroExit(msg) from exc
        if completed.returncode != 0:
            stderr = (completed.stderr or "").strip()[:500]
            msg = f"Command {argv[0]!r} exited with status {completed.returncode}: {stderr}"
            raise HookNonZeroExit(msg, returncode=completed.returncode)
        log.debug("Command %r succeeded for %s", argv[0], ctx.get("certificate_id"))

    def on_certificate_issued(self, ctx: dict) -> None:
        self._run(ctx)

    def on_certificate_renewed(self, ctx: dict) -> None:
        self._run(ctx)

    def on_certificate_failed(self, ctx: dict) -> None:
        self._run(ctx)

    def on_certificate_revoked(self, ctx: dict) -> None:
        self._run(ctx)


def _flatten(value) -> str:
    if isinstance(value, (list, tuple)):
        return ",".join(str(v) for v in value)
    return "" if value is None else str(value)

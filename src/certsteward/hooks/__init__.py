"""Post-issuance hooks.

Public API::

    from certsteward.hooks import Hook, HookRunner
"""

from certsteward.hooks.base import Hook
from certsteward.hooks.command import CommandHook
from certsteward.hooks.runner import HookResult, HookRunner

__all__ = [
    "CommandHook",
    "Hook",
    "HookResult",
    "HookRunner",
]

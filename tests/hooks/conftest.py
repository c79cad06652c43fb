"""Hook-specific fixtures for testing."""

from __future__ import annotations

import pytest

from lifecycle_doubles import make_hook_settings


@pytest.fixture()
def make_runner():
    """Build :class:`HookRunner` instances and shut them all down afterwards.

    Usage in tests::

        def test_x(make_runner):
            runner = make_runner(make_hook_entry(), max_retries=1)
    """
    from certsteward.hooks.runner import HookRunner

    runners = []

    def _factory(*entries, **kwargs) -> HookRunner:
        runner = HookRunner(make_hook_settings(*entries, **kwargs))
        runners.append(runner)
        return runner

    yield _factory
    for runner in runners:
        runner.shutdown(wait=True)

"""Tests for certsteward.hooks.runner: HookRunner."""

from __future__ import annotations

import json
import logging

import pytest

from lifecycle_doubles import RecordingHook, make_hook_entry

from certsteward.core.errors import HookNonZeroExit, HookTimeout
from certsteward.hooks import events

CTX = {"certificate_id": "example.com", "domains": ["example.com"]}


def _instance(runner, name="recorder"):
    return runner._hooks[name].instance


# =========================================================================
# Loading
# =========================================================================


class TestLoading:
    def test_no_hooks_no_executor(self, make_runner):
        runner = make_runner()
        assert runner.hook_names == []
        assert runner._executor is None
        assert runner.dispatch(events.CERTIFICATE_ISSUED, CTX, certificate_id="example.com") == []

    def test_disabled_hook_skipped(self, make_runner):
        runner = make_runner(make_hook_entry(enabled=False))
        assert runner.hook_names == []

    def test_valid_hook_loaded(self, make_runner):
        runner = make_runner(make_hook_entry())
        assert runner.hook_names == ["recorder"]
        assert isinstance(_instance(runner), RecordingHook)

    def test_duplicate_name_rejected(self, make_runner):
        with pytest.raises(ValueError, match="Duplicate"):
            make_runner(make_hook_entry(), make_hook_entry())

    def test_invalid_class_path(self, make_runner):
        with pytest.raises(ValueError, match="Invalid hook class path"):
            make_runner(make_hook_entry(class_path="no-dots-here"))

    def test_not_a_hook_subclass(self, make_runner):
        with pytest.raises(TypeError, match="subclass"):
            make_runner(make_hook_entry(class_path="lifecycle_doubles.NotAHook"))

    def test_import_failure_propagates(self, make_runner):
        with pytest.raises(ImportError):
            make_runner(make_hook_entry(class_path="no_such_module_xyz.Hook"))

    def test_unknown_event_rejected(self, make_runner):
        with pytest.raises(ValueError, match="unknown events"):
            make_runner(make_hook_entry(events=("certificate.exploded",)))

    def test_entry_timeout_overrides_default(self, make_runner):
        runner = make_runner(make_hook_entry(timeout_seconds=5))
        assert _instance(runner).timeout_seconds == 5


# =========================================================================
# Dispatch
# =========================================================================


class TestDispatch:
    def test_context_isolated(self, make_runner):
        runner = make_runner(make_hook_entry())
        ctx = {"certificate_id": "example.com", "domains": ["example.com"]}
        futures = runner.dispatch(events.CERTIFICATE_RENEWED, ctx, certificate_id="example.com")
        for future in futures:
            assert future.result(timeout=5).outcome == "success"

        method, received = _instance(runner).calls[0]
        assert method == "on_certificate_renewed"
        assert received["event"] == events.CERTIFICATE_RENEWED
        received["domains"].append("mutated")
        assert ctx["domains"] == ["example.com"]
        assert "event" not in ctx

    def test_subscription_filter(self, make_runner):
        runner = make_runner(make_hook_entry(events=(events.CERTIFICATE_FAILED,)))
        assert runner.dispatch(events.CERTIFICATE_ISSUED, CTX, certificate_id="example.com") == []
        assert len(runner.dispatch(events.CERTIFICATE_FAILED, CTX, certificate_id="example.com")) == 1

    def test_hook_names_restrict_dispatch(self, make_runner):
        runner = make_runner(make_hook_entry("a"), make_hook_entry("b"))
        futures = runner.dispatch(
            events.CERTIFICATE_ISSUED,
            CTX,
            certificate_id="example.com",
            hook_names=("b",),
        )
        [f.result(timeout=5) for f in futures]
        assert _instance(runner, "a").calls == []
        assert len(_instance(runner, "b").calls) == 1

    def test_unknown_event_raises(self, make_runner):
        runner = make_runner(make_hook_entry())
        with pytest.raises(ValueError, match="Unknown hook event"):
            runner.dispatch("certificate.exploded", CTX, certificate_id="example.com")

    def test_failure_recorded_and_dead_lettered(self, make_runner, tmp_path, caplog):
        dead_letter = tmp_path / "dead.jsonl"
        runner = make_runner(
            make_hook_entry("reload", "lifecycle_doubles.FailingHook"),
            dead_letter_log=str(dead_letter),
        )
        with caplog.at_level(logging.ERROR, logger="certsteward.hooks.runner"):
            runner.dispatch(events.CERTIFICATE_ISSUED, CTX, certificate_id="example.com")
            runner.shutdown(wait=True)

        [result] = runner.results_for("example.com")
        assert result.outcome == "error"
        assert result.error_kind == "hook_non_zero_exit"
        assert runner.error_count == 1
        entry = json.loads(dead_letter.read_text(encoding="utf-8").splitlines()[0])
        assert entry["hook_name"] == "reload"
        assert "gave up" in caplog.text

    def test_no_dispatch_after_shutdown(self, make_runner):
        runner = make_runner(make_hook_entry())
        runner.shutdown()
        assert runner.is_shutdown
        assert runner.dispatch(events.CERTIFICATE_ISSUED, CTX, certificate_id="example.com") == []


# =========================================================================
# Synchronous notify
# =========================================================================


class TestNotify:
    def test_success(self, make_runner):
        runner = make_runner(make_hook_entry())
        result = runner.notify("example.com", "recorder", CTX, event=events.CERTIFICATE_ISSUED)
        assert result.outcome == "success"
        assert result.attempts == 1
        assert runner.results_for("example.com") == [result]

    def test_unknown_hook(self, make_runner):
        runner = make_runner(make_hook_entry())
        with pytest.raises(KeyError, match="Unknown hook"):
            runner.notify("example.com", "missing", CTX)

    def test_retries_then_raises(self, make_runner):
        runner = make_runner(make_hook_entry("reload", "lifecycle_doubles.FailingHook"), max_retries=2)
        with pytest.raises(HookNonZeroExit):
            runner.notify("example.com", "reload", CTX)
        [result] = runner.results_for("example.com")
        assert result.attempts == 3

    def test_timeout_kind(self, make_runner):
        entry = make_hook_entry("slow", "lifecycle_doubles.FailingHook", config={"error": "timeout"})
        runner = make_runner(entry)
        with pytest.raises(HookTimeout):
            runner.notify("example.com", "slow", CTX)
        assert runner.results_for("example.com")[0].error_kind == "hook_timeout"

    def test_adhoc_entry(self, make_runner):
        runner = make_runner()
        result = runner.notify("example.com", make_hook_entry("once"), CTX)
        assert result.hook_name == "once"
        assert runner.hook_names == []

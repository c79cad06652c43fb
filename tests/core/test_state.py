"""Unit tests for certsteward.core.state: the certificate state machine."""

from __future__ import annotations

import logging

import pytest

from certsteward.core.state import (
    CERTIFICATE_TRANSITIONS,
    IN_FLIGHT_STATES,
    assert_transition,
    log_transition,
)
from certsteward.core.types import CertificateState

_S = CertificateState

# ---------------------------------------------------------------------------
# TestCertificateTransitions
# ---------------------------------------------------------------------------


class TestCertificateTransitions:
    @pytest.mark.parametrize(
        "current,target",
        [
            (_S.PENDING, _S.CHALLENGE_PENDING),
            (_S.CHALLENGE_PENDING, _S.ISSUING),
            (_S.ISSUING, _S.ACTIVE),
            (_S.ACTIVE, _S.RENEWAL_DUE),
            (_S.RENEWAL_DUE, _S.RENEWING),
            (_S.RENEWING, _S.ACTIVE),
            (_S.RENEWING, _S.FAILED),
            (_S.CHALLENGE_PENDING, _S.PENDING),
            (_S.FAILED, _S.PENDING),
            (_S.ACTIVE, _S.REVOKED),
            (_S.FAILED, _S.REVOKED),
        ],
    )
    def test_valid_transitions(self, current, target):
        assert_transition(current, target, CERTIFICATE_TRANSITIONS)  # no exception

    def test_revoked_is_terminal(self):
        for target in CertificateState:
            if target == _S.REVOKED:
                continue
            with pytest.raises(ValueError, match="Invalid transition"):
                assert_transition(_S.REVOKED, target)

    @pytest.mark.parametrize(
        "current,target",
        [
            (_S.PENDING, _S.ACTIVE),
            (_S.PENDING, _S.ISSUING),
            (_S.FAILED, _S.ACTIVE),
            (_S.ACTIVE, _S.PENDING),
            (_S.RENEWING, _S.PENDING),
        ],
    )
    def test_shortcuts_rejected(self, current, target):
        with pytest.raises(ValueError, match="Invalid transition"):
            assert_transition(current, target)

    def test_unknown_state(self):
        with pytest.raises(ValueError, match="Unknown state"):
            assert_transition("bogus", _S.ACTIVE)

    def test_every_state_has_an_entry(self):
        assert set(CERTIFICATE_TRANSITIONS) == set(CertificateState)

    def test_in_flight_states_can_return_to_rest(self):
        for state in IN_FLIGHT_STATES:
            allowed = CERTIFICATE_TRANSITIONS[state]
            assert _S.PENDING in allowed or _S.ACTIVE in allowed


# ---------------------------------------------------------------------------
# TestLogTransition
# ---------------------------------------------------------------------------


class TestLogTransition:
    def test_emits_structured_record(self, caplog):
        with caplog.at_level(logging.INFO, logger="certsteward.core.state"):
            log_transition("example.com", _S.PENDING, _S.CHALLENGE_PENDING, reason="order submitted")
        records = [r for r in caplog.records if r.name == "certsteward.core.state"]
        assert len(records) == 1
        rec = records[0]
        assert rec.certificate_id == "example.com"
        assert rec.from_state == "pending"
        assert rec.to_state == "challenge_pending"
        assert rec.reason == "order submitted"
        assert "pending -> challenge_pending" in rec.getMessage()

    def test_feeds_audit_logger(self, caplog):
        with caplog.at_level(logging.INFO, logger="certsteward.audit"):
            log_transition("example.com", _S.ACTIVE, _S.RENEWAL_DUE)
        audit = [r for r in caplog.records if r.name == "certsteward.audit"]
        assert audit
        assert audit[0].event == "state_transition"
        assert not hasattr(audit[0], "reason")

    def test_accepts_plain_strings(self, caplog):
        with caplog.at_level(logging.INFO, logger="certsteward.core.state"):
            log_transition("x.example.com", "active", "failed")
        assert "active -> failed" in caplog.text

"""Tests for domain-set normalisation and certificate id validation."""

from __future__ import annotations

import pytest

from certsteward.core.domains import (
    normalize_domain,
    normalize_domains,
    validate_certificate_id,
    validate_domain,
)
from certsteward.core.errors import InvalidDomain
from certsteward.core.types import ChallengeType, ErrorKind


class TestNormalizeDomain:
    def test_lowercases_and_strips_trailing_dot(self):
        assert normalize_domain(" WWW.Example.COM. ") == "www.example.com"

    def test_idna_label_encoded(self):
        assert normalize_domain("bücher.example") == "xn--bcher-kva.example"

    def test_label_too_long(self):
        with pytest.raises(InvalidDomain, match="63-byte limit"):
            normalize_domain("a" * 64 + ".example.com")


class TestValidateDomain:
    def test_ip_literal_rejected(self):
        with pytest.raises(InvalidDomain, match="IP address"):
            validate_domain("192.0.2.1", ChallengeType.HTTP_01)

    def test_single_label_rejected(self):
        with pytest.raises(InvalidDomain, match="two labels"):
            validate_domain("localhost", ChallengeType.HTTP_01)

    def test_wildcard_needs_dns01(self):
        with pytest.raises(InvalidDomain, match="dns-01"):
            validate_domain("*.example.com", ChallengeType.HTTP_01)
        validate_domain("*.example.com", ChallengeType.DNS_01)

    def test_nested_wildcard_rejected(self):
        with pytest.raises(InvalidDomain, match="single-level"):
            validate_domain("*.*.example.com", ChallengeType.DNS_01)

    def test_bad_label(self):
        with pytest.raises(InvalidDomain, match="invalid label"):
            validate_domain("-bad.example.com", ChallengeType.HTTP_01)

    def test_error_kind(self):
        with pytest.raises(InvalidDomain) as info:
            validate_domain("", ChallengeType.HTTP_01)
        assert info.value.kind == ErrorKind.INVALID_DOMAIN
        assert info.value.retryable is False


class TestNormalizeDomains:
    def test_order_preserved(self):
        result = normalize_domains(["Example.com", "www.example.com", "api.example.com"])
        assert result == ("example.com", "www.example.com", "api.example.com")

    def test_single_string_accepted(self):
        assert normalize_domains("example.com") == ("example.com",)

    def test_duplicates_after_normalisation_rejected(self):
        with pytest.raises(InvalidDomain, match="Duplicate"):
            normalize_domains(["example.com", "EXAMPLE.com."])

    def test_empty_rejected(self):
        with pytest.raises(InvalidDomain, match="at least one"):
            normalize_domains([])


class TestCertificateId:
    @pytest.mark.parametrize("cid", ["example.com", "web-01", "*.example.com", "a_b.c"])
    def test_valid(self, cid):
        validate_certificate_id(cid)

    @pytest.mark.parametrize("cid", ["", "../etc/passwd", "a/b", "..", "x..y", ".hidden"])
    def test_invalid(self, cid):
        with pytest.raises(InvalidDomain, match="Invalid certificate id"):
            validate_certificate_id(cid)

"""Domain-set normalisation and validation.

Domains are checked locally before any authority round trip so that
obviously malformed names surface as :class:`InvalidDomain` without
spending rate-limit budget.
"""

from __future__ import annotations

import encodings.idna  # noqa: F401 -- ensure IDNA codec is available
import ipaddress
import re

from certsteward.core.errors import InvalidDomain
from certsteward.core.types import ChallengeType

_MAX_LABEL_LENGTH = 63
_MAX_NAME_LENGTH = 253
_WILDCARD_PREFIX = "*."
_LABEL_RE = re.compile(r"^(?!-)[a-z0-9-]{1,63}(?<!-)$")


def normalize_domain(value: str) -> str:
    """Normalise a domain to lower-cased A-label (punycode) form.

    Raises
    ------
    InvalidDomain
        If a label cannot be IDNA-encoded or exceeds 63 octets.

    """
    value = value.strip().rstrip(".")
    parts: list[str] = []
    for label in value.split("."):
        if label == "*":
            parts.append(label)
            continue
        try:
            label.encode("ascii")
            encoded = label
        except UnicodeEncodeError:
            try:
                encoded = label.encode("idna").decode("ascii")
            except UnicodeError as err:
                msg = f"Invalid internationalized domain label '{label}' in '{value}'"
                raise InvalidDomain(msg) from err
        if len(encoded) > _MAX_LABEL_LENGTH:
            msg = (
                f"Domain label '{label}' exceeds {_MAX_LABEL_LENGTH}-byte limit "
                f"({len(encoded)} bytes)"
            )
            raise InvalidDomain(msg)
        parts.append(encoded.lower())
    return ".".join(parts)


def validate_domain(value: str, challenge_type: ChallengeType) -> None:
    """Validate a single normalised domain name.

    Raises
    ------
    InvalidDomain
        For IP literals, bad labels, multi-level wildcards, or wildcards
        requested with a challenge type other than ``dns-01``.

    """
    if not value:
        msg = "Empty domain name"
        raise InvalidDomain(msg)
    try:
        ipaddress.ip_address(value)
    except ValueError:
        pass
    else:
        msg = f"IP address '{value}' is not a supported identifier"
        raise InvalidDomain(msg)

    if len(value) > _MAX_NAME_LENGTH:
        msg = f"Domain '{value[:32]}...' exceeds {_MAX_NAME_LENGTH} characters"
        raise InvalidDomain(msg)

    is_wildcard = value.startswith(_WILDCARD_PREFIX)
    base = value.removeprefix(_WILDCARD_PREFIX) if is_wildcard else value
    if "*" in base:
        msg = (
            f"Wildcard '{value}' is not permitted; only single-level "
            f"wildcards (*.example.com) are allowed"
        )
        raise InvalidDomain(msg)
    if is_wildcard and challenge_type != ChallengeType.DNS_01:
        msg = f"Wildcard domain '{value}' requires the dns-01 challenge"
        raise InvalidDomain(msg)

    labels = base.split(".")
    if len(labels) < 2:  # noqa: PLR2004
        msg = f"Domain '{value}' must contain at least two labels"
        raise InvalidDomain(msg)
    for label in labels:
        if not _LABEL_RE.match(label):
            msg = f"Domain '{value}' contains invalid label '{label}'"
            raise InvalidDomain(msg)


def normalize_domains(
    domains,
    challenge_type: ChallengeType = ChallengeType.HTTP_01,
) -> tuple[str, ...]:
    """Normalise and validate an ordered domain set.

    Order is preserved (the first entry is the primary name); duplicates
    after normalisation are rejected rather than silently dropped.

    Returns
    -------
    tuple[str, ...]
        The normalised domain set.

    Raises
    ------
    InvalidDomain
        If the set is empty, contains duplicates, or any name is invalid.

    """
    if isinstance(domains, str):
        domains = [domains]
    result: list[str] = []
    for raw in domains:
        value = normalize_domain(str(raw))
        validate_domain(value, challenge_type)
        if value in result:
            msg = f"Duplicate domain '{value}' in domain set"
            raise InvalidDomain(msg)
        result.append(value)
    if not result:
        msg = "A certificate needs at least one domain"
        raise InvalidDomain(msg)
    return tuple(result)


_ID_RE = re.compile(r"^[A-Za-z0-9*][A-Za-z0-9*._-]{0,252}$")


def validate_certificate_id(certificate_id: str) -> None:
    """Reject identifiers that are unsafe as file names or URL segments.

    Raises
    ------
    InvalidDomain
        If *certificate_id* contains path separators, ``..`` or other
        characters outside ``[A-Za-z0-9*._-]``.

    """
    if not _ID_RE.match(certificate_id or "") or ".." in certificate_id:
        msg = f"Invalid certificate id '{certificate_id}'"
        raise InvalidDomain(msg)

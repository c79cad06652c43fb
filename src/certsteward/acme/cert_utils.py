"""Key, CSR and chain helpers for the ACME adapter.

Keys are generated locally so the private key never leaves this host;
the authority only ever sees the CSR.
"""

from __future__ import annotations

import hashlib

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec, rsa
from cryptography.x509.oid import NameOID

from certsteward.core.errors import ArtifactCorruption
from certsteward.models.certificate import CertificateMaterial

_EC_CURVES = {
    "ec256": ec.SECP256R1,
    "ec384": ec.SECP384R1,
}

_RSA_SIZES = {
    "rsa2048": 2048,
    "rsa3072": 3072,
    "rsa4096": 4096,
}

KEY_TYPES = tuple(_EC_CURVES) + tuple(_RSA_SIZES)


def generate_private_key(key_type: str = "ec256"):
    """Generate a fresh private key of *key_type* (``ec256``, ``rsa2048``...)."""
    if key_type in _EC_CURVES:
        return ec.generate_private_key(_EC_CURVES[key_type]())
    if key_type in _RSA_SIZES:
        return rsa.generate_private_key(public_exponent=65537, key_size=_RSA_SIZES[key_type])
    msg = f"Unsupported key type '{key_type}'; expected one of {', '.join(KEY_TYPES)}"
    raise ValueError(msg)


def private_key_to_pem(key) -> str:
    return key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode("ascii")


def build_csr(domains: tuple[str, ...], key) -> bytes:
    """Build a DER-encoded CSR with the primary domain as CN and all names as SANs."""
    builder = x509.CertificateSigningRequestBuilder().subject_name(
        x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, domains[0])]),
    )
    builder = builder.add_extension(
        x509.SubjectAlternativeName([x509.DNSName(d) for d in domains]),
        critical=False,
    )
    csr = builder.sign(key, hashes.SHA256())
    return csr.public_bytes(serialization.Encoding.DER)


def parse_material(chain_pem: str, private_key_pem: str) -> CertificateMaterial:
    """Parse a PEM chain and extract the leaf certificate's metadata.

    Raises
    ------
    ArtifactCorruption
        If the chain does not contain a parseable certificate.

    """
    try:
        certs = x509.load_pem_x509_certificates(chain_pem.encode())
    except ValueError as exc:
        msg = f"Unparseable certificate chain: {exc}"
        raise ArtifactCorruption(msg) from exc
    if not certs:
        msg = "Certificate chain is empty"
        raise ArtifactCorruption(msg)
    leaf = certs[0]
    fingerprint = hashlib.sha256(
        leaf.public_bytes(serialization.Encoding.DER),
    ).hexdigest()
    return CertificateMaterial(
        private_key_pem=private_key_pem,
        chain_pem=chain_pem,
        not_before=leaf.not_valid_before_utc,
        not_after=leaf.not_valid_after_utc,
        serial_number=format(leaf.serial_number, "x"),
        fingerprint=fingerprint,
    )

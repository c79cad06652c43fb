"""Repository classes for the PostgreSQL store backend."""

from certsteward.repositories.certificate import CertificateRecordRepository

__all__ = ["CertificateRecordRepository"]

"""Certificate store: durable metadata plus key/chain artifacts.

Public API::

    from certsteward.store import CertificateStore, FileCertificateStore
"""

from certsteward.store.base import CertificateStore, is_due
from certsteward.store.filesystem import FileCertificateStore

__all__ = [
    "CertificateStore",
    "FileCertificateStore",
    "is_due",
]

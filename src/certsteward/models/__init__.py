"""Entity models for the CertSteward lifecycle engine.

All models are frozen dataclasses.  Use :func:`dataclasses.replace`
for modifications (copy-on-write).
"""

from certsteward.models.certificate import (
    ArtifactRefs,
    AttemptOutcome,
    CertificateMaterial,
    CertificateRecord,
)
from certsteward.models.policy import BackoffSchedule, RenewalPolicy

__all__ = [
    "ArtifactRefs",
    "AttemptOutcome",
    "BackoffSchedule",
    "CertificateMaterial",
    "CertificateRecord",
    "RenewalPolicy",
]

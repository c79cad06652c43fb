"""CertSteward: automated ACME certificate lifecycle management."""

__version__ = "0.3.0"

"""CertGuard: hash-chained academic certificate registry with QR and watermark verification."""

__version__ = "0.1.0"

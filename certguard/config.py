"""
Runtime configuration for CertGuard.

Values come from the environment (a local ``.env`` file is loaded first) and
can be overridden per app instance through ``create_app(overrides)``.

Environment Variables:
    MASTER_KEY: key material for encrypting audit events
    ISSUER_SECRET: shared secret required for issuance and admin operations
    ISSUER_NAME: display name of the issuing authority
    DATABASE_URL: SQLAlchemy database URI (default: sqlite:///certguard.db)
    LOG_LEVEL: logging level name (default: INFO)
    STRICT_WATERMARK_CAPACITY: refuse to issue into images too small for the
        watermark (default: true)
    APPEND_RETRIES: ledger append attempts on a chain-tip conflict (default: 3)
"""

import os

from dotenv import load_dotenv

load_dotenv()


def _flag(name, default):
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def load_settings(overrides=None) -> dict:
    settings = {
        "MASTER_KEY": os.getenv("MASTER_KEY", "dev-master-key-change-me"),
        "ISSUER_SECRET": os.getenv("ISSUER_SECRET", "dev-issuer-secret"),
        "ISSUER_NAME": os.getenv("ISSUER_NAME", "CertGuard Authority"),
        "SQLALCHEMY_DATABASE_URI": os.getenv("DATABASE_URL", "sqlite:///certguard.db"),
        "SQLALCHEMY_TRACK_MODIFICATIONS": False,
        "LOG_LEVEL": os.getenv("LOG_LEVEL", "INFO"),
        "STRICT_WATERMARK_CAPACITY": _flag("STRICT_WATERMARK_CAPACITY", True),
        "APPEND_RETRIES": int(os.getenv("APPEND_RETRIES", "3")),
        "MAX_CONTENT_LENGTH": 16 * 1024 * 1024,
    }
    if overrides:
        settings.update(overrides)
    return settings


# Static whitelists, matched case-insensitively as substrings
VALID_INSTITUTIONS = ("IIT", "NIT", "IIIT", "BITS", "DTU")
VALID_COURSES = ("BTech CS", "BTech DS", "BTech AI", "BTech EXTC", "BTech Mech")

GENESIS_HASH = "0" * 64
GENESIS_ID = "CERT-00000"

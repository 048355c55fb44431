import base64
import hashlib
import hmac
import json
import math

from cryptography.fernet import Fernet

from certguard.errors import MalformedInputError

# years must fit a signed 64-bit column
MAX_YEAR = 2 ** 63

IDENTITY_FIELDS = (
    "id",
    "studentName",
    "course",
    "issuingInstitution",
    "grade",
    "rollNumber",
    "year",
)

# snake_case spellings accepted alongside the canonical camelCase keys
_ALIASES = {
    "student_name": "studentName",
    "issuing_institution": "issuingInstitution",
    "roll_number": "rollNumber",
    "certificate_id": "id",
    "certificateId": "id",
}


# ---------- HASHING ----------
def sha256_hash(data: str) -> str:
    return hashlib.sha256(data.encode("utf-8")).hexdigest()


def _normalize_year(value):
    if value is None:
        return 0
    if isinstance(value, int):
        year = int(value)
    else:
        try:
            number = float(value)
        except (TypeError, ValueError):
            return 0
        if math.isnan(number) or math.isinf(number):
            return 0
        year = int(number)
    if not -MAX_YEAR <= year < MAX_YEAR:
        raise MalformedInputError(f"Year {value!r} is out of range")
    return year


def normalize_identity(fields: dict) -> dict:
    """Reduce ``fields`` to the seven identity keys with normalized values.

    Missing or empty strings become ``""``; a missing or non-numeric year
    becomes ``0``; ``2024``, ``2024.0`` and ``"2024"`` all become ``2024``.
    A year outside the signed 64-bit range raises ``MalformedInputError``.
    Issuance previews and ledger appends must both go through here.
    """
    merged = {}
    for key, value in fields.items():
        merged.setdefault(_ALIASES.get(key, key), value)

    normalized = {}
    for key in IDENTITY_FIELDS:
        value = merged.get(key)
        if key == "year":
            normalized[key] = _normalize_year(value)
        else:
            normalized[key] = "" if value is None else str(value)
    return normalized


def canonical_payload(fields: dict) -> str:
    normalized = normalize_identity(fields)
    return json.dumps(
        {key: normalized[key] for key in sorted(normalized)},
        separators=(",", ":"),
        ensure_ascii=False,
    )


def certificate_hash(fields: dict) -> str:
    """SHA-256 over the canonical identity payload, 64 lowercase hex chars."""
    return sha256_hash(canonical_payload(fields))


# ---------- ISSUER AUTH ----------
def verify_secret(candidate: str, secret_hash: str) -> bool:
    return hmac.compare_digest(sha256_hash(candidate or ""), secret_hash)


# ---------- SYMMETRIC ENCRYPTION ----------
def get_cipher(master_key: bytes) -> Fernet:
    key = base64.urlsafe_b64encode(hashlib.sha256(master_key).digest())
    return Fernet(key)


def encrypt(text: str, cipher: Fernet) -> bytes:
    return cipher.encrypt(text.encode("utf-8"))


def decrypt(token: bytes, cipher: Fernet) -> str:
    return cipher.decrypt(token).decode("utf-8")

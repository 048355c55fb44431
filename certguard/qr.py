"""QR payload framing: ``{"id", "signature"}`` as JSON, optionally inside a data URI."""

import base64
import binascii
from dataclasses import dataclass
from io import BytesIO
import json
from typing import Union
from urllib.parse import unquote_to_bytes

import qrcode

from certguard.errors import MalformedInputError


@dataclass(frozen=True)
class QrPayload:
    certificate_id: str
    signature: str

    def to_json(self) -> str:
        return json.dumps(
            {"id": self.certificate_id, "signature": self.signature},
            separators=(",", ":"),
        )


def encode_data_uri(data: bytes, mimetype: str = "text/plain") -> str:
    return f"data:{mimetype};base64,{base64.b64encode(data).decode('ascii')}"


def decode_data_uri(uri: str) -> bytes:
    header, sep, body = uri.partition(",")
    if not header.startswith("data:") or not sep:
        raise MalformedInputError("Not a data URI")
    if header.endswith(";base64"):
        try:
            return base64.b64decode(body, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise MalformedInputError("Data URI body is not valid base64") from exc
    return unquote_to_bytes(body)


def parse_payload(raw: Union[str, bytes, None]) -> QrPayload:
    """Decode a scanned QR payload, raw JSON or data-URI framed."""
    if raw is None:
        raise MalformedInputError("No QR payload supplied")
    if isinstance(raw, bytes):
        raw = raw.decode("utf-8", errors="replace")
    if not isinstance(raw, str):
        raise MalformedInputError("QR payload must be text")
    raw = raw.strip()

    text = raw
    if raw.startswith("data:"):
        try:
            text = decode_data_uri(raw).decode("utf-8")
        except UnicodeDecodeError as exc:
            raise MalformedInputError("QR payload is not UTF-8 text") from exc

    try:
        data = json.loads(text)
    except ValueError as exc:
        raise MalformedInputError("QR payload is not valid JSON") from exc

    if not isinstance(data, dict):
        raise MalformedInputError("QR payload must be a JSON object")
    cert_id = data.get("id")
    signature = data.get("signature")
    if not isinstance(cert_id, str) or not isinstance(signature, str) or not cert_id or not signature:
        raise MalformedInputError("Missing ID or signature in QR data.")
    return QrPayload(cert_id, signature)


def qr_png(payload: QrPayload) -> bytes:
    img = qrcode.make(payload.to_json())
    buf = BytesIO()
    img.save(buf)
    return buf.getvalue()

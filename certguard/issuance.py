"""
Certificate issuance: ledger append, rendering, watermarking and QR.

The rendered raster is a stand-in for whatever produces the final
certificate artwork; callers may pass their own image instead.
"""

from dataclasses import dataclass
from io import BytesIO
import logging
from typing import Optional

from PIL import Image, ImageDraw, ImageFont
from reportlab.lib.pagesizes import A4
from reportlab.pdfgen import canvas

from certguard import watermark
from certguard.crypto_utils import certificate_hash, normalize_identity
from certguard.database import CertificateRecord
from certguard.errors import WatermarkCapacityError
from certguard.qr import QrPayload, qr_png

logger = logging.getLogger(__name__)

CERTIFICATE_SIZE = (1000, 700)
QR_SIZE = 160
SIGNATURE_LENGTH = 64


@dataclass
class IssuedCertificate:
    record: CertificateRecord
    qr: QrPayload
    image_png: bytes

    def to_dict(self) -> dict:
        return {"record": self.record.to_dict(), "qrPayload": self.qr.to_json()}


def preview(fields: dict) -> dict:
    """Signature the registry will assign to ``fields``, computed the same way."""
    identity = normalize_identity(fields)
    signature = certificate_hash(identity)
    return {
        "identity": identity,
        "signature": signature,
        "qrPayload": QrPayload(identity["id"], signature).to_json(),
    }


def render_certificate(record: CertificateRecord, qr: QrPayload) -> Image.Image:
    image = Image.new("RGB", CERTIFICATE_SIZE, color=(252, 250, 242))
    draw = ImageDraw.Draw(image)
    font = ImageFont.load_default()

    width, height = CERTIFICATE_SIZE
    draw.rectangle([20, 20, width - 20, height - 20], outline=(30, 60, 110), width=4)
    draw.text((80, 80), "Certificate of Achievement", fill=(30, 60, 110), font=font)

    lines = [
        f"This certifies that {record.student_name}",
        f"Roll Number: {record.roll_number}",
        f"has completed {record.course}",
        f"at {record.issuing_institution} in {record.year}",
        f"Grade: {record.grade}",
        f"Certificate ID: {record.cert_id}",
    ]
    y = 180
    for line in lines:
        draw.text((80, y), line, fill=(20, 20, 20), font=font)
        y += 40

    code = Image.open(BytesIO(qr_png(qr))).convert("RGB").resize((QR_SIZE, QR_SIZE))
    image.paste(code, (width - QR_SIZE - 60, height - QR_SIZE - 60))
    return image


def secure_image(image: Image.Image, signature: str, strict: bool = True) -> bytes:
    buf = BytesIO()
    watermark.embed(image, signature, strict=strict).save(buf, format="PNG")
    return buf.getvalue()


class IssuanceService:
    def __init__(self, ledger, strict_capacity: bool = True):
        self.ledger = ledger
        self.strict_capacity = strict_capacity

    def issue(self, fields: dict, base_image: Optional[bytes] = None) -> IssuedCertificate:
        """Append to the ledger, then watermark the certificate with the stored hash.

        ``base_image`` replaces the built-in rendering when given.
        """
        # decode and size-check before the ledger write, not after
        image = self._decode_base_image(base_image) if base_image is not None else None

        record = self.ledger.append(fields)
        qr = QrPayload(record.cert_id, record.hash)

        if image is not None:
            image_png = secure_image(image, record.hash, self.strict_capacity)
        else:
            image_png = self.render(record)

        logger.info("Certificate %s issued and watermarked", record.cert_id)
        return IssuedCertificate(record=record, qr=qr, image_png=image_png)

    def _decode_base_image(self, data: bytes) -> Image.Image:
        image = watermark.open_image(data)
        needed = watermark.required_pixels("0" * SIGNATURE_LENGTH)
        if self.strict_capacity and watermark.capacity(image) < needed:
            raise WatermarkCapacityError(
                f"Certificate image has {watermark.capacity(image)} pixels but the watermark needs {needed}"
            )
        return image

    def render(self, record: CertificateRecord) -> bytes:
        """Rendered certificate PNG watermarked with the record's stored hash."""
        qr = QrPayload(record.cert_id, record.hash)
        return secure_image(render_certificate(record, qr), record.hash, self.strict_capacity)


def certificate_pdf(record: CertificateRecord, issuer_name: str) -> bytes:
    buffer = BytesIO()
    pdf = canvas.Canvas(buffer, pagesize=A4)

    pdf.setFont("Helvetica-Bold", 22)
    pdf.drawCentredString(300, 800, "Certificate of Achievement")

    pdf.setFont("Helvetica", 14)
    pdf.drawString(80, 750, f"Certificate ID: {record.cert_id}")
    pdf.drawString(80, 720, f"Student Name: {record.student_name}")
    pdf.drawString(80, 690, f"Roll Number: {record.roll_number}")
    pdf.drawString(80, 660, f"Course: {record.course}")
    pdf.drawString(80, 630, f"Institution: {record.issuing_institution}")
    pdf.drawString(80, 600, f"Grade: {record.grade}    Year: {record.year}")
    pdf.drawString(80, 570, f"Issuer: {issuer_name}")
    pdf.drawString(80, 540, f"Issued At: {record.created_at}")

    pdf.setFont("Courier", 9)
    pdf.drawString(80, 500, f"Signature: {record.hash}")
    pdf.drawString(80, 485, f"Previous:  {record.previous_hash}")

    pdf.showPage()
    pdf.save()
    return buffer.getvalue()

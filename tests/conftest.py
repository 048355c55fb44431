"""
Shared pytest fixtures for CertGuard tests.
"""

from io import BytesIO

import pytest
from PIL import Image

from certguard import watermark
from certguard.app import create_app

ISSUER_SECRET = "test-issuer-secret"


@pytest.fixture
def app():
    """App bound to a fresh in-memory database, with an active app context."""
    app = create_app(
        {
            "TESTING": True,
            "SQLALCHEMY_DATABASE_URI": "sqlite://",
            "ISSUER_SECRET": ISSUER_SECRET,
            "MASTER_KEY": "test-master-key",
            "LOG_LEVEL": "WARNING",
        }
    )
    with app.app_context():
        yield app


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def issuer_headers() -> dict:
    return {"X-Issuer-Key": ISSUER_SECRET}


@pytest.fixture
def services(app) -> dict:
    return app.extensions["certguard"]


@pytest.fixture
def ledger(services):
    return services["ledger"]


@pytest.fixture
def blacklist(services):
    return services["blacklist"]


@pytest.fixture
def engine(services):
    return services["engine"]


@pytest.fixture
def student_fields() -> dict:
    """Identity fields that pass both whitelists."""
    return {
        "id": "CERT-1",
        "studentName": "Asha Verma",
        "course": "BTech CS",
        "issuingInstitution": "IIT Bombay",
        "grade": "A",
        "rollNumber": "21CS042",
        "year": 2024,
    }


@pytest.fixture
def blank_image():
    """Plain white canvas big enough for a 64-char signature."""
    return Image.new("RGB", (64, 32), color="white")


def png_bytes(image: Image.Image) -> bytes:
    buf = BytesIO()
    image.save(buf, format="PNG")
    return buf.getvalue()


def watermarked_png(signature: str, size=(64, 32)) -> bytes:
    return png_bytes(watermark.embed(Image.new("RGB", size, color="white"), signature))

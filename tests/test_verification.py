"""
Tests for the verification engine and its verdicts.
"""

import pytest
from sqlalchemy.orm import Session
from sqlalchemy.exc import OperationalError

from certguard import watermark
from certguard.database import db, VerificationLog
from certguard.errors import PersistenceError
from certguard.qr import QrPayload, encode_data_uri
from certguard.verification import (
    CheckResult,
    CheckStatus,
    Verdict,
    forgery_alerts,
    recent_activity,
    verification_stats,
)

from conftest import watermarked_png


def _qr(record, signature=None) -> str:
    return QrPayload(record.cert_id, signature or record.hash).to_json()


def _logs():
    return list(db.session.scalars(db.select(VerificationLog).order_by(VerificationLog.id)))


@pytest.fixture
def record(ledger, student_fields):
    return ledger.append(student_fields)


class TestCheckResult:
    """Tests for CheckResult rendering."""

    def test_string_forms(self):
        assert str(CheckResult.passed("ok")) == "Passed (ok)"
        assert str(CheckResult.failed("bad")) == "Failed (bad)"
        assert str(CheckResult.not_performed()) == "Not Performed"

    def test_flags(self):
        skipped = CheckResult.not_performed("later")
        assert skipped.status is CheckStatus.NOT_PERFORMED
        assert skipped.ok is False
        assert skipped.performed is False
        assert skipped.to_dict() == {"passed": False, "notPerformed": True, "message": "later"}


class TestScenarios:
    """End-to-end verdicts."""

    def test_valid(self, engine, record):
        """Matching QR, watermark, institution and course: Valid."""
        result = engine.verify(_qr(record), document=watermarked_png(record.hash))

        assert result.status is Verdict.VALID
        assert result.reason == (
            "The certificate is fully authentic. All cryptographic and content checks passed."
        )
        assert all(result.checks[key].ok for key in result.details())
        assert result.details()["dbCheck"] == "Passed (Record found for Asha Verma)"

    def test_valid_with_data_uri_framing(self, engine, record):
        framed = encode_data_uri(_qr(record).encode("utf-8"))
        result = engine.verify(framed, document=watermarked_png(record.hash))
        assert result.status is Verdict.VALID

    def test_signature_mismatch_is_invalid(self, engine, record):
        """A QR signature that is not the stored hash: Invalid."""
        result = engine.verify(_qr(record, "0" * 64), document=watermarked_png(record.hash))

        assert result.status is Verdict.INVALID
        assert result.reason == (
            "The certificate is invalid. The QR code signature does not match the official record."
        )
        assert result.checks["signatureCheck"].status is CheckStatus.FAILED
        # diagnostics still computed
        assert result.checks["institutionCheck"].ok
        assert result.checks["courseCheck"].ok
        assert result.checks["watermarkCheck"].status is CheckStatus.NOT_PERFORMED

    def test_unrecognized_institution_is_partial(self, engine, ledger, student_fields):
        """Valid crypto, institution off the whitelist: Partially Valid."""
        record = ledger.append(dict(student_fields, issuingInstitution="Springfield College"))
        result = engine.verify(_qr(record), document=watermarked_png(record.hash))

        assert result.status is Verdict.PARTIALLY_VALID
        assert result.reason == (
            "Cryptographic signatures are valid, but the issuing institution is not recognized."
        )
        assert result.details()["institutionCheck"] == (
            "Failed (Institution 'Springfield College' is not on the approved list)"
        )

    def test_institution_and_course_both_listed(self, engine, ledger, student_fields):
        record = ledger.append(
            dict(student_fields, issuingInstitution="Springfield College", course="MBA")
        )
        result = engine.verify(_qr(record), document=watermarked_png(record.hash))
        assert result.status is Verdict.PARTIALLY_VALID
        assert result.reason == (
            "Cryptographic signatures are valid, but the issuing institution is not recognized "
            "and the course is not recognized."
        )

    def test_whitelist_is_case_insensitive_substring(self, engine, ledger, student_fields):
        record = ledger.append(
            dict(student_fields, issuingInstitution="bits pilani", course="btech mech (hons)")
        )
        result = engine.verify(_qr(record), document=watermarked_png(record.hash))
        assert result.status is Verdict.VALID

    def test_blacklisted_institution_is_invalid(self, engine, blacklist, record):
        """Blacklist wins over an otherwise perfect certificate."""
        blacklist.add("IIT Bombay", "Suspended")
        result = engine.verify(_qr(record), document=watermarked_png(record.hash))

        assert result.status is Verdict.INVALID
        assert "IIT Bombay" in result.reason
        assert result.reason == (
            "Verification failed: The issuing institution 'IIT Bombay' has been blacklisted."
        )
        assert result.checks["dbCheck"].ok
        for key in ("signatureCheck", "watermarkCheck", "institutionCheck", "courseCheck"):
            assert result.checks[key].status is CheckStatus.NOT_PERFORMED


class TestEarlyExits:
    """Tests for malformed QR and unknown certificates."""

    @pytest.mark.parametrize("payload", [None, "garbage", '{"id": "CERT-1"}'])
    def test_malformed_qr(self, engine, record, payload):
        result = engine.verify(payload)

        assert result.status is Verdict.INVALID
        assert result.certificate_id == "Unknown"
        assert result.reason == "The provided document does not contain a valid, scannable QR code."
        for message in result.details().values():
            assert message == "Not Performed (Invalid QR)"

    def test_unknown_certificate(self, engine, record):
        result = engine.verify(QrPayload("CERT-404", record.hash).to_json())

        assert result.status is Verdict.INVALID
        assert result.certificate_id == "CERT-404"
        assert result.reason == "The certificate is invalid. It was not found in the central registry."
        assert result.details()["dbCheck"] == "Failed (No record found for ID: CERT-404)"
        assert result.checks["signatureCheck"].status is CheckStatus.NOT_PERFORMED


class TestWatermarkCheck:
    """Tests for the watermark step and the no-document policy."""

    def test_no_document_is_partial(self, engine, record):
        """Without a document the watermark is not checked and the verdict stays partial."""
        result = engine.verify(_qr(record))

        assert result.status is Verdict.PARTIALLY_VALID
        assert result.details()["watermarkCheck"] == (
            "Not Performed (No document provided for watermark scan)"
        )
        assert result.reason == (
            "The QR code is valid, but the document's security watermark was not checked."
        )

    def test_missing_watermark(self, engine, record):
        """A document carrying only the terminator has no watermark."""
        result = engine.verify(_qr(record), document=watermarked_png(""))

        assert result.status is Verdict.PARTIALLY_VALID
        assert result.details()["watermarkCheck"] == "Failed (No watermark found in document)"

    def test_counterfeit_watermark(self, engine, record):
        result = engine.verify(_qr(record), document=watermarked_png("f" * 64))

        assert result.status is Verdict.PARTIALLY_VALID
        assert result.details()["watermarkCheck"] == (
            "Failed (Watermark signature mismatch - document may be a counterfeit)"
        )
        assert result.reason == "The QR code is valid, but the document's security watermark is invalid."

    def test_undecodable_document(self, engine, record):
        result = engine.verify(_qr(record), document=b"not an image")
        assert result.checks["watermarkCheck"].message == "No watermark found in document"

    def test_accepts_pil_image(self, engine, record, blank_image):
        result = engine.verify(_qr(record), document=watermark.embed(blank_image, record.hash))
        assert result.status is Verdict.VALID


class TestVerificationLog:
    """Tests for the one-entry-per-request audit trail."""

    def test_one_entry_per_request(self, engine, record):
        engine.verify(_qr(record), document=watermarked_png(record.hash))
        engine.verify("garbage")
        engine.verify(QrPayload("CERT-404", "x").to_json())

        logs = _logs()
        assert [(log.certificate_id, log.status) for log in logs] == [
            ("CERT-1", "Valid"),
            ("Unknown", "Invalid"),
            ("CERT-404", "Invalid"),
        ]
        assert logs[1].reason == "The provided document does not contain a valid, scannable QR code."

    def test_log_failure_does_not_hide_verdict(self, engine, record, monkeypatch):
        def boom(self):
            raise OperationalError("INSERT", {}, Exception("database is locked"))

        monkeypatch.setattr(Session, "commit", boom)
        result = engine.verify(_qr(record), document=watermarked_png(record.hash))
        monkeypatch.undo()

        assert result.status is Verdict.VALID
        assert _logs() == []

    def test_store_outage_is_logged_and_raised(self, engine, ledger, record, monkeypatch):
        """A registry outage is not a verdict, but the attempt is still logged."""
        def unavailable(cert_id):
            raise PersistenceError("Could not look up certificate: the registry store is unavailable")

        monkeypatch.setattr(ledger, "get_by_id", unavailable)
        with pytest.raises(PersistenceError):
            engine.verify(_qr(record))

        logs = _logs()
        assert [(log.certificate_id, log.status) for log in logs] == [("CERT-1", "Invalid")]
        assert "registry store is unavailable" in logs[0].reason

    def test_alerts_activity_and_stats(self, engine, record):
        engine.verify(_qr(record), document=watermarked_png(record.hash))
        engine.verify(_qr(record))
        engine.verify("garbage")
        engine.verify(_qr(record, "1" * 64))

        alerts = forgery_alerts()
        assert [alert.status for alert in alerts] == ["Invalid", "Invalid"]
        assert alerts[0].certificate_id == "CERT-1"
        assert len(recent_activity(limit=3)) == 3
        assert verification_stats() == {"Valid": 1, "Partially Valid": 1, "Invalid": 2}

"""
Multi-factor certificate verification.

A request runs through an ordered pipeline of named checks. Gate steps
(QR decoding, registry lookup, blacklist) end the run with an ``Invalid``
verdict when they fail; the remaining checks always run so the breakdown is
complete. Every request writes exactly one verification log entry.
"""

from dataclasses import dataclass, field
from enum import Enum
import logging
from typing import Dict, List, Optional, Union

from PIL import Image
from sqlalchemy.exc import SQLAlchemyError

from certguard import watermark
from certguard.config import VALID_COURSES, VALID_INSTITUTIONS
from certguard.database import db, store_errors, VerificationLog
from certguard.errors import MalformedInputError, PersistenceError
from certguard.qr import QrPayload, parse_payload

logger = logging.getLogger(__name__)

UNKNOWN_ID = "Unknown"
STORE_UNAVAILABLE = "Verification could not be completed: the registry store is unavailable."
DETAIL_KEYS = ("dbCheck", "signatureCheck", "watermarkCheck", "institutionCheck", "courseCheck")


class CheckStatus(str, Enum):
    PASSED = "Passed"
    FAILED = "Failed"
    NOT_PERFORMED = "Not Performed"


class Verdict(str, Enum):
    VALID = "Valid"
    PARTIALLY_VALID = "Partially Valid"
    INVALID = "Invalid"


@dataclass(frozen=True)
class CheckResult:
    status: CheckStatus
    message: str = ""

    @classmethod
    def passed(cls, message):
        return cls(CheckStatus.PASSED, message)

    @classmethod
    def failed(cls, message):
        return cls(CheckStatus.FAILED, message)

    @classmethod
    def not_performed(cls, message=""):
        return cls(CheckStatus.NOT_PERFORMED, message)

    @property
    def ok(self) -> bool:
        return self.status is CheckStatus.PASSED

    @property
    def performed(self) -> bool:
        return self.status is not CheckStatus.NOT_PERFORMED

    def __str__(self):
        if not self.message:
            return self.status.value
        return f"{self.status.value} ({self.message})"

    def to_dict(self) -> dict:
        return {
            "passed": self.ok,
            "notPerformed": not self.performed,
            "message": self.message,
        }


@dataclass
class VerificationResult:
    certificate_id: str
    status: Verdict
    reason: str
    checks: Dict[str, CheckResult]

    def details(self) -> Dict[str, str]:
        return {key: str(self.checks[key]) for key in DETAIL_KEYS}

    def to_dict(self) -> dict:
        return {
            "certificateId": self.certificate_id,
            "status": self.status.value,
            "reason": self.reason,
            "details": self.details(),
            "checks": {key: self.checks[key].to_dict() for key in DETAIL_KEYS},
        }


@dataclass
class _Context:
    qr_payload: Union[str, bytes, None]
    document: Union[bytes, Image.Image, None]
    payload: Optional[QrPayload] = None
    record: Optional[object] = None
    checks: Dict[str, CheckResult] = field(default_factory=dict)

    @property
    def certificate_id(self) -> str:
        return self.payload.certificate_id if self.payload else UNKNOWN_ID

    def values(self) -> dict:
        return {
            "id": self.certificate_id,
            "institution": self.record.issuing_institution if self.record else "",
        }


@dataclass(frozen=True)
class _Step:
    name: str
    method: str
    # failure ends the run as Invalid with this reason
    abort_reason: Optional[str] = None
    # message for checks that never ran because this step aborted
    skipped_note: str = "Verification failed before this step"
    # gates report nothing in the breakdown
    reported: bool = True


PIPELINE = (
    _Step(
        "qr", "_decode_qr",
        abort_reason="The provided document does not contain a valid, scannable QR code.",
        skipped_note="Invalid QR",
        reported=False,
    ),
    _Step(
        "dbCheck", "_check_registry",
        abort_reason="The certificate is invalid. It was not found in the central registry.",
    ),
    _Step(
        "blacklist", "_check_blacklist",
        abort_reason=(
            "Verification failed: The issuing institution '{institution}' has been blacklisted."
        ),
        skipped_note="Issuing institution is blacklisted",
        reported=False,
    ),
    _Step("signatureCheck", "_check_signature"),
    _Step("institutionCheck", "_check_institution"),
    _Step("courseCheck", "_check_course"),
    _Step("watermarkCheck", "_check_watermark"),
)


def _whitelisted(value: str, whitelist) -> bool:
    value = (value or "").lower()
    return any(item.lower() in value for item in whitelist)


class VerificationEngine:
    """Combines registry, blacklist, QR signature, watermark and whitelist checks.

    A run with no document supplied is never ``Valid``: all three proofs must
    agree for a full verdict, so the missing watermark leaves it at
    ``Partially Valid``.
    """

    def __init__(self, ledger, blacklist, institutions=VALID_INSTITUTIONS, courses=VALID_COURSES):
        self.ledger = ledger
        self.blacklist = blacklist
        self.institutions = tuple(institutions)
        self.courses = tuple(courses)

    def verify(self, qr_payload, document=None) -> VerificationResult:
        ctx = _Context(qr_payload=qr_payload, document=document)
        try:
            result = self._run(ctx)
        except PersistenceError:
            # the attempt is still logged, but no verdict is reported
            self._record_attempt(
                VerificationResult(ctx.certificate_id, Verdict.INVALID, STORE_UNAVAILABLE, {})
            )
            raise
        self._record_attempt(result)
        logger.info(
            "Verification of %s: %s (%s)",
            result.certificate_id, result.status.value, result.reason,
        )
        return result

    def _run(self, ctx: _Context) -> VerificationResult:
        for index, step in enumerate(PIPELINE):
            outcome = getattr(self, step.method)(ctx)
            if step.reported:
                ctx.checks[step.name] = outcome
            if step.abort_reason and not outcome.ok:
                for later in PIPELINE[index + 1:]:
                    if later.reported:
                        ctx.checks[later.name] = CheckResult.not_performed(step.skipped_note)
                return VerificationResult(
                    ctx.certificate_id,
                    Verdict.INVALID,
                    step.abort_reason.format(**ctx.values()),
                    ctx.checks,
                )
        status, reason = self._synthesize(ctx.checks)
        return VerificationResult(ctx.certificate_id, status, reason, ctx.checks)

    # ---------------- STEPS ----------------
    def _decode_qr(self, ctx: _Context) -> CheckResult:
        try:
            ctx.payload = parse_payload(ctx.qr_payload)
        except MalformedInputError as exc:
            logger.info("Rejected QR payload: %s", exc)
            return CheckResult.failed(str(exc))
        return CheckResult.passed("QR payload decoded")

    def _check_registry(self, ctx: _Context) -> CheckResult:
        ctx.record = self.ledger.get_by_id(ctx.payload.certificate_id)
        if ctx.record is None:
            return CheckResult.failed(f"No record found for ID: {ctx.payload.certificate_id}")
        return CheckResult.passed(f"Record found for {ctx.record.student_name}")

    def _check_blacklist(self, ctx: _Context) -> CheckResult:
        institution = ctx.record.issuing_institution
        if self.blacklist.is_blacklisted(institution):
            return CheckResult.failed(f"'{institution}' is blacklisted")
        return CheckResult.passed(f"'{institution}' is in good standing")

    def _check_signature(self, ctx: _Context) -> CheckResult:
        if ctx.payload.signature != ctx.record.hash:
            return CheckResult.failed("QR signature mismatch - document may be altered")
        return CheckResult.passed("QR cryptographic signature is valid")

    def _check_institution(self, ctx: _Context) -> CheckResult:
        institution = ctx.record.issuing_institution
        if _whitelisted(institution, self.institutions):
            return CheckResult.passed(institution)
        return CheckResult.failed(f"Institution '{institution}' is not on the approved list")

    def _check_course(self, ctx: _Context) -> CheckResult:
        course = ctx.record.course
        if _whitelisted(course, self.courses):
            return CheckResult.passed(course)
        return CheckResult.failed(f"Course '{course}' is not on the approved list")

    def _check_watermark(self, ctx: _Context) -> CheckResult:
        if ctx.document is None:
            return CheckResult.not_performed("No document provided for watermark scan")
        if not ctx.checks["signatureCheck"].ok:
            return CheckResult.not_performed("QR signature check failed")

        if isinstance(ctx.document, Image.Image):
            found = watermark.extract(ctx.document)
        else:
            found = watermark.extract_png(ctx.document)

        if not found:
            return CheckResult.failed("No watermark found in document")
        if found != ctx.record.hash:
            return CheckResult.failed(
                "Watermark signature mismatch - document may be a counterfeit"
            )
        return CheckResult.passed("Watermark cryptographic signature is valid")

    # ---------------- VERDICT ----------------
    @staticmethod
    def _synthesize(checks: Dict[str, CheckResult]):
        signature = checks["signatureCheck"]
        mark = checks["watermarkCheck"]
        institution_ok = checks["institutionCheck"].ok
        course_ok = checks["courseCheck"].ok

        if not signature.ok:
            return (
                Verdict.INVALID,
                "The certificate is invalid. The QR code signature does not match the official record.",
            )

        if mark.ok and institution_ok and course_ok:
            return (
                Verdict.VALID,
                "The certificate is fully authentic. All cryptographic and content checks passed.",
            )

        if mark.ok:
            reasons = []
            if not institution_ok:
                reasons.append("the issuing institution is not recognized")
            if not course_ok:
                reasons.append("the course is not recognized")
            return (
                Verdict.PARTIALLY_VALID,
                f"Cryptographic signatures are valid, but {' and '.join(reasons)}.",
            )

        reasons = []
        if mark.performed:
            reasons.append("the document's security watermark is invalid")
        else:
            reasons.append("the document's security watermark was not checked")
        if not institution_ok:
            reasons.append("the institution is unrecognized")
        if not course_ok:
            reasons.append("the course is unrecognized")
        return Verdict.PARTIALLY_VALID, f"The QR code is valid, but {', '.join(reasons)}."

    # ---------------- LOG ----------------
    def _record_attempt(self, result: VerificationResult) -> None:
        try:
            db.session.add(
                VerificationLog(
                    certificate_id=result.certificate_id,
                    status=result.status.value,
                    reason=result.reason,
                )
            )
            db.session.commit()
        except SQLAlchemyError:
            db.session.rollback()
            logger.exception("Could not log verification attempt for %s", result.certificate_id)


# ---------------- ACTIVITY ----------------
def forgery_alerts(limit: int = 5) -> List[VerificationLog]:
    """Most recent ``Invalid`` verification attempts, newest first."""
    with store_errors("read forgery alerts"):
        stmt = (
            db.select(VerificationLog)
            .filter_by(status=Verdict.INVALID.value)
            .order_by(VerificationLog.id.desc())
            .limit(limit)
        )
        return list(db.session.scalars(stmt))


def recent_activity(limit: int = 10) -> List[VerificationLog]:
    with store_errors("read verification activity"):
        stmt = db.select(VerificationLog).order_by(VerificationLog.id.desc()).limit(limit)
        return list(db.session.scalars(stmt))


def verification_stats() -> Dict[str, int]:
    with store_errors("count verification attempts"):
        rows = db.session.execute(
            db.select(VerificationLog.status, db.func.count()).group_by(VerificationLog.status)
        ).all()
    counts = {verdict.value: 0 for verdict in Verdict}
    counts.update({status: count for status, count in rows})
    return counts

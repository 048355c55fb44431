from contextlib import contextmanager
from datetime import datetime, timezone
import logging
import uuid

from flask_sqlalchemy import SQLAlchemy
from sqlalchemy.exc import SQLAlchemyError

from certguard.errors import PersistenceError

logger = logging.getLogger(__name__)

db = SQLAlchemy()


def uid():
    return str(uuid.uuid4())


def utcnow():
    return datetime.now(timezone.utc)


class Issuer(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    encrypted_name = db.Column(db.LargeBinary, nullable=False)
    secret_hash = db.Column(db.String(256), nullable=False)


class AuditLog(db.Model):
    id = db.Column(db.String, primary_key=True, default=uid)
    encrypted_event = db.Column(db.LargeBinary, nullable=False)
    timestamp = db.Column(db.DateTime, default=utcnow)


class CertificateRecord(db.Model):
    __tablename__ = "certificates"
    __table_args__ = {"sqlite_autoincrement": True}

    # insertion order of the chain
    seq = db.Column(db.Integer, primary_key=True, autoincrement=True)

    cert_id = db.Column(db.String(100), unique=True, nullable=False)
    student_name = db.Column(db.String(150), nullable=False, default="")
    course = db.Column(db.String(150), nullable=False, default="")
    issuing_institution = db.Column(db.String(200), nullable=False, default="")
    grade = db.Column(db.String(50), nullable=False, default="")
    roll_number = db.Column(db.String(50), nullable=False, default="")
    year = db.Column(db.Integer, nullable=False, default=0)

    # one successor per predecessor; a second append on the same tip is rejected
    previous_hash = db.Column(db.String(64), unique=True, nullable=False)
    hash = db.Column(db.String(64), nullable=False)
    created_at = db.Column(db.DateTime, default=utcnow)

    def identity(self) -> dict:
        return {
            "id": self.cert_id,
            "studentName": self.student_name,
            "course": self.course,
            "issuingInstitution": self.issuing_institution,
            "grade": self.grade,
            "rollNumber": self.roll_number,
            "year": self.year,
        }

    def to_dict(self) -> dict:
        data = self.identity()
        data.update(
            previousHash=self.previous_hash,
            hash=self.hash,
            createdAt=self.created_at.isoformat() if self.created_at else None,
        )
        return data


class VerificationLog(db.Model):
    __tablename__ = "verification_logs"

    id = db.Column(db.Integer, primary_key=True, autoincrement=True)
    certificate_id = db.Column(db.String(100), nullable=False, default="Unknown")
    status = db.Column(db.String(20), nullable=False)
    reason = db.Column(db.Text, nullable=False)
    timestamp = db.Column(db.DateTime, default=utcnow)

    def to_dict(self) -> dict:
        return {
            "certificateId": self.certificate_id,
            "status": self.status,
            "reason": self.reason,
            "timestamp": self.timestamp.isoformat() if self.timestamp else None,
        }


class BlacklistEntry(db.Model):
    __tablename__ = "blacklist"
    __table_args__ = (
        db.Index(
            "uq_blacklist_active_entity",
            "entity_id",
            unique=True,
            sqlite_where=db.text("status = 'active'"),
            postgresql_where=db.text("status = 'active'"),
        ),
    )

    id = db.Column(db.Integer, primary_key=True, autoincrement=True)
    entity_id = db.Column(db.String(200), nullable=False)
    reason = db.Column(db.Text, nullable=False, default="")
    status = db.Column(db.String(20), nullable=False, default="active")
    timestamp = db.Column(db.DateTime, default=utcnow)

    def to_dict(self) -> dict:
        return {
            "entityId": self.entity_id,
            "reason": self.reason,
            "status": self.status,
            "timestamp": self.timestamp.isoformat() if self.timestamp else None,
        }


@contextmanager
def store_errors(action: str):
    """Roll back and re-raise store failures as ``PersistenceError``."""
    try:
        yield
    except SQLAlchemyError as exc:
        db.session.rollback()
        logger.error("Store failure while trying to %s: %s", action, exc)
        raise PersistenceError(f"Could not {action}: the registry store is unavailable") from exc

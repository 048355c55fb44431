"""
Hash-linked certificate registry.

Every record carries the hash of its predecessor, so a retroactive edit to
any record shows up either as a content-hash mismatch at that record or as a
broken link at its successor.

Writers are serialized through a process-wide lock, and the ``UNIQUE``
constraint on ``previous_hash`` rejects a second successor for the same tip
when several processes share one database. A rejected append is retried
against the new tip.
"""

from dataclasses import dataclass, field
import logging
import random
import threading
from typing import List, Optional

from sqlalchemy.exc import IntegrityError

from certguard.config import GENESIS_HASH, GENESIS_ID
from certguard.crypto_utils import certificate_hash, normalize_identity
from certguard.database import db, store_errors, utcnow, CertificateRecord
from certguard.errors import DuplicateCertificateError, MalformedInputError, PersistenceError

logger = logging.getLogger(__name__)

_write_lock = threading.RLock()

TAMPER_MARKER = " (Tampered)"


def genesis_fields() -> dict:
    return {
        "id": GENESIS_ID,
        "studentName": "Genesis Block",
        "course": "System Initialization",
        "issuingInstitution": "CertGuard System",
        "grade": "N/A",
        "rollNumber": "N/A",
        "year": utcnow().year,
    }


@dataclass
class IntegrityReport:
    is_valid: bool
    log: List[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {"isValid": self.is_valid, "log": list(self.log)}


@dataclass
class TamperResult:
    certificate_id: Optional[str]
    message: str


def _build_record(identity: dict, previous_hash: str, signature: str) -> CertificateRecord:
    return CertificateRecord(
        cert_id=identity["id"],
        student_name=identity["studentName"],
        course=identity["course"],
        issuing_institution=identity["issuingInstitution"],
        grade=identity["grade"],
        roll_number=identity["rollNumber"],
        year=identity["year"],
        previous_hash=previous_hash,
        hash=signature,
        created_at=utcnow(),
    )


class Ledger:
    """Append-only certificate chain stored through Flask-SQLAlchemy."""

    def __init__(self, append_retries: int = 3):
        self.append_retries = max(1, append_retries)

    @property
    def session(self):
        return db.session

    # ---------------- READS ----------------
    def _first(self) -> Optional[CertificateRecord]:
        stmt = db.select(CertificateRecord).order_by(CertificateRecord.seq.asc()).limit(1)
        return self.session.scalars(stmt).first()

    def _last(self) -> Optional[CertificateRecord]:
        stmt = db.select(CertificateRecord).order_by(CertificateRecord.seq.desc()).limit(1)
        return self.session.scalars(stmt).first()

    def _lookup(self, cert_id: str) -> Optional[CertificateRecord]:
        stmt = db.select(CertificateRecord).filter_by(cert_id=cert_id).limit(1)
        return self.session.scalars(stmt).first()

    def get_by_id(self, cert_id: str) -> Optional[CertificateRecord]:
        """Return the stored record verbatim; its ``hash`` is the authoritative signature."""
        with store_errors("look up certificate"):
            return self._lookup(cert_id)

    def records(self) -> List[CertificateRecord]:
        with store_errors("read the certificate chain"):
            stmt = db.select(CertificateRecord).order_by(CertificateRecord.seq.asc())
            return list(self.session.scalars(stmt))

    def __len__(self):
        with store_errors("count certificates"):
            return self.session.scalar(db.select(db.func.count()).select_from(CertificateRecord))

    # ---------------- WRITES ----------------
    def ensure_genesis(self) -> CertificateRecord:
        with _write_lock:
            return self._ensure_genesis()

    def _ensure_genesis(self) -> CertificateRecord:
        with store_errors("create the genesis block"):
            first = self._first()
            if first is not None:
                return first

            logger.info("No records found. Creating genesis block...")
            identity = normalize_identity(genesis_fields())
            genesis = _build_record(identity, GENESIS_HASH, certificate_hash(identity))
            try:
                self.session.add(genesis)
                self.session.commit()
            except IntegrityError:
                # another writer created it first; converge on what is stored
                self.session.rollback()
                first = self._first()
                if first is None:
                    raise PersistenceError("Genesis block was rejected by the store")
                logger.info("Genesis block already created by another writer")
                return first

            logger.info("Genesis block created with hash %s", genesis.hash)
            return genesis

    def append(self, fields: dict) -> CertificateRecord:
        """Link a new certificate to the current chain tip and persist it."""
        identity = normalize_identity(fields)
        if not identity["id"]:
            raise MalformedInputError("A certificate id is required")
        signature = certificate_hash(identity)

        with _write_lock:
            for attempt in range(1, self.append_retries + 1):
                with store_errors("append certificate"):
                    if self._lookup(identity["id"]) is not None:
                        raise DuplicateCertificateError(
                            f"Certificate {identity['id']} already exists in the registry"
                        )

                    tip = self._last()
                    if tip is None:
                        self._ensure_genesis()
                        tip = self._last()

                    record = _build_record(identity, tip.hash, signature)
                    try:
                        self.session.add(record)
                        self.session.commit()
                    except IntegrityError:
                        self.session.rollback()
                        logger.warning(
                            "Chain tip moved while appending %s (attempt %d/%d)",
                            identity["id"], attempt, self.append_retries,
                        )
                        continue

                logger.info(
                    "Certificate record %s added with authoritative hash %s",
                    record.cert_id, record.hash,
                )
                return record

        raise PersistenceError(
            f"Certificate {identity['id']} could not be linked to the chain "
            f"after {self.append_retries} attempts"
        )

    def tamper_random(self, rng: Optional[random.Random] = None) -> TamperResult:
        """Corrupt one non-genesis record's content without touching its hashes.

        Only for exercising :meth:`verify_integrity`.
        """
        rng = rng or random.Random()
        with _write_lock:
            with store_errors("tamper with the chain"):
                stmt = db.select(CertificateRecord).order_by(CertificateRecord.seq.asc())
                chain = list(self.session.scalars(stmt))
                if len(chain) < 2:
                    return TamperResult(None, "Not enough records to tamper.")

                target = chain[rng.randint(1, len(chain) - 1)]
                target.student_name = f"{target.student_name}{TAMPER_MARKER}"
                self.session.commit()

        logger.warning("Tampered with record ID: %s", target.cert_id)
        return TamperResult(target.cert_id, f"Tampered with record ID: {target.cert_id}")

    def reset(self) -> str:
        with _write_lock:
            with store_errors("reset the chain"):
                deleted = self.session.execute(db.delete(CertificateRecord)).rowcount
                self.session.commit()
            logger.warning("Deleted %s certificate records", deleted)
            self._ensure_genesis()

        if not deleted:
            return "Chain was already empty. Initialized genesis block."
        return "Certificate chain has been reset to its genesis state."

    # ---------------- INTEGRITY ----------------
    def verify_integrity(self) -> IntegrityReport:
        logger.info("Verifying certificate chain integrity...")
        chain = self.records()
        report = IntegrityReport(is_valid=True)

        if not chain:
            report.log.append("Chain is empty or not initialized.")
            self.ensure_genesis()
            report.log.append("Initialized a new genesis block.")
            return report

        expected_previous_hash = GENESIS_HASH
        for record in chain:
            report.log.append(f"Verifying record: {record.cert_id}...")

            if record.previous_hash != expected_previous_hash:
                report.is_valid = False
                report.log.append(
                    f"-> FAIL: Chain broken at record {record.cert_id}. "
                    f"Expected previous hash {expected_previous_hash[:10]}... "
                    f"but got {record.previous_hash[:10]}..."
                )
            else:
                report.log.append("-> OK: Previous hash link valid.")

            if certificate_hash(record.identity()) != record.hash:
                report.is_valid = False
                report.log.append(
                    f"-> FAIL: Tampering detected at {record.cert_id}. Content hash mismatch."
                )
            else:
                report.log.append("-> OK: Record content hash valid.")

            # failures do not heal: the next link is checked against the stored hash
            expected_previous_hash = record.hash

        if report.is_valid:
            report.log.append("SUCCESS: Chain integrity verified. All records are valid.")
        else:
            report.log.append("CRITICAL: Chain integrity compromised.")
        logger.info("Chain is valid: %s", report.is_valid)
        return report

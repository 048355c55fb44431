import logging
from typing import List

from cryptography.fernet import Fernet, InvalidToken

from certguard.crypto_utils import decrypt, encrypt
from certguard.database import db, store_errors, AuditLog

logger = logging.getLogger(__name__)


def record_event(event: str, cipher: Fernet) -> AuditLog:
    """Store an administrative event, encrypted at rest."""
    with store_errors("write the audit log"):
        entry = AuditLog(encrypted_event=encrypt(event, cipher))
        db.session.add(entry)
        db.session.commit()
    logger.debug("Audit event recorded: %s", event)
    return entry


def read_events(cipher: Fernet, limit: int = 50) -> List[dict]:
    with store_errors("read the audit log"):
        stmt = db.select(AuditLog).order_by(AuditLog.timestamp.desc()).limit(limit)
        entries = list(db.session.scalars(stmt))

    events = []
    for entry in entries:
        try:
            text = decrypt(entry.encrypted_event, cipher)
        except InvalidToken:
            logger.warning("Audit entry %s cannot be decrypted with the current key", entry.id)
            text = "<unreadable>"
        events.append({"event": text, "timestamp": entry.timestamp.isoformat()})
    return events

import logging
from typing import List

from sqlalchemy.exc import IntegrityError

from certguard.database import db, store_errors, BlacklistEntry
from certguard.errors import AlreadyBlacklistedError, MalformedInputError, NotFoundError

logger = logging.getLogger(__name__)

ACTIVE = "active"
REVOKED = "revoked"


class Blacklist:
    """Suspended issuing entities. At most one active entry per entity."""

    def _active(self, entity_id: str):
        stmt = db.select(BlacklistEntry).filter_by(entity_id=entity_id, status=ACTIVE).limit(1)
        return db.session.scalars(stmt).first()

    def is_blacklisted(self, entity_id: str) -> bool:
        with store_errors("check the blacklist"):
            return self._active(entity_id) is not None

    def add(self, entity_id: str, reason: str = "Blacklisted by admin") -> BlacklistEntry:
        entity_id = (entity_id or "").strip()
        if not entity_id:
            raise MalformedInputError("An entity id is required")

        with store_errors("blacklist entity"):
            if self._active(entity_id) is not None:
                raise AlreadyBlacklistedError("This entity is already blacklisted.")
            entry = BlacklistEntry(entity_id=entity_id, reason=reason, status=ACTIVE)
            try:
                db.session.add(entry)
                db.session.commit()
            except IntegrityError:
                db.session.rollback()
                raise AlreadyBlacklistedError("This entity is already blacklisted.")

        logger.warning("Entity %r blacklisted: %s", entity_id, reason)
        return entry

    def revoke(self, entity_id: str) -> BlacklistEntry:
        with store_errors("revoke blacklist entry"):
            entry = self._active(entity_id)
            if entry is None:
                raise NotFoundError(f"Entity '{entity_id}' is not blacklisted.")
            entry.status = REVOKED
            db.session.commit()

        logger.info("Blacklist entry for %r revoked", entity_id)
        return entry

    def entries(self) -> List[BlacklistEntry]:
        with store_errors("list the blacklist"):
            stmt = db.select(BlacklistEntry).order_by(BlacklistEntry.id.desc())
            return list(db.session.scalars(stmt))

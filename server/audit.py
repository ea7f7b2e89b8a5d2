"""
Verification audit log.

Append-only record of every verification attempt. Writes are fire-and-forget:
a failing append is reported to the process log and never fails the
verification that produced it. Queries are always bounded.
"""

import logging
from typing import Optional

from sqlalchemy import exc as sa_exc, select

from errors import LicenseServerError, ValidationError
from models import VerificationLog
from schemas import LogEntry

logger = logging.getLogger(__name__)

DEFAULT_LIMIT = 100
MAX_LIMIT = 1000


class AuditLog:
    def __init__(self, store, max_limit: int = MAX_LIMIT):
        self.store = store
        self.max_limit = max_limit

    def append(self, entry: LogEntry) -> None:
        try:
            with self.store.session() as session:
                session.add(VerificationLog(
                    license_key=entry.license_key,
                    guild_id=entry.guild_id,
                    device_id=entry.device_id,
                    success=entry.success,
                    reason=entry.reason,
                    timestamp=entry.timestamp,
                    ip_address=entry.ip_address,
                ))
                session.commit()
        except (LicenseServerError, sa_exc.SQLAlchemyError):
            logger.exception(
                "Failed to record verification of %s (%s)", entry.license_key, entry.reason
            )

    def query(self, license_key: Optional[str] = None, limit: int = DEFAULT_LIMIT) -> list:
        """Most recent first, at most ``limit`` entries (capped at max_limit)."""
        if isinstance(limit, bool) or not isinstance(limit, int) or limit < 1:
            raise ValidationError("Invalid request format", ["limit must be a positive integer"])
        stmt = select(VerificationLog)
        if license_key:
            stmt = stmt.where(VerificationLog.license_key == license_key)
        stmt = stmt.order_by(VerificationLog.timestamp.desc(), VerificationLog.id.desc())
        stmt = stmt.limit(min(limit, self.max_limit))
        with self.store.session() as session:
            return [LogEntry.from_row(row) for row in session.execute(stmt).scalars()]

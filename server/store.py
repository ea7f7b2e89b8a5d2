"""
License store on SQLAlchemy.

Every write that depends on the current membership set goes through a
compare-and-swap on the row's ``version`` column:

    1. read the row (no lock held)
    2. decide the outcome from that snapshot
    3. UPDATE ... WHERE license_key = :key AND version = :seen
       SET version = :seen + 1, <changes>

A rowcount of zero means another writer committed in between; the decision is
thrown away and re-made from a fresh read. Writers to the same row are thereby
serialized by the database, writers to different rows never wait on each
other, and nothing is ever written from a stale snapshot.

The store is an explicit handle: build it with a URL, ``open()`` it at
startup, ``close()`` it at shutdown.
"""

import logging
from contextlib import contextmanager
from dataclasses import dataclass, replace
from enum import Enum
from typing import Callable, Iterator, Optional

from sqlalchemy import delete, exc as sa_exc, select, update
from sqlalchemy.orm import Session

from db import Base, make_engine, make_session_factory
from errors import DuplicateKeyError, InfrastructureError, StoreContentionError, ValidationError
from models import License
from schemas import LicensePatch, LicenseRecord

logger = logging.getLogger(__name__)

DEFAULT_CAS_ATTEMPTS = 100


class MembershipOutcome(str, Enum):
    ADDED = "added"
    ALREADY_MEMBER = "already_member"
    CAPACITY_EXCEEDED = "capacity_exceeded"
    REMOVED = "removed"
    NOT_MEMBER = "not_member"
    NOT_FOUND = "not_found"


@dataclass(frozen=True)
class MembershipChange:
    outcome: MembershipOutcome
    # snapshot the decision was made on; post-write when a write happened
    license: Optional[LicenseRecord] = None


class LicenseStore:
    def __init__(self, database_url: str, cas_attempts: int = DEFAULT_CAS_ATTEMPTS):
        self.database_url = database_url
        self.cas_attempts = cas_attempts
        self._engine = None
        self._sessions = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def open(self) -> "LicenseStore":
        if self._engine is not None:
            return self
        engine = make_engine(self.database_url)
        try:
            Base.metadata.create_all(bind=engine)
        except (sa_exc.DBAPIError, sa_exc.TimeoutError) as e:
            engine.dispose()
            raise InfrastructureError(f"Cannot open license store: {e}") from e
        self._engine = engine
        self._sessions = make_session_factory(engine)
        logger.info("License store opened (%s)", engine.url.render_as_string(hide_password=True))
        return self

    def close(self) -> None:
        if self._engine is None:
            return
        self._engine.dispose()
        self._engine = None
        self._sessions = None
        logger.info("License store closed")

    def __enter__(self):
        return self.open()

    def __exit__(self, *exc_info):
        self.close()

    @contextmanager
    def session(self) -> Iterator[Session]:
        """Session scope that reports store I/O failures as InfrastructureError."""
        if self._sessions is None:
            raise InfrastructureError("License store is not open")
        session = self._sessions()
        try:
            yield session
        except sa_exc.IntegrityError:
            session.rollback()
            raise
        except (sa_exc.DBAPIError, sa_exc.TimeoutError) as e:
            session.rollback()
            raise InfrastructureError(f"License store unavailable: {e.__class__.__name__}") from e
        finally:
            session.close()

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    @staticmethod
    def _load(session: Session, license_key: str) -> Optional[License]:
        return session.execute(
            select(License).where(License.license_key == license_key)
        ).scalar_one_or_none()

    def get(self, license_key: str) -> Optional[LicenseRecord]:
        with self.session() as session:
            row = self._load(session, license_key)
            return LicenseRecord.from_row(row) if row is not None else None

    def list_all(self) -> list:
        with self.session() as session:
            rows = session.execute(select(License).order_by(License.id)).scalars().all()
            return [LicenseRecord.from_row(row) for row in rows]

    # ------------------------------------------------------------------
    # Unconditional writes
    # ------------------------------------------------------------------

    def create(self, record: LicenseRecord) -> LicenseRecord:
        record = replace(record, version=1)
        try:
            with self.session() as session:
                session.add(License(**record.column_values()))
                session.commit()
        except sa_exc.IntegrityError as e:
            raise DuplicateKeyError(record.license_key) from e
        logger.info("Created license %s (max_guilds=%s)", record.license_key, record.max_guilds)
        return record

    def delete(self, license_key: str) -> bool:
        with self.session() as session:
            deleted = session.execute(delete(License).where(License.license_key == license_key)).rowcount
            session.commit()
        if deleted:
            logger.info("Deleted license %s", license_key)
        return deleted > 0

    def touch_last_checked(self, license_key: str, timestamp) -> None:
        # single-column write; does not bump version so it never races the CAS
        with self.session() as session:
            session.execute(
                update(License)
                .where(License.license_key == license_key)
                .values(last_checked=timestamp)
                .execution_options(synchronize_session=False)
            )
            session.commit()

    # ------------------------------------------------------------------
    # Conditional writes
    # ------------------------------------------------------------------

    def _compare_and_swap(self, license_key: str, decide: Callable):
        """
        Run decide(record) -> (result, changes) against fresh snapshots until
        the conditional write lands or no write is needed.

        ``changes`` is a dict of LicenseRecord field values, or None when the
        decision needs no write. Returns (result, record) or (None, None) when
        the license does not exist.
        """
        for attempt in range(1, self.cas_attempts + 1):
            with self.session() as session:
                row = self._load(session, license_key)
                if row is None:
                    return None, None
                record = LicenseRecord.from_row(row)
                result, changes = decide(record)
                if changes is None:
                    return result, record

                values = dict(changes)
                if "allowed_guilds" in values:
                    values["allowed_guilds"] = list(values["allowed_guilds"])
                updated = session.execute(
                    update(License)
                    .where(License.license_key == license_key, License.version == record.version)
                    .values(version=record.version + 1, **values)
                    .execution_options(synchronize_session=False)
                ).rowcount
                session.commit()
                if updated == 1:
                    return result, replace(record, version=record.version + 1, **changes)
            logger.debug("CAS conflict on %s (attempt %d)", license_key, attempt)
        raise StoreContentionError(
            f"Gave up on {license_key} after {self.cas_attempts} conflicting writes"
        )

    def try_add_member(self, license_key: str, guild_id: str) -> MembershipChange:
        def decide(record: LicenseRecord):
            if guild_id in record.allowed_guilds:
                return MembershipOutcome.ALREADY_MEMBER, None
            if record.active_guilds >= record.max_guilds:
                return MembershipOutcome.CAPACITY_EXCEEDED, None
            return MembershipOutcome.ADDED, {"allowed_guilds": record.allowed_guilds + (guild_id,)}

        outcome, record = self._compare_and_swap(license_key, decide)
        if outcome is None:
            return MembershipChange(MembershipOutcome.NOT_FOUND)
        if outcome is MembershipOutcome.ADDED:
            logger.info(
                "Guild %s activated on %s (%d/%d)",
                guild_id, license_key, record.active_guilds, record.max_guilds,
            )
        return MembershipChange(outcome, record)

    def remove_member(self, license_key: str, guild_id: str) -> MembershipChange:
        def decide(record: LicenseRecord):
            if guild_id not in record.allowed_guilds:
                return MembershipOutcome.NOT_MEMBER, None
            remaining = tuple(g for g in record.allowed_guilds if g != guild_id)
            return MembershipOutcome.REMOVED, {"allowed_guilds": remaining}

        outcome, record = self._compare_and_swap(license_key, decide)
        if outcome is None:
            return MembershipChange(MembershipOutcome.NOT_FOUND)
        if outcome is MembershipOutcome.REMOVED:
            logger.info("Guild %s deactivated on %s", guild_id, license_key)
        return MembershipChange(outcome, record)

    def update(self, license_key: str, patch: LicensePatch) -> Optional[LicenseRecord]:
        changes = patch.present()

        def decide(record: LicenseRecord):
            max_guilds = changes.get("max_guilds", record.max_guilds)
            if max_guilds < record.active_guilds:
                raise ValidationError(
                    "Invalid request format",
                    [f"activation.max_guilds cannot be below the {record.active_guilds} active guilds"],
                )
            return None, changes

        if not changes:
            return self.get(license_key)
        _, record = self._compare_and_swap(license_key, decide)
        return record

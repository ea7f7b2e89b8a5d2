"""
License verification and guild deactivation.

The engine holds no locks and keeps no state between calls. Each verification
reads the license once, runs the ordered checks below, and expresses the only
mutation it needs (adding the guild) as a single conditional store write:

    1. license missing            -> NOT_FOUND
    2. status is not active       -> INACTIVE
    3. now is past a fixed expiry -> EXPIRED
    4. guild cannot get a slot    -> CAPACITY_EXCEEDED
    5. otherwise                  -> VALID

Every verdict is written to the audit log exactly once. ``last_checked`` is
touched for every verdict that found a license, failures included.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Callable, Optional

from errors import InfrastructureError, ValidationError
from schemas import LicenseRecord, LogEntry, isoformat, utcnow
from store import MembershipOutcome

logger = logging.getLogger(__name__)


class VerdictCode(str, Enum):
    VALID = "valid"
    NOT_FOUND = "not_found"
    INACTIVE = "inactive"
    EXPIRED = "expired"
    CAPACITY_EXCEEDED = "capacity_exceeded"


# audit log reasons
REASONS = {
    VerdictCode.VALID: "Valid license",
    VerdictCode.NOT_FOUND: "License not found",
    VerdictCode.INACTIVE: "License is inactive",
    VerdictCode.EXPIRED: "License has expired",
    VerdictCode.CAPACITY_EXCEEDED: "Maximum guilds reached",
}


@dataclass(frozen=True)
class Verdict:
    code: VerdictCode
    message: str
    license: Optional[LicenseRecord] = None
    newly_added: bool = False
    expires_at: Optional[datetime] = None
    max_guilds: Optional[int] = None
    active_guilds: Optional[int] = None

    @property
    def valid(self) -> bool:
        return self.code is VerdictCode.VALID

    @property
    def reason(self) -> str:
        return REASONS[self.code]

    def to_dict(self) -> dict:
        data = {"valid": self.valid, "code": self.code.value, "message": self.message}
        if self.code is VerdictCode.VALID and self.license is not None:
            data["license"] = self.license.sanitized()
        elif self.code is VerdictCode.EXPIRED:
            data["expires_at"] = isoformat(self.expires_at)
        elif self.code is VerdictCode.CAPACITY_EXCEEDED:
            data["max_guilds"] = self.max_guilds
            data["active_guilds"] = self.active_guilds
        return data


class DeactivationCode(str, Enum):
    REMOVED = "removed"
    NOT_FOUND = "not_found"
    NOT_MEMBER = "not_member"


@dataclass(frozen=True)
class DeactivationResult:
    code: DeactivationCode
    message: str
    license: Optional[LicenseRecord] = None

    @property
    def removed(self) -> bool:
        return self.code is DeactivationCode.REMOVED

    def to_dict(self) -> dict:
        data = {"removed": self.removed, "code": self.code.value, "message": self.message}
        if self.code is DeactivationCode.REMOVED:
            data["license"] = self.license.to_dict()
        elif self.code is DeactivationCode.NOT_MEMBER:
            data["allowed_guilds"] = list(self.license.allowed_guilds)
        return data


def _token(value, name: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValidationError("Invalid request format", [f"{name} is required"])
    return value.strip()


class VerificationEngine:
    def __init__(self, store, audit, clock: Callable[[], datetime] = utcnow):
        self.store = store
        self.audit = audit
        self.clock = clock

    def verify(
        self,
        license_key: str,
        guild_id: str,
        device_id: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> Verdict:
        license_key = _token(license_key, "license_key")
        guild_id = _token(guild_id, "guild_id")
        if device_id is not None:
            device_id = _token(device_id, "device_id")

        now = self.clock()
        verdict = self._evaluate(license_key, guild_id, now)

        self.audit.append(LogEntry(
            license_key=license_key,
            guild_id=guild_id,
            device_id=device_id,
            success=verdict.valid,
            reason=verdict.reason,
            timestamp=now,
            ip_address=ip_address,
        ))
        logger.info("verify %s guild=%s -> %s", license_key, guild_id, verdict.code.value)
        return verdict

    def _evaluate(self, license_key: str, guild_id: str, now: datetime) -> Verdict:
        record = self.store.get(license_key)
        if record is None:
            return Verdict(VerdictCode.NOT_FOUND, "License not found")

        verdict = self._decide(record, guild_id, now)
        if verdict.code is not VerdictCode.NOT_FOUND:
            self._touch(license_key, now)
        return verdict

    def _decide(self, record: LicenseRecord, guild_id: str, now: datetime) -> Verdict:
        if record.status != "active":
            return Verdict(VerdictCode.INACTIVE, "License is inactive")

        if record.is_expired(now):
            return Verdict(VerdictCode.EXPIRED, "License has expired", expires_at=record.expires_at)

        change = self.store.try_add_member(record.license_key, guild_id)
        if change.outcome is MembershipOutcome.NOT_FOUND:
            # deleted between the read and the write
            return Verdict(VerdictCode.NOT_FOUND, "License not found")
        if change.outcome is MembershipOutcome.CAPACITY_EXCEEDED:
            return Verdict(
                VerdictCode.CAPACITY_EXCEEDED,
                "Maximum number of guilds reached for this license",
                max_guilds=change.license.max_guilds,
                active_guilds=change.license.active_guilds,
            )

        newly_added = change.outcome is MembershipOutcome.ADDED
        message = "License is valid (guild activated)" if newly_added else "License is valid (guild already active)"
        return Verdict(
            VerdictCode.VALID,
            message,
            license=change.license.with_last_checked(now),
            newly_added=newly_added,
        )

    def _touch(self, license_key: str, now: datetime) -> None:
        try:
            self.store.touch_last_checked(license_key, now)
        except InfrastructureError:
            logger.warning("Could not update last_checked for %s", license_key, exc_info=True)

    def deactivate(self, license_key: str, guild_id: str) -> DeactivationResult:
        license_key = _token(license_key, "license_key")
        guild_id = _token(guild_id, "guild_id")

        change = self.store.remove_member(license_key, guild_id)
        if change.outcome is MembershipOutcome.NOT_FOUND:
            return DeactivationResult(DeactivationCode.NOT_FOUND, "License not found")
        if change.outcome is MembershipOutcome.NOT_MEMBER:
            return DeactivationResult(
                DeactivationCode.NOT_MEMBER, "Guild is not active for this license", change.license
            )
        return DeactivationResult(DeactivationCode.REMOVED, "Guild deactivated successfully", change.license)

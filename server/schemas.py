"""
License records, partial-update patches and inbound payload parsing.

Payloads are validated by hand: strings are trimmed, types are checked, and
every problem is collected into ValidationError.details so the caller gets
the full list at once.

Partial updates use LicensePatch. A field left at UNSET was omitted from the
payload and is never written; a field set to None was sent as an explicit
null (only validity.expires_at accepts that).
"""

from __future__ import annotations

from dataclasses import dataclass, field, fields, replace
from datetime import datetime, timezone
from typing import Any, Optional

from errors import ValidationError

STATUSES = ("active", "inactive")


class _Unset:
    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "UNSET"

    def __bool__(self) -> bool:
        return False


UNSET: Any = _Unset()


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def isoformat(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


# ----------------------------------------------------------------------------
# Records
# ----------------------------------------------------------------------------


@dataclass(frozen=True)
class LicenseRecord:
    """Point-in-time snapshot of a stored license."""

    license_key: str
    product_id: str
    product_name: str
    owner_discord_id: str
    owner_username: str
    issued_at: datetime
    max_guilds: int
    checksum: str
    status: str = "active"
    expires_at: Optional[datetime] = None
    lifetime: bool = False
    allowed_guilds: tuple = ()
    reseller: str = ""
    notes: str = ""
    read_only: bool = True
    last_checked: Optional[datetime] = None
    version: int = 1

    @classmethod
    def from_row(cls, row) -> "LicenseRecord":
        values = {f.name: getattr(row, f.name) for f in fields(cls)}
        values["allowed_guilds"] = tuple(row.allowed_guilds or ())
        return cls(**values)

    def column_values(self) -> dict:
        values = {f.name: getattr(self, f.name) for f in fields(self)}
        values["allowed_guilds"] = list(self.allowed_guilds)
        return values

    @property
    def active_guilds(self) -> int:
        return len(self.allowed_guilds)

    @property
    def has_fixed_expiry(self) -> bool:
        return not self.lifetime and self.expires_at is not None

    def is_expired(self, now: datetime) -> bool:
        # strictly after: a license is still good at its expiry instant
        return self.has_fixed_expiry and now > self.expires_at

    def with_last_checked(self, when: datetime) -> "LicenseRecord":
        return replace(self, last_checked=when)

    def sanitized(self) -> dict:
        """The subset a bot sees in a verification response."""
        return {
            "license_key": self.license_key,
            "product": {"id": self.product_id, "name": self.product_name},
            "owner": {"discord_id": self.owner_discord_id, "username": self.owner_username},
            "status": self.status,
            "validity": {
                "issued_at": isoformat(self.issued_at),
                "expires_at": isoformat(self.expires_at),
                "lifetime": self.lifetime,
            },
            "activation": {
                "max_guilds": self.max_guilds,
                "active_guilds": self.active_guilds,
                "allowed_guilds": list(self.allowed_guilds),
            },
        }

    def to_dict(self) -> dict:
        data = self.sanitized()
        data["metadata"] = {"reseller": self.reseller, "notes": self.notes}
        data["security"] = {"read_only": self.read_only, "checksum": self.checksum}
        data["last_checked"] = isoformat(self.last_checked)
        return data


@dataclass
class LicensePatch:
    status: Any = UNSET
    product_id: Any = UNSET
    product_name: Any = UNSET
    owner_discord_id: Any = UNSET
    owner_username: Any = UNSET
    issued_at: Any = UNSET
    expires_at: Any = UNSET
    lifetime: Any = UNSET
    max_guilds: Any = UNSET
    reseller: Any = UNSET
    notes: Any = UNSET
    read_only: Any = UNSET
    checksum: Any = UNSET
    last_checked: Any = UNSET

    def present(self) -> dict:
        return {f.name: getattr(self, f.name) for f in fields(self) if getattr(self, f.name) is not UNSET}

    def is_empty(self) -> bool:
        return not self.present()


@dataclass(frozen=True)
class LogEntry:
    license_key: str
    success: bool
    reason: str
    timestamp: datetime = field(default_factory=utcnow)
    guild_id: Optional[str] = None
    device_id: Optional[str] = None
    ip_address: Optional[str] = None

    @classmethod
    def from_row(cls, row) -> "LogEntry":
        return cls(
            license_key=row.license_key,
            success=row.success,
            reason=row.reason,
            timestamp=row.timestamp,
            guild_id=row.guild_id,
            device_id=row.device_id,
            ip_address=row.ip_address,
        )

    def to_dict(self) -> dict:
        return {
            "license_key": self.license_key,
            "guild_id": self.guild_id,
            "device_id": self.device_id,
            "success": self.success,
            "reason": self.reason,
            "timestamp": isoformat(self.timestamp),
            "ip_address": self.ip_address,
        }


# ----------------------------------------------------------------------------
# Field helpers
# ----------------------------------------------------------------------------


_ABSENT = object()


def _text(data: dict, key: str, path: str, errors: list, required: bool = True,
          allow_empty: bool = False, nullable: bool = False):
    value = data.get(key, _ABSENT)
    if value is _ABSENT or (value is None and (required or nullable)):
        if required:
            errors.append(f"{path} is required")
        return UNSET
    if value is None:
        errors.append(f"{path} must not be null")
        return UNSET
    if not isinstance(value, str):
        errors.append(f"{path} must be a string")
        return UNSET
    value = value.strip()
    if not value and not allow_empty:
        errors.append(f"{path} must not be empty")
        return UNSET
    return value


def _flag(data: dict, key: str, path: str, errors: list, required: bool = True):
    value = data.get(key, _ABSENT)
    if value is _ABSENT:
        if required:
            errors.append(f"{path} is required")
        return UNSET
    if not isinstance(value, bool):
        errors.append(f"{path} must be a boolean")
        return UNSET
    return value


def parse_datetime(value) -> datetime:
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, str) and value.strip():
        raw = value.strip()
        if raw.endswith("Z") or raw.endswith("z"):
            raw = raw[:-1] + "+00:00"
        dt = datetime.fromisoformat(raw)
    else:
        raise ValueError(f"not a timestamp: {value!r}")
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def _timestamp(data: dict, key: str, path: str, errors: list, required: bool = True, nullable: bool = False):
    value = data.get(key, _ABSENT)
    if value is _ABSENT:
        if required:
            errors.append(f"{path} is required")
        return UNSET
    if value is None:
        if nullable:
            return None
        errors.append(f"{path} must not be null")
        return UNSET
    try:
        return parse_datetime(value)
    except ValueError:
        errors.append(f"{path} must be an ISO-8601 timestamp")
        return UNSET


def _positive_int(data: dict, key: str, path: str, errors: list, required: bool = True):
    value = data.get(key, _ABSENT)
    if value is _ABSENT:
        if required:
            errors.append(f"{path} is required")
        return UNSET
    if isinstance(value, bool) or not isinstance(value, int) or value < 1:
        errors.append(f"{path} must be a positive integer")
        return UNSET
    return value


def _group(payload: dict, key: str, errors: list, required: bool = True) -> Optional[dict]:
    value = payload.get(key, _ABSENT)
    if value is _ABSENT:
        if required:
            errors.append(f"{key} is required")
        return None
    if not isinstance(value, dict):
        errors.append(f"{key} must be an object")
        return None
    return value


def _status(data: dict, errors: list, required: bool):
    value = data.get("status", _ABSENT)
    if value is _ABSENT:
        return "active" if required else UNSET
    if value not in STATUSES:
        errors.append(f"status must be one of {', '.join(STATUSES)}")
        return UNSET
    return value


def _reject_membership(activation: Optional[dict], errors: list) -> None:
    if activation and "allowed_guilds" in activation:
        errors.append("activation.allowed_guilds is managed by verification and deactivation")


def _require_object(payload) -> dict:
    if not isinstance(payload, dict):
        raise ValidationError("Invalid request format", ["body must be a JSON object"])
    return payload


# ----------------------------------------------------------------------------
# Request parsers
# ----------------------------------------------------------------------------


def parse_verify_request(payload) -> tuple:
    payload = _require_object(payload)
    errors: list = []
    license_key = _text(payload, "license_key", "license_key", errors)
    guild_id = _text(payload, "guild_id", "guild_id", errors)
    device_id = _text(payload, "device_id", "device_id", errors, required=False, nullable=True)
    if errors:
        raise ValidationError("Invalid request format", errors)
    return license_key, guild_id, (device_id or None)


def parse_deactivate_request(payload) -> str:
    payload = _require_object(payload)
    errors: list = []
    guild_id = _text(payload, "guild_id", "guild_id", errors)
    if errors:
        raise ValidationError("Guild ID is required", errors)
    return guild_id


def parse_create(payload) -> LicenseRecord:
    payload = _require_object(payload)
    errors: list = []

    license_key = _text(payload, "license_key", "license_key", errors)
    status = _status(payload, errors, required=True)

    product = _group(payload, "product", errors) or {}
    product_id = _text(product, "id", "product.id", errors)
    product_name = _text(product, "name", "product.name", errors)

    owner = _group(payload, "owner", errors) or {}
    owner_discord_id = _text(owner, "discord_id", "owner.discord_id", errors)
    owner_username = _text(owner, "username", "owner.username", errors)

    validity = _group(payload, "validity", errors) or {}
    issued_at = _timestamp(validity, "issued_at", "validity.issued_at", errors)
    expires_at = _timestamp(validity, "expires_at", "validity.expires_at", errors, required=False, nullable=True)
    lifetime = _flag(validity, "lifetime", "validity.lifetime", errors)

    activation = _group(payload, "activation", errors) or {}
    max_guilds = _positive_int(activation, "max_guilds", "activation.max_guilds", errors)
    _reject_membership(activation, errors)

    metadata = _group(payload, "metadata", errors, required=False) or {}
    reseller = _text(metadata, "reseller", "metadata.reseller", errors, required=False, allow_empty=True)
    notes = _text(metadata, "notes", "metadata.notes", errors, required=False, allow_empty=True)

    security = _group(payload, "security", errors) or {}
    read_only = _flag(security, "read_only", "security.read_only", errors, required=False)
    checksum = _text(security, "checksum", "security.checksum", errors)

    if errors:
        raise ValidationError("Invalid request format", errors)

    return LicenseRecord(
        license_key=license_key,
        product_id=product_id,
        product_name=product_name,
        owner_discord_id=owner_discord_id,
        owner_username=owner_username,
        status=status,
        issued_at=issued_at,
        expires_at=expires_at or None,
        lifetime=lifetime,
        max_guilds=max_guilds,
        reseller=reseller or "",
        notes=notes or "",
        read_only=True if read_only is UNSET else read_only,
        checksum=checksum,
    )


def parse_patch(payload) -> LicensePatch:
    payload = _require_object(payload)
    errors: list = []
    patch = LicensePatch()

    patch.status = _status(payload, errors, required=False)
    patch.last_checked = _timestamp(payload, "last_checked", "last_checked", errors, required=False)

    product = _group(payload, "product", errors, required=False)
    if product is not None:
        patch.product_id = _text(product, "id", "product.id", errors, required=False)
        patch.product_name = _text(product, "name", "product.name", errors, required=False)

    owner = _group(payload, "owner", errors, required=False)
    if owner is not None:
        patch.owner_discord_id = _text(owner, "discord_id", "owner.discord_id", errors, required=False)
        patch.owner_username = _text(owner, "username", "owner.username", errors, required=False)

    validity = _group(payload, "validity", errors, required=False)
    if validity is not None:
        patch.issued_at = _timestamp(validity, "issued_at", "validity.issued_at", errors, required=False)
        patch.expires_at = _timestamp(
            validity, "expires_at", "validity.expires_at", errors, required=False, nullable=True
        )
        patch.lifetime = _flag(validity, "lifetime", "validity.lifetime", errors, required=False)

    activation = _group(payload, "activation", errors, required=False)
    if activation is not None:
        patch.max_guilds = _positive_int(activation, "max_guilds", "activation.max_guilds", errors, required=False)
        _reject_membership(activation, errors)

    metadata = _group(payload, "metadata", errors, required=False)
    if metadata is not None:
        patch.reseller = _text(metadata, "reseller", "metadata.reseller", errors, required=False, allow_empty=True)
        patch.notes = _text(metadata, "notes", "metadata.notes", errors, required=False, allow_empty=True)

    security = _group(payload, "security", errors, required=False)
    if security is not None:
        patch.read_only = _flag(security, "read_only", "security.read_only", errors, required=False)
        patch.checksum = _text(security, "checksum", "security.checksum", errors, required=False)

    if errors:
        raise ValidationError("Invalid request format", errors)
    if patch.is_empty():
        raise ValidationError("Invalid request format", ["At least one field must be provided for update"])
    return patch


def parse_limit(value, default: int, cap: int) -> int:
    if value is None or value == "":
        return min(default, cap)
    if isinstance(value, bool):
        raise ValidationError("Invalid request format", ["limit must be a positive integer"])
    try:
        limit = int(value)
    except (TypeError, ValueError):
        raise ValidationError("Invalid request format", ["limit must be a positive integer"]) from None
    if limit < 1:
        raise ValidationError("Invalid request format", ["limit must be a positive integer"])
    return min(limit, cap)

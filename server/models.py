from sqlalchemy import JSON, Boolean, Column, Index, Integer, String, Text
from sqlalchemy.sql import func

from db import Base, UTCDateTime


class License(Base):
    __tablename__ = "licenses"
    id = Column(Integer, primary_key=True)
    license_key = Column(String(128), unique=True, index=True, nullable=False)
    product_id = Column(String(128), index=True, nullable=False)
    product_name = Column(String(255), nullable=False)
    owner_discord_id = Column(String(64), index=True, nullable=False)
    owner_username = Column(String(255), nullable=False)
    status = Column(String(32), default="active", nullable=False)
    issued_at = Column(UTCDateTime, nullable=False)
    expires_at = Column(UTCDateTime, nullable=True)
    lifetime = Column(Boolean, default=False, nullable=False)
    max_guilds = Column(Integer, nullable=False)
    allowed_guilds = Column(JSON, default=list, nullable=False)
    reseller = Column(String(255), default="", nullable=False)
    notes = Column(Text, default="", nullable=False)
    read_only = Column(Boolean, default=True, nullable=False)
    checksum = Column(String(255), nullable=False)
    last_checked = Column(UTCDateTime, nullable=True)
    # bumped by every conditional write; see store.LicenseStore
    version = Column(Integer, default=1, nullable=False)
    created_at = Column(UTCDateTime, server_default=func.now())
    updated_at = Column(UTCDateTime, onupdate=func.now())
    __table_args__ = (Index("ix_licenses_status_expiry", "status", "expires_at"),)


class VerificationLog(Base):
    __tablename__ = "verification_logs"
    id = Column(Integer, primary_key=True)
    license_key = Column(String(128), index=True, nullable=False)
    guild_id = Column(String(64), nullable=True)
    device_id = Column(String(128), nullable=True)
    success = Column(Boolean, nullable=False)
    reason = Column(String(255), default="", nullable=False)
    timestamp = Column(UTCDateTime, index=True, nullable=False)
    ip_address = Column(String(64), nullable=True)

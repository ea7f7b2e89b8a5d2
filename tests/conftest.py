"""
Shared fixtures: a file-backed SQLite store per test, a settable clock, and
a factory for stored licenses.
"""

from datetime import datetime, timedelta, timezone

import pytest

from audit import AuditLog
from engine import VerificationEngine
from schemas import LicenseRecord
from store import LicenseStore

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


class FixedClock:
    def __init__(self, now=NOW):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, **delta):
        self.now = self.now + timedelta(**delta)


def license_record(license_key="LIC-0001", **overrides) -> LicenseRecord:
    values = dict(
        license_key=license_key,
        product_id="prod-music-bot",
        product_name="Music Bot Pro",
        owner_discord_id="112233445566778899",
        owner_username="owner#0001",
        issued_at=NOW - timedelta(days=30),
        expires_at=None,
        lifetime=True,
        max_guilds=1,
        reseller="acme",
        notes="first customer",
        read_only=True,
        checksum="c0ffee",
    )
    values.update(overrides)
    return LicenseRecord(**values)


@pytest.fixture
def store(tmp_path):
    s = LicenseStore(f"sqlite:///{tmp_path / 'licenses.db'}").open()
    yield s
    s.close()


@pytest.fixture
def audit(store):
    return AuditLog(store)


@pytest.fixture
def clock():
    return FixedClock()


@pytest.fixture
def engine(store, audit, clock):
    return VerificationEngine(store, audit, clock=clock)


@pytest.fixture
def create_license(store):
    def _create(license_key="LIC-0001", **overrides):
        return store.create(license_record(license_key, **overrides))
    return _create

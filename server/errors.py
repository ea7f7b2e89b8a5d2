"""
License server errors.

Verification outcomes such as inactive, expired or over capacity are not
errors; they come back as verdicts. The exceptions here cover malformed
input, missing records and an unreachable store.
"""


class LicenseServerError(Exception):
    """Base exception for the license server."""


class ValidationError(LicenseServerError):
    """Malformed input; raised before the store is touched."""

    def __init__(self, message, details=None):
        super().__init__(message)
        self.message = message
        self.details = list(details or [])


class NotFoundError(LicenseServerError):
    """No license with the given key."""

    def __init__(self, license_key):
        super().__init__(f"License not found: {license_key}")
        self.license_key = license_key


class DuplicateKeyError(LicenseServerError):
    """A license with this key already exists."""

    def __init__(self, license_key):
        super().__init__(f"License key already exists: {license_key}")
        self.license_key = license_key


class InfrastructureError(LicenseServerError):
    """Store or log sink unreachable. The outcome of the call is unknown."""


class StoreContentionError(InfrastructureError):
    """Compare-and-swap kept losing to concurrent writers."""

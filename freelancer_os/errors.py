"""
Exception types shared by the store, session and collection layers.
"""

from __future__ import annotations


class FreelancerOSError(Exception):
    """Base class for all errors raised by this package."""


AUTH_ERROR_MESSAGES = {
    "user_not_found": "User does not exist",
    "invalid_credential": "User does not exist",
    "wrong_password": "Incorrect password",
    "invalid_email": "Invalid email address",
    "disabled": "This account has been disabled",
    "rate_limited": "Too many failed attempts. Please try again later",
    "email_in_use": "An account with this email already exists",
    "weak_password": "Password is too weak",
    "requires_recent_login": "Please sign in again before continuing",
    "account_exists_with_different_credential": (
        "An account already exists with this email using a different sign-in method"
    ),
    "invalid_reset_code": "The password reset code is invalid or has expired",
    "invalid_token": "The sign-in token is invalid or has expired",
}


class AuthError(FreelancerOSError):
    """Credential or identity failure, identified by a stable code."""

    def __init__(self, code: str, message: str | None = None):
        self.code = code
        self.message = message or AUTH_ERROR_MESSAGES.get(code, "An error occurred")
        super().__init__(self.message)


class NotAuthenticated(FreelancerOSError):
    """A mutation or protected read was attempted without an active identity."""

    def __init__(self, message: str = "User not authenticated"):
        super().__init__(message)


class NotFound(FreelancerOSError):
    """The addressed record does not exist."""


class InvalidRecord(FreelancerOSError, ValueError):
    """A record or partial update does not match its collection's shape."""


class StoreError(FreelancerOSError):
    """Transport or backend failure inside a document store."""


class WriteError(FreelancerOSError):
    """A collection mutation could not be committed."""


class UploadError(FreelancerOSError):
    """Media upload failed or the file was rejected before upload."""

    def __init__(self, message: str, *, rejected: bool = False):
        self.rejected = rejected
        super().__init__(message)

"""
Password hashing, credential validation and signed tokens.
"""

from __future__ import annotations

import re
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from jose import JWTError, jwt
from passlib.context import CryptContext

from freelancer_os.errors import AuthError

ALGORITHM = "HS256"
MIN_PASSWORD_LENGTH = 8
EMAIL_PATTERN = re.compile(r"^[A-Z0-9._%+-]+@[A-Z0-9.-]+\.[A-Z]{2,}$", re.IGNORECASE)

pwd_context = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")


def normalize_email(email: str) -> str:
    return (email or "").strip().lower()


def validate_email(email: str) -> str:
    normalized = normalize_email(email)
    if not EMAIL_PATTERN.match(normalized):
        raise AuthError("invalid_email")
    return normalized


def validate_password(password: str) -> None:
    if not password or len(password) < MIN_PASSWORD_LENGTH:
        raise AuthError(
            "weak_password",
            f"Password must be at least {MIN_PASSWORD_LENGTH} characters",
        )


def verify_password(plain_password: str, hashed_password: Optional[str]) -> bool:
    if not hashed_password:
        return False
    return pwd_context.verify(plain_password, hashed_password)


def get_password_hash(password: str) -> str:
    return pwd_context.hash(password)


def create_access_token(
    claims: dict, secret_key: str, expires_delta: timedelta
) -> str:
    to_encode = claims.copy()
    to_encode["exp"] = datetime.now(timezone.utc) + expires_delta
    return jwt.encode(to_encode, secret_key, algorithm=ALGORITHM)


def decode_access_token(token: str, secret_key: str) -> Optional[dict]:
    """Return the token's claims, or None when it is invalid or expired."""
    try:
        payload = jwt.decode(token, secret_key, algorithms=[ALGORITHM])
    except JWTError:
        return None
    if not payload.get("sub"):
        return None
    return payload


@dataclass(frozen=True)
class FederatedAssertion:
    """A verified sign-in assertion from an external identity provider."""

    provider: str
    subject: str
    email: str
    display_name: str = ""
    photo_url: Optional[str] = None


def decode_federated_assertion(token: str, secret: Optional[str]) -> FederatedAssertion:
    """
    Verify an ID token minted by the federated sign-in broker.

    The broker signs tokens with the shared ``federated_secret``; the claims
    follow the OpenID Connect names (``sub``, ``email``, ``name``, ``picture``).
    """
    if not secret:
        raise AuthError("invalid_token", "Federated sign-in is not configured")
    try:
        claims = jwt.decode(
            token, secret, algorithms=[ALGORITHM], options={"verify_aud": False}
        )
    except JWTError as exc:
        raise AuthError("invalid_token") from exc
    if not claims.get("sub") or not claims.get("email"):
        raise AuthError("invalid_token")
    return FederatedAssertion(
        provider=claims.get("provider", "google.com"),
        subject=str(claims["sub"]),
        email=normalize_email(claims["email"]),
        display_name=claims.get("name", ""),
        photo_url=claims.get("picture"),
    )


class LoginThrottle:
    """Locks an email after repeated failed password checks within a window."""

    def __init__(self, max_failures: int = 5, window_seconds: float = 900):
        self.max_failures = max_failures
        self.window_seconds = window_seconds
        self._failures: dict[str, list[float]] = {}
        self._lock = threading.Lock()

    def _recent(self, email: str) -> list[float]:
        # Callers hold self._lock.
        cutoff = time.time() - self.window_seconds
        recent = [t for t in self._failures.get(email, []) if t > cutoff]
        if recent:
            self._failures[email] = recent
        else:
            self._failures.pop(email, None)
        return recent

    def check(self, email: str) -> None:
        with self._lock:
            locked = len(self._recent(email)) >= self.max_failures
        if locked:
            raise AuthError("rate_limited")

    def record_failure(self, email: str) -> None:
        with self._lock:
            self._recent(email)
            self._failures.setdefault(email, []).append(time.time())

    def reset(self, email: str) -> None:
        with self._lock:
            self._failures.pop(email, None)

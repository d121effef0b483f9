"""
Session provider: sign-in state, the per-identity profile and account actions.

Each ``SessionProvider`` holds one caller's session; nothing here is global.
Collections are built from ``current_identity()`` so they are always scoped to
the identity that owns them.
"""

from __future__ import annotations

import logging
import mimetypes
import time
import uuid
from datetime import timedelta
from typing import Callable, Optional

from freelancer_os.errors import AuthError, NotAuthenticated, StoreError, WriteError
from freelancer_os.identity import Account, Identity, IdentityProvider
from freelancer_os.media import MAX_UPLOAD_BYTES, MediaUploader, validate_image
from freelancer_os.schemas import UserProfile
from freelancer_os.security import (
    FederatedAssertion,
    create_access_token,
    decode_access_token,
)
from freelancer_os.store import DocumentStore
from freelancer_os.sync import user_path, utc_now_iso

logger = logging.getLogger(__name__)

PROFILE_FIELDS = {"display_name", "photo_url", "theme", "is_new_user", "email"}


class SessionProvider:
    def __init__(
        self,
        identities: IdentityProvider,
        store: DocumentStore,
        uploader: Optional[MediaUploader] = None,
        *,
        recent_login_seconds: float = 300,
        max_upload_bytes: int = MAX_UPLOAD_BYTES,
        clock: Callable[[], str] = utc_now_iso,
    ):
        self.identities = identities
        self.store = store
        self.uploader = uploader
        self.recent_login_seconds = recent_login_seconds
        self.max_upload_bytes = max_upload_bytes
        self._clock = clock
        self._identity: Optional[Identity] = None

    def current_identity(self) -> Optional[Identity]:
        return self._identity

    def restore(self, identity: Optional[Identity]) -> None:
        """Adopt an identity recovered from an access token."""
        self._identity = identity

    def sign_up(self, email: str, password: str, display_name: str = "") -> Identity:
        account = self.identities.create_account(email, password, display_name)
        logger.info("Created account %s", account.uid)
        return self._start(account)

    def sign_in(self, email: str, password: str) -> Identity:
        account = self.identities.authenticate(email, password)
        return self._start(account)

    def sign_in_with_federated_provider(self, assertion: FederatedAssertion) -> Identity:
        account = self.identities.authenticate_federated(assertion)
        return self._start(account)

    def sign_out(self) -> None:
        if self._identity is not None:
            logger.info("Signed out %s", self._identity.uid)
        self._identity = None

    def _start(self, account: Account) -> Identity:
        self._identity = account.to_identity()
        self.ensure_profile()
        logger.info("Signed in %s via %s", account.uid, account.provider)
        return self._identity

    def _require(self) -> Identity:
        if self._identity is None:
            raise NotAuthenticated()
        return self._identity

    def _require_recent_login(self) -> Identity:
        identity = self._require()
        if time.time() - identity.authenticated_at > self.recent_login_seconds:
            raise AuthError("requires_recent_login")
        return identity

    # Profile

    def get_profile(self) -> Optional[UserProfile]:
        identity = self._require()
        node = self.store.get(user_path(identity.uid))
        if not isinstance(node, dict) or "uid" not in node:
            return None
        return UserProfile.model_validate(node)

    def ensure_profile(self) -> UserProfile:
        """Return the profile, creating the default one on first sign-in."""
        identity = self._require()
        profile = self.get_profile()
        if profile is not None:
            return profile
        now = self._clock()
        profile = UserProfile(
            uid=identity.uid,
            email=identity.email,
            display_name=identity.display_name,
            photo_url=identity.photo_url,
            theme="light",
            is_new_user=True,
            created_at=now,
            updated_at=now,
        )
        # Merge rather than replace: collections live under the same node.
        self._write(user_path(identity.uid), profile.to_document())
        return profile

    def update_profile(self, **changes) -> UserProfile:
        identity = self._require()
        unknown = set(changes) - PROFILE_FIELDS
        if unknown:
            raise ValueError(f"Unknown profile fields: {sorted(unknown)}")
        profile = self.ensure_profile()
        updates = {key: value for key, value in changes.items() if value is not None}
        merged = UserProfile.model_validate(
            {**profile.model_dump(), **updates, "updated_at": self._clock()}
        )
        document = merged.to_document()
        self._write(user_path(identity.uid), document)
        return merged

    def mark_onboarded(self) -> UserProfile:
        return self.update_profile(is_new_user=False)

    # Credentials

    def update_password(self, new_password: str) -> None:
        identity = self._require_recent_login()
        self.identities.update_account(identity.uid, password=new_password)
        logger.info("Password updated for %s", identity.uid)

    def update_email(self, new_email: str) -> Identity:
        identity = self._require_recent_login()
        account = self.identities.update_account(identity.uid, email=new_email)
        self._identity = account.to_identity(identity.authenticated_at)
        self.update_profile(email=account.email)
        return self._identity

    def reset_password(self, email: str) -> str:
        """Issue a one-time reset code; delivering it is the caller's concern."""
        return self.identities.create_reset_code(email)

    def confirm_password_reset(self, code: str, new_password: str) -> None:
        account = self.identities.confirm_reset(code, new_password)
        logger.info("Password reset for %s", account.uid)

    def delete_account(self, password: str) -> None:
        """
        Re-authenticate, then remove the profile, every collection and the
        identity. Nothing is deleted when re-authentication fails.
        """
        identity = self._require()
        account = self.identities.get_account(identity.uid)
        if account is None:
            raise AuthError("user_not_found")
        if account.password_hash is not None:
            self.identities.authenticate(account.email, password)
        elif time.time() - identity.authenticated_at > self.recent_login_seconds:
            raise AuthError("requires_recent_login")

        data_path = user_path(identity.uid)
        try:
            data = self.store.get(data_path)
            self.store.remove(data_path)
        except StoreError as exc:
            raise WriteError(f"Failed to delete account data: {exc}") from exc
        try:
            self.identities.delete_account(identity.uid)
        except StoreError as exc:
            logger.warning("Failed to delete identity %s: %s", identity.uid, exc)
            self._restore_data(data_path, data)
            raise WriteError(f"Failed to delete account: {exc}") from exc
        self._identity = None
        logger.info("Deleted account %s", identity.uid)

    def _restore_data(self, path: str, data) -> None:
        if data is None:
            return
        try:
            self.store.set(path, data)
        except StoreError:
            logger.exception("Could not restore account data at %s", path)

    def upload_profile_photo(
        self, filename: str, content: bytes, content_type: Optional[str]
    ) -> str:
        identity = self._require()
        validate_image(content, content_type, self.max_upload_bytes)
        if self.uploader is None:
            raise RuntimeError("No media uploader configured")
        suffix = mimetypes.guess_extension(content_type) or ""
        if "." in (filename or ""):
            suffix = "." + filename.rsplit(".", 1)[-1].lower()
        path = f"users/{identity.uid}/profile/{uuid.uuid4().hex}{suffix}"
        logger.info("Uploading profile photo for %s (%d bytes)", identity.uid, len(content))
        photo_url = self.uploader.upload(path, content, content_type)
        self.identities.update_account(identity.uid, photo_url=photo_url)
        self._identity = Identity(
            uid=identity.uid,
            email=identity.email,
            display_name=identity.display_name,
            photo_url=photo_url,
            provider=identity.provider,
            authenticated_at=identity.authenticated_at,
        )
        self.update_profile(photo_url=photo_url)
        return photo_url

    # Tokens

    def issue_token(self, secret_key: str, expires_minutes: int) -> str:
        identity = self._require()
        claims = {
            "sub": identity.uid,
            "email": identity.email,
            "name": identity.display_name,
            "provider": identity.provider,
            "auth_time": identity.authenticated_at,
        }
        return create_access_token(claims, secret_key, timedelta(minutes=expires_minutes))

    def resolve_token(self, token: str, secret_key: str) -> Optional[Identity]:
        """Restore the session from an access token; None if it is not valid."""
        claims = decode_access_token(token, secret_key)
        if claims is None:
            return None
        account = self.identities.get_account(claims["sub"])
        if account is None or account.disabled:
            return None
        self._identity = account.to_identity(claims.get("auth_time"))
        return self._identity

    def _write(self, path: str, values: dict) -> None:
        try:
            self.store.update(path, values)
        except StoreError as exc:
            raise WriteError(f"Failed to save profile: {exc}") from exc

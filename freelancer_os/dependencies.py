"""
Dependency wiring for the FastAPI app.
"""

from __future__ import annotations

from typing import Optional

from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from freelancer_os.auth import SessionProvider
from freelancer_os.changes import ChangeFeed, InProcessChangeFeed, RedisChangeFeed
from freelancer_os.config import get_settings
from freelancer_os.errors import NotAuthenticated
from freelancer_os.identity import (
    Identity,
    IdentityProvider,
    InMemoryIdentityProvider,
    SqlIdentityProvider,
)
from freelancer_os.media import (
    CloudinaryUploader,
    InMemoryMediaUploader,
    MediaUploader,
    S3MediaUploader,
)
from freelancer_os.store import DocumentStore, InMemoryDocumentStore, SqlDocumentStore

_document_store: DocumentStore | None = None
_identity_provider: IdentityProvider | None = None
_media_uploader: MediaUploader | None = None

http_bearer = HTTPBearer(auto_error=False)


def _build_change_feed() -> ChangeFeed:
    settings = get_settings()
    if settings.redis_url and not settings.use_in_memory_backends:
        return RedisChangeFeed(url=settings.redis_url, channel=settings.redis_channel)
    return InProcessChangeFeed()


def get_document_store() -> DocumentStore:
    """
    Return a singleton store so subscriptions and writes share one backend.
    """
    global _document_store
    if _document_store:
        return _document_store

    settings = get_settings()
    if settings.use_in_memory_backends or not settings.database_url:
        _document_store = InMemoryDocumentStore()
    else:
        _document_store = SqlDocumentStore(
            settings.database_url, feed=_build_change_feed()
        )
    return _document_store


def get_identity_provider() -> IdentityProvider:
    global _identity_provider
    if _identity_provider:
        return _identity_provider

    settings = get_settings()
    if settings.use_in_memory_backends or not settings.database_url:
        _identity_provider = InMemoryIdentityProvider()
    else:
        _identity_provider = SqlIdentityProvider(settings.database_url)
    return _identity_provider


def get_media_uploader() -> MediaUploader:
    global _media_uploader
    if _media_uploader:
        return _media_uploader

    settings = get_settings()
    if settings.use_in_memory_backends:
        _media_uploader = InMemoryMediaUploader()
    elif settings.cloudinary_url and settings.cloudinary_upload_preset:
        _media_uploader = CloudinaryUploader(
            url=settings.cloudinary_url,
            upload_preset=settings.cloudinary_upload_preset,
        )
    elif settings.s3_bucket:
        _media_uploader = S3MediaUploader(
            bucket=settings.s3_bucket,
            region=settings.s3_region or "",
            endpoint=settings.s3_endpoint or "",
            access_key_id=settings.aws_access_key_id or "",
            secret_access_key=settings.aws_secret_access_key or "",
            public_url=settings.s3_public_url or "",
        )
    else:
        _media_uploader = InMemoryMediaUploader()
    return _media_uploader


def get_session_provider(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(http_bearer),
    identities: IdentityProvider = Depends(get_identity_provider),
    store: DocumentStore = Depends(get_document_store),
    uploader: MediaUploader = Depends(get_media_uploader),
) -> SessionProvider:
    """A per-request session, restored from the bearer token when present."""
    settings = get_settings()
    provider = SessionProvider(
        identities,
        store,
        uploader,
        recent_login_seconds=settings.recent_login_seconds,
        max_upload_bytes=settings.max_upload_bytes,
    )
    if credentials is not None:
        provider.resolve_token(credentials.credentials, settings.secret_key)
    return provider


def get_identity(
    sessions: SessionProvider = Depends(get_session_provider),
) -> Optional[Identity]:
    return sessions.current_identity()


def require_identity(
    identity: Optional[Identity] = Depends(get_identity),
) -> Identity:
    if identity is None:
        raise NotAuthenticated()
    return identity

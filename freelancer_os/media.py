"""
Media upload collaborators for profile photos.

Uploads are validated locally (size and image type) before any network call.
Backends: in-memory for tests, a Cloudinary-style unsigned upload endpoint,
and S3-compatible object storage.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional, Protocol

import boto3
import requests
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from freelancer_os.errors import UploadError

logger = logging.getLogger(__name__)

MAX_UPLOAD_BYTES = 5 * 1024 * 1024
REQUEST_TIMEOUT = 30  # seconds


def validate_image(
    content: bytes, content_type: Optional[str], max_bytes: int = MAX_UPLOAD_BYTES
) -> None:
    """Reject oversized or non-image payloads before they leave the process."""
    if len(content) > max_bytes:
        limit_mb = max_bytes // (1024 * 1024)
        raise UploadError(f"File size must be less than {limit_mb}MB", rejected=True)
    if not content_type or not content_type.startswith("image/"):
        raise UploadError("Please select an image file", rejected=True)


class MediaUploader(Protocol):
    """Uploads a binary payload to ``path`` and returns a public URL."""

    def upload(self, path: str, content: bytes, content_type: str) -> str:
        ...


@dataclass
class InMemoryMediaUploader:
    """Test double for media uploads."""

    base_url: str = "https://example.test/media"
    stored_objects: dict = None

    def __post_init__(self):
        if self.stored_objects is None:
            self.stored_objects = {}

    def upload(self, path: str, content: bytes, content_type: str) -> str:
        self.stored_objects[path] = (content, content_type)
        return f"{self.base_url}/{path}"


@dataclass
class CloudinaryUploader:
    """
    Unsigned upload to a Cloudinary-style endpoint.

    ``url`` is the account's upload endpoint and ``upload_preset`` the name of
    an unsigned preset; the response's ``secure_url`` is returned.
    """

    url: str
    upload_preset: str
    timeout: int = REQUEST_TIMEOUT

    def upload(self, path: str, content: bytes, content_type: str) -> str:
        filename = path.rsplit("/", 1)[-1]
        try:
            response = requests.post(
                self.url,
                files={"file": (filename, content, content_type)},
                data={"upload_preset": self.upload_preset},
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            logger.error("Media upload error for %s: %s", path, exc)
            raise UploadError("Failed to upload image") from exc
        if not response.ok:
            raise UploadError(f"Upload failed: {response.reason}")
        try:
            secure_url = response.json().get("secure_url")
        except ValueError as exc:
            raise UploadError("Upload host returned an invalid response") from exc
        if not secure_url:
            raise UploadError("No secure URL returned from upload host")
        return secure_url


@dataclass
class S3MediaUploader:
    """
    S3-compatible object storage. Objects are served from ``public_url``.
    """

    bucket: str
    region: str
    endpoint: str
    access_key_id: str
    secret_access_key: str
    public_url: str = ""

    def __post_init__(self):
        config = Config(
            s3={"addressing_style": "virtual"},
            signature_version="s3v4",
        )
        self._client = boto3.client(
            "s3",
            endpoint_url=self.endpoint or None,
            region_name=self.region or None,
            aws_access_key_id=self.access_key_id or None,
            aws_secret_access_key=self.secret_access_key or None,
            config=config,
        )

    def upload(self, path: str, content: bytes, content_type: str) -> str:
        try:
            self._client.put_object(
                Bucket=self.bucket,
                Key=path,
                Body=content,
                ContentType=content_type,
            )
        except (BotoCoreError, ClientError) as exc:
            logger.error("Media upload error for %s: %s", path, exc)
            raise UploadError("Failed to upload image") from exc
        base = self.public_url or f"https://{self.bucket}.s3.{self.region}.amazonaws.com"
        return f"{base.rstrip('/')}/{path}"

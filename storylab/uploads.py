"""Blob uploader — turns generated media payloads into public URLs."""

from __future__ import annotations

import base64
import logging
import mimetypes
from abc import ABC, abstractmethod
from pathlib import Path

from storylab import config
from storylab.errors import ValidationError
from storylab.models import generate_id

logger = logging.getLogger(__name__)


def decode_data_url(data_url: str) -> tuple[bytes, str]:
    """Split ``data:<mime>;base64,<payload>`` into (bytes, mime type)."""
    if not data_url.startswith("data:") or "," not in data_url:
        raise ValidationError("Not a data: URL")
    header, encoded = data_url.split(",", 1)
    mime = header[5:].split(";")[0] or "application/octet-stream"
    try:
        return base64.b64decode(encoded), mime
    except ValueError as e:
        raise ValidationError(f"Invalid base64 payload: {e}") from e


class BlobUploader(ABC):
    @abstractmethod
    def upload(self, data: bytes, content_type: str, folder: str, filename: str | None = None) -> str:
        """Store the bytes and return a public URL."""

    def upload_data_url(self, data_url: str, folder: str, filename: str | None = None) -> str:
        data, mime = decode_data_url(data_url)
        return self.upload(data, mime, folder, filename)

    def ensure_public_url(self, url: str, folder: str) -> str:
        """data: URLs get uploaded; anything else is already public."""
        if url and url.startswith("data:"):
            return self.upload_data_url(url, folder)
        return url


class LocalBlobUploader(BlobUploader):
    """Writes under a media directory served by the API at ``url_prefix``."""

    def __init__(self, media_dir: Path | None = None, url_prefix: str | None = None):
        self.media_dir = Path(media_dir or config.MEDIA_DIR)
        self.url_prefix = (url_prefix or config.MEDIA_URL_PREFIX).rstrip("/")

    def upload(self, data: bytes, content_type: str, folder: str, filename: str | None = None) -> str:
        ext = mimetypes.guess_extension(content_type) or ".bin"
        name = filename or f"{generate_id()}{ext}"
        target = (self.media_dir / folder / name).resolve()
        if not target.is_relative_to(self.media_dir.resolve()):
            raise ValidationError("Upload path escapes the media directory")
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(data)
        logger.info(f"Stored {len(data)} bytes at {folder}/{name}")
        return f"{self.url_prefix}/{folder}/{name}"


def read_local_media(url: str, media_dir: Path | None = None, url_prefix: str | None = None) -> tuple[bytes, str] | None:
    """Read a URL this service handed out under its media prefix. Returns None for any other URL."""
    prefix = (url_prefix or config.MEDIA_URL_PREFIX).rstrip("/") + "/"
    if not url or not url.startswith(prefix):
        return None
    root = Path(media_dir or config.MEDIA_DIR).resolve()
    target = (root / url[len(prefix):].split("?", 1)[0]).resolve()
    if not target.is_relative_to(root):
        raise ValidationError("Media path escapes the media directory", url=url)
    if not target.is_file():
        raise ValidationError(f"Media file not found: {url}", url=url)
    mime = mimetypes.guess_type(target.name)[0] or "application/octet-stream"
    return target.read_bytes(), mime


def inline_local_media(url: str) -> str:
    """Local media URLs become data: URLs so remote model APIs can read them."""
    local = read_local_media(url)
    if local is None:
        return url
    data, mime = local
    return f"data:{mime};base64,{base64.b64encode(data).decode()}"

"""Attachment storage for recipes and shared content.

Files live either in the uploads directory (records keep a ``/uploads/...``
URL) or inside the database row as a blob, depending on ``upload_backend``.
"""

from __future__ import annotations

import mimetypes
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from .config import settings

URL_PREFIX = "/uploads/"

_unsafe_chars = re.compile(r"[^a-zA-Z0-9.-]")


class UploadTooLargeError(ValueError):
    """Raised when an upload exceeds the configured size limit."""

    def __init__(self, size: int, limit: int):
        super().__init__(
            f"File is {size} bytes; the limit is {limit // (1024 * 1024)} MB"
        )
        self.size = size
        self.limit = limit


@dataclass(frozen=True)
class StoredFile:
    file_name: str
    file_url: str | None
    file_data: bytes | None
    content_type: str
    file_size: int

    def as_columns(self) -> dict[str, Any]:
        return {
            "file_name": self.file_name,
            "file_url": self.file_url,
            "file_data": self.file_data,
            "content_type": self.content_type,
            "file_size": self.file_size,
        }


def safe_file_name(name: str) -> str:
    """Replace anything outside ``[A-Za-z0-9.-]`` with underscores."""
    return _unsafe_chars.sub("_", Path(name or "").name)


def guess_content_type(file_name: str, declared: str | None = None) -> str:
    if declared and declared != "application/octet-stream":
        return declared
    guessed, _ = mimetypes.guess_type(file_name)
    return guessed or "application/octet-stream"


def upload_path(file_url: str, upload_dir: Path | None = None) -> Path | None:
    """Return the on-disk path for a ``/uploads/...`` URL, or ``None``."""
    if not file_url or not file_url.startswith(URL_PREFIX):
        return None
    stored_name = file_url[len(URL_PREFIX) :]
    if not stored_name or "/" in stored_name or stored_name in {".", ".."}:
        return None
    return (upload_dir or settings.upload_dir) / stored_name


def store_file(
    *,
    record_id: str,
    file_name: str,
    data: bytes,
    content_type: str | None,
    max_bytes: int,
    prefix: str = "",
    backend: str | None = None,
) -> StoredFile:
    """Validate an upload and persist its bytes with the configured backend."""
    original_name = Path((file_name or "").strip()).name
    if not original_name:
        raise ValueError("A file is required")
    size = len(data or b"")
    if size == 0:
        raise ValueError("The uploaded file is empty")
    if size > max_bytes:
        raise UploadTooLargeError(size, max_bytes)

    mime = guess_content_type(original_name, content_type)
    selected = backend or settings.upload_backend
    if selected == "disk":
        stored_name = f"{prefix}{record_id}-{safe_file_name(original_name)}"
        settings.upload_dir.mkdir(parents=True, exist_ok=True)
        (settings.upload_dir / stored_name).write_bytes(data)
        return StoredFile(
            file_name=original_name,
            file_url=f"{URL_PREFIX}{stored_name}",
            file_data=None,
            content_type=mime,
            file_size=size,
        )
    return StoredFile(
        file_name=original_name,
        file_url=None,
        file_data=data,
        content_type=mime,
        file_size=size,
    )


def read_file(record: Any) -> bytes:
    """Return the attachment bytes for a recipe or shared-content record."""
    if record.file_url:
        path = upload_path(record.file_url)
        if path is None or not path.is_file():
            raise FileNotFoundError(record.file_url)
        return path.read_bytes()
    if record.file_data is None:
        raise FileNotFoundError(f"No stored data for {record.id}")
    return record.file_data


def remove_file(file_url: str) -> bool:
    path = upload_path(file_url)
    if path is None or not path.exists():
        return False
    path.unlink()
    return True


def read_upload(upload: Any, limit: int) -> bytes:
    """Read an ``UploadFile`` body, stopping one byte past ``limit``."""
    return upload.file.read(limit + 1)

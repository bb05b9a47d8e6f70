from __future__ import annotations

from datetime import datetime, timezone
import inspect
import os
import re
from typing import Any
from uuid import uuid4

from credwatch.core.errors import EmptyFileError, FileTooLarge, UnsupportedFileType
from credwatch.services.storage.config import StorageConfigSnapshot


_MIME_BY_EXTENSION = {
    "pdf": "application/pdf",
    "jpg": "image/jpeg",
    "jpeg": "image/jpeg",
    "png": "image/png",
    "doc": "application/msword",
    "docx": "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
    "txt": "text/plain",
}
_SEGMENT_RE = re.compile(r"[^a-zA-Z0-9\-_]")
_FILENAME_RE = re.compile(r"[^a-zA-Z0-9\-_.]")


def file_extension(filename: str) -> str:
    return os.path.splitext(filename or "")[1].lower().lstrip(".")


def guess_mime_type(filename: str) -> str:
    return _MIME_BY_EXTENSION.get(file_extension(filename), "application/octet-stream")


async def read_content(content: Any, *, limit: int) -> bytes:
    """Read at most limit + 1 bytes so oversized uploads are detected without buffering them whole."""
    if isinstance(content, (bytes, bytearray, memoryview)):
        return bytes(content)
    reader = getattr(content, "read", None)
    if reader is None:
        raise TypeError("content must be bytes or a binary file-like object")
    chunk = reader(limit + 1)
    if inspect.isawaitable(chunk):
        chunk = await chunk
    return bytes(chunk or b"")


def validate_upload(data: bytes, *, filename: str, mime_type: str, snapshot: StorageConfigSnapshot) -> None:
    # Order matters: empty, then size, then type.
    if not data:
        raise EmptyFileError("uploaded file is empty")
    if len(data) > snapshot.max_file_size_bytes:
        raise FileTooLarge(len(data), snapshot.max_file_size_bytes)
    extension = file_extension(filename)
    if extension not in snapshot.allowed_extensions:
        raise UnsupportedFileType(f"file extension {extension or '(none)'!r} is not allowed")
    if mime_type.lower() not in snapshot.allowed_mime_types:
        raise UnsupportedFileType(f"MIME type {mime_type!r} is not allowed")


def sanitize_segment(value: str) -> str:
    return _SEGMENT_RE.sub("_", value or "") or "unknown"


def sanitize_filename(value: str) -> str:
    # Strip directories before sanitizing so "../" never reaches a key.
    base = os.path.basename((value or "").replace("\\", "/"))
    return _FILENAME_RE.sub("_", base) or "file"


def build_storage_key(
    *,
    owner_id: str | None,
    document_type: str,
    filename: str,
    now: datetime | None = None,
) -> str:
    # documents/<owner>/<type>/<epoch ms>-<nonce>-<filename>; the nonce keeps keys unique per write.
    now = now or datetime.now(timezone.utc)
    stamp = int(now.timestamp() * 1000)
    return (
        f"documents/{sanitize_segment(owner_id or 'unassigned')}/{sanitize_segment(document_type)}/"
        f"{stamp}-{uuid4().hex[:8]}-{sanitize_filename(filename)}"
    )

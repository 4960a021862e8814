"""
File/Media Relay — שמירת קבצים נכנסים וניקוי תקופתי.

Layout under ``UPLOAD_DIR``::

    images/<tenant>/<ts>_<name>      short-lived inbound media (purged)
    audio/<tenant>/...
    videos/<tenant>/...
    documents/<tenant>/...
    library/<tenant>/...             permanent tenant library (never purged)

The relay does not look inside files; reading a payment receipt is the
completion gateway's job.
"""
from __future__ import annotations

import asyncio
import base64
import mimetypes
import os
import time
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Callable

from app.core.config import settings
from app.core.exceptions import ErrorCode, FileStorageError
from app.core.logging import get_logger
from app.core.validation import IdentifierValidator, sanitize_filename

logger = get_logger(__name__)


class FileCategory(str, Enum):
    IMAGE = "image"
    AUDIO = "audio"
    VIDEO = "video"
    DOCUMENT = "document"


CATEGORY_DIRS = {
    FileCategory.IMAGE: "images",
    FileCategory.AUDIO: "audio",
    FileCategory.VIDEO: "videos",
    FileCategory.DOCUMENT: "documents",
}
LIBRARY_DIR = "library"


def classify_mime_type(mime_type: str | None) -> FileCategory:
    """image/* → IMAGE, audio/* → AUDIO, video/* → VIDEO, anything else → DOCUMENT"""
    major = (mime_type or "").split("/", 1)[0].strip().lower()
    if major == "image":
        return FileCategory.IMAGE
    if major == "audio":
        return FileCategory.AUDIO
    if major == "video":
        return FileCategory.VIDEO
    return FileCategory.DOCUMENT


@dataclass
class FileInfo:
    """A stored file"""
    file_name: str
    path: Path
    category: FileCategory
    mime_type: str
    size: int
    tenant_id: str
    stored_at: float
    original_name: str | None = None

    @property
    def display_name(self) -> str:
        return self.original_name or self.file_name

    @property
    def size_mb(self) -> float:
        return self.size / (1024 * 1024)

    def describe(self) -> str:
        """Short description handed to the completion backend"""
        return f'[User sent a {self.category.value} named "{self.display_name}", {self.size_mb:.2f}MB]'

    def to_dict(self) -> dict:
        return {
            "fileName": self.file_name,
            "originalName": self.original_name,
            "category": self.category.value,
            "mimeType": self.mime_type,
            "size": self.size,
            "path": str(self.path),
        }


def _write_new_file(directory: Path, file_name: str, data: bytes) -> Path:
    """Write under the first free name: file_name, 1_file_name, 2_file_name..."""
    directory.mkdir(parents=True, exist_ok=True)
    path = directory / file_name
    suffix = 1
    while True:
        try:
            with open(path, "xb") as fh:
                fh.write(data)
            return path
        except FileExistsError:
            # התנגשות שם (שני קבצים באותה מילישנייה)
            path = directory / f"{suffix}_{file_name}"
            suffix += 1


def _purge_tree(root: Path, cutoff: float) -> tuple[int, int]:
    """Delete files under ``root`` with mtime before ``cutoff``. Returns (deleted, failed)."""
    deleted = 0
    failed = 0
    if not root.exists():
        return 0, 0
    for path in root.rglob("*"):
        try:
            if path.is_file() and path.stat().st_mtime < cutoff:
                path.unlink()
                deleted += 1
        except FileNotFoundError:
            continue
        except OSError as exc:
            failed += 1
            logger.warning(
                "Could not delete expired file",
                extra_data={"path": str(path), "error": str(exc)},
            )
    return deleted, failed


class FileRelay:
    """Tenant-scoped local storage for inbound media and library files"""

    def __init__(
        self,
        base_dir: str | os.PathLike = settings.UPLOAD_DIR,
        max_file_size: int = settings.MAX_FILE_SIZE,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.base_dir = Path(base_dir)
        self.max_file_size = max_file_size
        self._clock = clock

    def _build_name(self, original_name: str | None, mime_type: str, stamp: int) -> str:
        safe = sanitize_filename(original_name or "")
        if safe:
            return f"{stamp}_{safe}"
        ext = mimetypes.guess_extension((mime_type or "").split(";", 1)[0].strip()) or ".bin"
        return f"{stamp}{ext}"

    async def store(
        self,
        data: bytes,
        mime_type: str,
        tenant_id: str,
        original_name: str | None = None,
        *,
        permanent: bool = False,
    ) -> FileInfo:
        """
        Persist one file under the tenant's directory.

        Raises:
            FileStorageError: empty/oversized payload, bad tenant id, or write failure
        """
        if not IdentifierValidator.validate(tenant_id):
            raise FileStorageError(f"Invalid tenant id for storage: {tenant_id!r}")
        if not data:
            raise FileStorageError("Refusing to store an empty file")
        if len(data) > self.max_file_size:
            raise FileStorageError(
                f"File exceeds {self.max_file_size} bytes",
                error_code=ErrorCode.FILE_TOO_LARGE,
                details={"size": len(data), "max_size": self.max_file_size},
            )

        category = classify_mime_type(mime_type)
        folder = LIBRARY_DIR if permanent else CATEGORY_DIRS[category]
        directory = self.base_dir / folder / tenant_id

        now = self._clock()
        stamp = int(now * 1000)
        file_name = self._build_name(original_name, mime_type, stamp)

        try:
            path = await asyncio.to_thread(_write_new_file, directory, file_name, data)
        except OSError as exc:
            logger.error(
                "Failed to store file",
                extra_data={"tenant_id": tenant_id, "path": str(directory / file_name), "error": str(exc)},
            )
            raise FileStorageError(f"Could not write file: {exc}") from exc

        info = FileInfo(
            file_name=path.name,
            path=path,
            category=category,
            mime_type=mime_type,
            size=len(data),
            tenant_id=tenant_id,
            stored_at=now,
            original_name=original_name,
        )
        logger.info(
            "File stored",
            extra_data={
                "tenant_id": tenant_id,
                "category": category.value,
                "size": info.size,
                "permanent": permanent,
            },
        )
        return info

    async def read_bytes(self, path: str | os.PathLike) -> bytes:
        try:
            return await asyncio.to_thread(Path(path).read_bytes)
        except OSError as exc:
            raise FileStorageError(f"Could not read file: {exc}") from exc

    async def read_base64(self, path: str | os.PathLike) -> str:
        data = await self.read_bytes(path)
        return base64.b64encode(data).decode("ascii")

    async def delete(self, path: str | os.PathLike) -> bool:
        """Remove a file. A file that is already gone is not an error."""
        try:
            await asyncio.to_thread(Path(path).unlink)
            return True
        except FileNotFoundError:
            return False
        except OSError as exc:
            raise FileStorageError(f"Could not delete file: {exc}") from exc

    async def purge_older_than(self, max_age_seconds: float) -> int:
        """
        Delete inbound media older than ``max_age_seconds``.

        The tenant library is left alone. Failures are logged per file and
        picked up again by the next sweep.
        """
        cutoff = self._clock() - max_age_seconds
        total_deleted = 0
        total_failed = 0
        for folder in CATEGORY_DIRS.values():
            deleted, failed = await asyncio.to_thread(_purge_tree, self.base_dir / folder, cutoff)
            total_deleted += deleted
            total_failed += failed

        logger.info(
            "Media purge finished",
            extra_data={
                "deleted": total_deleted,
                "failed": total_failed,
                "max_age_seconds": max_age_seconds,
            },
        )
        return total_deleted

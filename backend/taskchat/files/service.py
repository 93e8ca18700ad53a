"""Attachment storage service for task chat.

Validates uploaded files, gives each one a collision-free storage name and
writes it to the uploads directory. A call is all-or-nothing: every file
is validated before the first byte is written, and a failed write removes
the files already written by the same call.

Files are stored in: {upload_dir}/{epoch_ms}-{random}-{sanitized name}
"""
import logging
import re
import secrets
import time
from pathlib import Path
from typing import List, Optional, Sequence, Set

import aiofiles

from .schemas import (
    MAX_FILE_SIZE_BYTES,
    MAX_FILES_PER_UPLOAD,
    Attachment,
    UploadedFile,
    is_allowed_type,
)

logger = logging.getLogger(__name__)

_UNSAFE_CHARS = re.compile(r"[^a-zA-Z0-9._-]")


# =============================================================================
# Errors
# =============================================================================


class AttachmentError(ValueError):
    """Base class for rejected uploads. Rendered as HTTP 400."""


class UnsupportedAttachmentType(AttachmentError):
    def __init__(self, mime_type: str, filename: str) -> None:
        super().__init__(
            f"File type not allowed: {mime_type or 'unknown'} for file: {filename}. "
            "Check server configuration for allowed types."
        )
        self.mime_type = mime_type
        self.filename = filename


class TooManyFiles(AttachmentError):
    def __init__(self, count: int, limit: int) -> None:
        super().__init__(f"Upload error: Too many files ({count}, max {limit}).")
        self.count = count
        self.limit = limit


class NoAcceptedFiles(AttachmentError):
    def __init__(self) -> None:
        super().__init__("No files were uploaded or files were rejected.")


class SizeLimitExceeded(AttachmentError):
    def __init__(self, filename: str, size: int, limit: int) -> None:
        super().__init__(
            f"Upload error: File too large: {filename} ({size} bytes, limit {limit} bytes)."
        )
        self.filename = filename
        self.size = size
        self.limit = limit


def sanitize_filename(filename: str) -> str:
    """Strip every character outside letters, digits, '.', '_' and '-'."""
    return _UNSAFE_CHARS.sub("", filename or "")


# =============================================================================
# Service
# =============================================================================


class AttachmentService:
    """Service for validating and storing chat attachments."""

    _instance: Optional["AttachmentService"] = None

    def __init__(
        self,
        upload_dir: str,
        base_url: str,
        url_prefix: str = "uploads",
        max_file_size_bytes: int = MAX_FILE_SIZE_BYTES,
        max_files: int = MAX_FILES_PER_UPLOAD,
    ) -> None:
        self.upload_dir = Path(upload_dir)
        self.base_url = base_url.rstrip("/")
        self.url_prefix = url_prefix.strip("/")
        self.max_file_size_bytes = max_file_size_bytes
        self.max_files = max_files
        self._ensure_upload_dir()

    @classmethod
    def get_instance(cls) -> "AttachmentService":
        """Get or create the singleton instance from the app configuration."""
        if cls._instance is None:
            from taskchat.config import get_config

            config = get_config()
            cls._instance = cls(
                upload_dir=config.uploads.dir,
                base_url=config.server.base_url,
                url_prefix=config.uploads.url_prefix,
                max_file_size_bytes=config.uploads.max_file_size_bytes,
                max_files=config.uploads.max_files,
            )
        return cls._instance

    @classmethod
    def set_instance(cls, service: Optional["AttachmentService"]) -> None:
        """Replace the singleton instance (for testing)."""
        cls._instance = service

    @classmethod
    def reset_instance(cls) -> None:
        """Reset the singleton instance (for testing)."""
        cls._instance = None

    def _ensure_upload_dir(self) -> None:
        """Ensure the upload directory exists."""
        self.upload_dir.mkdir(parents=True, exist_ok=True)

    # =========================================================================
    # Validation and naming
    # =========================================================================

    def validate(self, upload: UploadedFile) -> None:
        """Raise if a single file may not be stored.

        Raises:
            SizeLimitExceeded: If the file is larger than the configured limit.
            UnsupportedAttachmentType: If the declared type is not allowed.
        """
        if upload.size > self.max_file_size_bytes:
            raise SizeLimitExceeded(upload.filename, upload.size, self.max_file_size_bytes)
        if not is_allowed_type(upload.content_type, upload.filename):
            logger.info(
                f"[Upload] Rejected file type: {upload.content_type or 'unknown'} "
                f"for file: {upload.filename}"
            )
            raise UnsupportedAttachmentType(upload.content_type, upload.filename)

    def check_batch_size(self, count: int) -> None:
        """Raise if a call carries no files or more than ``max_files``."""
        if count > self.max_files:
            raise TooManyFiles(count, self.max_files)
        if count == 0:
            raise NoAcceptedFiles()

    def storage_name(self, filename: str, reserved: Optional[Set[str]] = None) -> str:
        """Build a unique on-disk name: ``{epoch_ms}-{random}-{sanitized}``.

        Args:
            filename: Original filename.
            reserved: Names already claimed by the current call.
        """
        safe_name = sanitize_filename(filename) or "file"
        reserved = reserved if reserved is not None else set()
        while True:
            candidate = f"{int(time.time() * 1000)}-{secrets.token_hex(4)}-{safe_name}"
            if candidate not in reserved and not (self.upload_dir / candidate).exists():
                return candidate

    def public_url(self, storage_name: str) -> str:
        return f"{self.base_url}/{self.url_prefix}/{storage_name}"

    # =========================================================================
    # Accept
    # =========================================================================

    async def accept(self, uploads: Sequence[UploadedFile]) -> List[Attachment]:
        """Validate and store a batch of uploaded files.

        Args:
            uploads: Files from one upload call.

        Returns:
            Attachment metadata, in upload order.

        Raises:
            TooManyFiles: More than ``max_files`` files in the call.
            NoAcceptedFiles: The call carried no files.
            SizeLimitExceeded: A file is over the size limit.
            UnsupportedAttachmentType: A file's type is not allowed.
            OSError: Writing to disk failed. Nothing from the call is kept.
        """
        self.check_batch_size(len(uploads))
        for upload in uploads:
            self.validate(upload)

        reserved: Set[str] = set()
        planned = []
        for upload in uploads:
            name = self.storage_name(upload.filename, reserved)
            reserved.add(name)
            planned.append((upload, name))

        written: List[Path] = []
        try:
            for upload, name in planned:
                path = self.upload_dir / name
                written.append(path)
                async with aiofiles.open(path, "wb") as fh:
                    await fh.write(upload.content)
        except OSError:
            logger.exception(f"[Upload] Write failed, removing {len(written)} file(s) from this call")
            for path in written:
                path.unlink(missing_ok=True)
            raise

        attachments = [
            Attachment(
                name=upload.filename,
                url=self.public_url(name),
                type=upload.content_type,
                size=upload.size,
            )
            for upload, name in planned
        ]
        logger.info(
            f"[Upload] Files uploaded successfully: [ {', '.join(repr(a.name) for a in attachments)} ]"
        )
        return attachments

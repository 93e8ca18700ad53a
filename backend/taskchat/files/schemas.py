"""Pydantic schemas and type rules for chat attachments.

This module defines the data models for file sharing in task chat rooms:
- UploadedFile: one file as received by the upload endpoint
- Attachment: metadata returned to the client and embedded in messages
- UploadResponse: body of a successful upload call

Files are stored flat in the uploads directory under a collision-free
storage name and served back read-only under a fixed URL prefix.
"""
from pathlib import PurePath
from typing import List

from pydantic import BaseModel, Field

# File size limit: 10MB
MAX_FILE_SIZE_BYTES = 10 * 1024 * 1024

# Maximum number of files accepted in a single upload call
MAX_FILES_PER_UPLOAD = 5

# Allowed media types. Entries ending in "/" match as a prefix.
ALLOWED_MIME_PATTERNS = [
    "image/",
    "application/pdf",
    "application/msword",
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
    "application/vnd.ms-excel",
    "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
    "application/vnd.ms-powerpoint",
    "application/vnd.openxmlformats-officedocument.presentationml.presentation",
    "text/plain",
    "application/zip",
    "application/x-rar-compressed",
]

# Declared types that say nothing about the content. For these the file
# extension decides, and only office documents are let through.
GENERIC_MIME_TYPES = {"application/octet-stream", ""}

OFFICE_EXTENSIONS = {
    ".doc": "application/msword",
    ".docx": "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
    ".xls": "application/vnd.ms-excel",
    ".xlsx": "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
    ".ppt": "application/vnd.ms-powerpoint",
    ".pptx": "application/vnd.openxmlformats-officedocument.presentationml.presentation",
}


class UploadedFile(BaseModel):
    """One file from a multipart upload, before validation."""
    filename: str = Field(..., description="Original filename as sent by the client")
    content_type: str = Field(default="", description="Declared media type")
    content: bytes = Field(default=b"", description="Raw file bytes")
    size: int = Field(..., ge=0, description="File size in bytes")

    @classmethod
    def from_bytes(cls, filename: str, content: bytes, content_type: str = "") -> "UploadedFile":
        return cls(filename=filename, content_type=content_type, content=content, size=len(content))


class Attachment(BaseModel):
    """Metadata for a stored attachment.

    ``name`` is the original, unsanitized filename for display; the stored
    filename only appears as the last segment of ``url``.
    """
    name: str = Field(..., description="Original filename")
    url: str = Field(..., description="Public URL of the stored file")
    type: str = Field(..., description="Declared media type")
    size: int = Field(..., description="File size in bytes")


class UploadResponse(BaseModel):
    """Response body of POST /upload."""
    files: List[Attachment]


def is_allowed_type(mime_type: str, filename: str) -> bool:
    """Check a declared media type (and, for generic types, the extension).

    Examples:
        >>> is_allowed_type("image/png", "a.png")
        True
        >>> is_allowed_type("application/octet-stream", "report.docx")
        True
        >>> is_allowed_type("application/octet-stream", "setup.exe")
        False
    """
    mime_type = (mime_type or "").strip().lower()
    for pattern in ALLOWED_MIME_PATTERNS:
        if pattern.endswith("/"):
            if mime_type.startswith(pattern):
                return True
        elif mime_type == pattern:
            return True

    if mime_type in GENERIC_MIME_TYPES:
        return PurePath(filename or "").suffix.lower() in OFFICE_EXTENSIONS
    return False

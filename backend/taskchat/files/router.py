"""FastAPI router for chat attachment uploads."""
import logging
from typing import List, Optional

from fastapi import APIRouter, File, UploadFile
from fastapi.responses import JSONResponse

from .schemas import UploadedFile, UploadResponse
from .service import AttachmentError, AttachmentService

logger = logging.getLogger(__name__)

router = APIRouter(tags=["files"])


@router.post("/upload", response_model=UploadResponse)
async def upload_files(files: Optional[List[UploadFile]] = File(None)):
    """Upload up to five chat attachments in one call.

    Supported file types:
    - Images: any image/* type
    - Documents: pdf, doc/docx, xls/xlsx, ppt/pptx, plain text
    - Archives: zip, rar
    - application/octet-stream only for office extensions

    The call is all-or-nothing: if any file is rejected, none are stored.

    Args:
        files: Multipart ``files`` field, repeated per file.

    Returns:
        {"files": [{name, url, type, size}, ...]}

    Errors:
        400 {"error": ...}: unsupported type, too many files, no files,
            or size limit exceeded.
        500 {"error": ...}: storage failure.
    """
    service = AttachmentService.get_instance()
    files = files or []

    try:
        # Reject oversized batches before reading any content
        service.check_batch_size(len(files))

        uploads = []
        for file in files:
            content = await file.read()
            uploads.append(UploadedFile.from_bytes(
                filename=file.filename or "unnamed",
                content=content,
                content_type=file.content_type or "application/octet-stream",
            ))

        attachments = await service.accept(uploads)

    except AttachmentError as e:
        logger.warning(f"[Upload] Rejected upload of {len(files)} file(s): {e}")
        return JSONResponse({"error": str(e)}, status_code=400)
    except Exception as e:
        logger.error(f"[Upload] File upload failed: {e}")
        return JSONResponse({"error": f"Upload failed: {e}"}, status_code=500)

    return UploadResponse(files=attachments)

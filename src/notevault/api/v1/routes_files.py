"""File API routes."""

import logging
from email.utils import format_datetime
from typing import AsyncIterator, List, Optional

from fastapi import APIRouter, Depends, File, HTTPException, Request, Response, UploadFile
from fastapi.responses import StreamingResponse

from notevault.core.config import settings
from notevault.exceptions import (
    FileRecordNotFoundError,
    FileTooLargeError,
    FileValidationError,
    StorageObjectNotFoundError,
)
from notevault.ingest.detection import mime_to_extension
from notevault.models.files import (
    DeletedFileResponse,
    FileExistsResponse,
    UploadedFileResponse,
)
from notevault.services.file_storage import FileStorageService, get_file_storage_service
from notevault.services.upload_adapter import (
    IncomingFile,
    StorageServiceAdapter,
    get_upload_adapter,
)

router = APIRouter(prefix="/api/v1", tags=["files"])
logger = logging.getLogger(__name__)

UPLOAD_READ_CHUNK_SIZE = 65536  # 64KB chunks
DOWNLOAD_CACHE_CONTROL = "private, immutable, no-transform, max-age=86400"


async def _iter_upload(upload: UploadFile) -> AsyncIterator[bytes]:
    while chunk := await upload.read(UPLOAD_READ_CHUNK_SIZE):
        yield chunk


@router.post(
    "/users/{user_id}/files",
    response_model=List[UploadedFileResponse],
    status_code=201,
)
async def upload_files(
    request: Request,
    user_id: str,
    file: Optional[List[UploadFile]] = File(None),
    adapter: StorageServiceAdapter = Depends(get_upload_adapter),
) -> List[UploadedFileResponse]:
    """Upload one or more files for a user; either all are stored or none."""
    if "multipart/form-data" not in request.headers.get("content-type", ""):
        raise HTTPException(status_code=400, detail="Invalid content type.")

    if not user_id or not user_id.strip():
        raise HTTPException(status_code=400, detail="user_id is required")

    if not file:
        raise HTTPException(status_code=400, detail="No files uploaded!")

    if len(file) > settings.MAX_FILES_PER_REQUEST:
        raise HTTPException(
            status_code=400,
            detail=f"Too many files, at most {settings.MAX_FILES_PER_REQUEST} allowed",
        )

    incoming = [
        IncomingFile(
            field_name="file",
            filename=upload.filename or "unnamed",
            stream=_iter_upload(upload),
            declared_content_type=upload.content_type,
        )
        for upload in file
    ]

    try:
        uploaded = await adapter.handle_files(incoming, user_id)
    except FileValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except FileTooLargeError as e:
        raise HTTPException(status_code=413, detail=str(e))
    except Exception as e:
        logger.error(f"Failed to store files: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Failed to store file")

    logger.info(
        f"Upload completed: user_id={user_id}, files={len(uploaded)}"
    )

    return [
        UploadedFileResponse(
            file_id=item.file_id,
            field_name=item.field_name,
            name=item.name,
            original_name=item.original_name,
            key=item.key,
            mimetype=item.mimetype,
            extension=item.extension,
            size=item.size,
            user_id=item.user_id,
        )
        for item in uploaded
    ]


@router.get("/files/{file_id}")
async def download_file(
    request: Request,
    file_id: str,
    service: FileStorageService = Depends(get_file_storage_service),
):
    """Stream a stored file with caching headers."""
    try:
        downloaded = await service.download(file_id)
    except (FileRecordNotFoundError, StorageObjectNotFoundError):
        raise HTTPException(status_code=404, detail="File not found")
    except Exception as e:
        logger.error(f"Download failed: file_id={file_id}: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Download file failed")

    metadata = downloaded.metadata
    etag = f'"{metadata.hash}"'

    if request.headers.get("if-none-match") == etag:
        aclose = getattr(downloaded.stream, "aclose", None)
        if aclose is not None:
            await aclose()
        return Response(status_code=304, headers={"ETag": etag})

    extension = mime_to_extension(metadata.mimetype) or "bin"
    headers = {
        "Cache-Control": DOWNLOAD_CACHE_CONTROL,
        "ETag": etag,
        "Last-Modified": format_datetime(metadata.last_modified, usegmt=True),
        "Content-Disposition": f"attachment; filename={file_id}.{extension}",
        "Content-Length": str(metadata.size),
    }
    return StreamingResponse(
        downloaded.stream,
        media_type=metadata.mimetype or "application/octet-stream",
        headers=headers,
    )


@router.get("/files/{file_id}/exists", response_model=FileExistsResponse)
async def file_exists(
    file_id: str,
    service: FileStorageService = Depends(get_file_storage_service),
) -> FileExistsResponse:
    """Report whether a file is stored."""
    try:
        exists = await service.exists(file_id)
    except Exception as e:
        logger.error(f"Existence check failed: file_id={file_id}: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Checking file existence failed")
    return FileExistsResponse(file_id=file_id, exists=exists)


@router.delete("/users/{user_id}/files/{file_id}", response_model=DeletedFileResponse)
async def delete_file(
    user_id: str,
    file_id: str,
    service: FileStorageService = Depends(get_file_storage_service),
) -> DeletedFileResponse:
    """Delete a file owned by the user."""
    try:
        deleted = await service.delete(file_id, user_id, silent=False)
    except FileRecordNotFoundError:
        raise HTTPException(status_code=404, detail="File not found")
    except Exception as e:
        logger.error(f"Delete failed: file_id={file_id}: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Delete file failed")

    return DeletedFileResponse(
        file_id=deleted.id,
        mimetype=deleted.mimetype,
        size=deleted.size,
        user_id=deleted.user_id,
    )

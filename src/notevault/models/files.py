"""File API data models."""

from pydantic import BaseModel


class UploadedFileResponse(BaseModel):
    """Response model for one uploaded file."""

    file_id: str
    field_name: str
    name: str
    original_name: str
    key: str
    mimetype: str
    extension: str
    size: int
    user_id: str


class DeletedFileResponse(BaseModel):
    """Response model for a deleted file."""

    file_id: str
    mimetype: str
    size: int
    user_id: str


class FileExistsResponse(BaseModel):
    """Response model for a file existence check."""

    file_id: str
    exists: bool

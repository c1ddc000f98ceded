"""File metadata record store."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, Optional
from uuid import uuid4

from notevault.exceptions import DuplicateFileKeyError


@dataclass(frozen=True)
class FileRecord:
    """Metadata of a stored file."""

    id: str
    key: str  # Storage key, unique
    mimetype: str
    size: int
    hash: str
    user_id: str
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class FileRepository:
    """In-memory store for file metadata records."""

    def __init__(self):
        self._records: Dict[str, FileRecord] = {}
        self._ids_by_key: Dict[str, str] = {}

    def create_file(
        self, key: str, mimetype: str, size: int, hash: str, user_id: str
    ) -> FileRecord:
        """Store a new record under a generated id.

        Raises:
            DuplicateFileKeyError: If a record already uses this storage key
        """
        if key in self._ids_by_key:
            raise DuplicateFileKeyError(f"A file record already exists for key {key}")

        record = FileRecord(
            id=str(uuid4()),
            key=key,
            mimetype=mimetype,
            size=size,
            hash=hash,
            user_id=user_id,
        )
        self._records[record.id] = record
        self._ids_by_key[key] = record.id
        return record

    def find_by_id(self, file_id: str) -> Optional[FileRecord]:
        """Retrieve a record by its generated id."""
        return self._records.get(file_id)

    def find_by_key(self, key: str) -> Optional[FileRecord]:
        """Retrieve a record by storage key."""
        file_id = self._ids_by_key.get(key)
        return self._records.get(file_id) if file_id else None

    def delete_by_key(self, key: str) -> Optional[FileRecord]:
        """Remove and return the record for a storage key."""
        file_id = self._ids_by_key.pop(key, None)
        if file_id is None:
            return None
        return self._records.pop(file_id, None)

    def delete_by_id_and_owner(self, file_id: str, user_id: str) -> Optional[FileRecord]:
        """Remove and return a record only if it belongs to the user."""
        record = self._records.get(file_id)
        if record is None or record.user_id != user_id:
            return None
        return self.delete_by_key(record.key)


# Singleton instance
file_repository = FileRepository()

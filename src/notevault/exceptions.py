"""Custom exceptions for the NoteVault file pipeline."""


class NoteVaultError(Exception):
    """Base exception for the file pipeline."""
    pass


class FileValidationError(NoteVaultError):
    """Exception raised when uploaded content fails type validation."""
    pass


class FileTooLargeError(NoteVaultError):
    """Exception raised when an upload exceeds the size limit."""
    pass


class ConduitClosedError(NoteVaultError):
    """Exception raised when writing to an ended or destroyed conduit."""
    pass


class StorageError(NoteVaultError):
    """Exception raised when storage operations fail."""
    pass


class StorageAuthorizationError(StorageError):
    """Exception raised when the storage backend rejects our credentials."""
    pass


class StorageBackendError(StorageError):
    """Exception raised when the storage backend returns an error."""
    pass


class UploadPartError(StorageError):
    """Exception raised when a part upload fails after all retries."""
    pass


class LargeFileProtocolError(StorageError):
    """Exception raised when a large file upload breaks a backend rule."""
    pass


class UploadCancelledError(StorageError):
    """Exception raised when an upload was cancelled before finishing."""
    pass


class StorageObjectNotFoundError(StorageError):
    """Exception raised when no stored object matches a key."""
    pass


class FileRecordNotFoundError(NoteVaultError):
    """Exception raised when no metadata record matches a file id."""
    pass


class DuplicateFileKeyError(NoteVaultError):
    """Exception raised when a metadata record already uses a storage key."""
    pass

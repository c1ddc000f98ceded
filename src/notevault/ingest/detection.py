"""
Binary signature detection for uploaded content.

Determines the real type of an upload from its leading bytes rather than
from client-declared headers. Detection is delegated to libmagic through
python-magic; a short or featureless prefix yields no verdict so the caller
can keep buffering.
"""

import mimetypes
from dataclasses import dataclass
from typing import Dict, Iterable, Optional

# libmagic answers that mean "nothing recognised yet"
UNDETECTED_MIME_TYPES = {
    "application/octet-stream",
    "application/x-empty",
    "inode/x-empty",
}

# libmagic answers for any short printable prefix; only trusted once the
# buffer is full or the stream has ended
FALLBACK_MIME_TYPES = {"text/plain"}

# Preferred extensions where the mimetypes registry is ambiguous or silent
MIME_EXTENSION_MAP: Dict[str, str] = {
    # Images
    "image/png": "png",
    "image/jpeg": "jpg",
    "image/gif": "gif",
    "image/webp": "webp",
    "image/bmp": "bmp",
    "image/tiff": "tif",
    "image/svg+xml": "svg",
    "image/heic": "heic",
    "image/avif": "avif",
    # Documents
    "application/pdf": "pdf",
    "application/msword": "doc",
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document": "docx",
    "application/vnd.oasis.opendocument.text": "odt",
    "application/rtf": "rtf",
    "text/rtf": "rtf",
    "text/plain": "txt",
    "text/markdown": "md",
    "text/html": "html",
    "text/csv": "csv",
    "application/json": "json",
    # Audio / video
    "audio/mpeg": "mp3",
    "audio/wav": "wav",
    "audio/x-wav": "wav",
    "audio/ogg": "ogg",
    "audio/flac": "flac",
    "video/mp4": "mp4",
    "video/webm": "webm",
    # Archives
    "application/zip": "zip",
    "application/gzip": "gz",
    "application/x-tar": "tar",
    "application/x-7z-compressed": "7z",
}


@dataclass(frozen=True)
class DetectedType:
    """Content type recognised from a binary signature."""

    mime: str
    extension: str


def mime_to_extension(mime_type: str) -> Optional[str]:
    """
    Map a MIME type to a file extension without the leading dot.

    Args:
        mime_type: The MIME type string (e.g., "image/jpeg")

    Returns:
        Extension string, or None if the type is unknown

    Examples:
        >>> mime_to_extension("image/jpeg")
        'jpg'
        >>> mime_to_extension("application/x-does-not-exist") is None
        True
    """
    normalized_mime = mime_type.lower().split(";")[0].strip()

    if normalized_mime in MIME_EXTENSION_MAP:
        return MIME_EXTENSION_MAP[normalized_mime]

    guessed = mimetypes.guess_extension(normalized_mime)
    if guessed:
        return guessed.lstrip(".")
    return None


def is_known_mime_type(mime_type: str) -> bool:
    """Return True if the MIME type maps to a file extension."""
    return mime_to_extension(mime_type) is not None


def validate_mime_types(mime_types: Iterable[str]) -> frozenset[str]:
    """
    Check an allow-list of MIME types.

    Args:
        mime_types: MIME types to allow

    Returns:
        The allow-list as a frozenset

    Raises:
        ValueError: If any entry is not a known MIME type
    """
    allowed = frozenset(mime_types)
    unknown = sorted(mt for mt in allowed if not is_known_mime_type(mt))
    if unknown:
        raise ValueError(f"Unknown MIME types in allow-list: {', '.join(unknown)}")
    return allowed


def detect_file_type(buffer: bytes) -> Optional[DetectedType]:
    """
    Detect the content type of a byte prefix from its binary signature.

    Args:
        buffer: Leading bytes of the upload

    Returns:
        DetectedType, or None if the prefix is not recognised yet
    """
    if not buffer:
        return None

    import magic

    mime_type = magic.from_buffer(buffer, mime=True)
    if not mime_type or mime_type in UNDETECTED_MIME_TYPES:
        return None

    extension = mime_to_extension(mime_type)
    if extension is None:
        return None
    return DetectedType(mime=mime_type, extension=extension)

"""
Upload ingestion

Validates upload streams by binary signature before any byte reaches
storage, and provides the flow-controlled pipe that carries them onward.
"""

from notevault.ingest.conduit import ByteConduit, pipe
from notevault.ingest.detection import DetectedType, detect_file_type, mime_to_extension
from notevault.ingest.relay import ValidationRelay

__all__ = [
    "ByteConduit",
    "DetectedType",
    "ValidationRelay",
    "detect_file_type",
    "mime_to_extension",
    "pipe",
]

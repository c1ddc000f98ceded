"""Pytest configuration and shared fixtures."""

import hashlib
from typing import Any, AsyncIterator, Callable, Dict, Iterable, List, Optional

import httpx
import pytest

from notevault.ingest.detection import DetectedType
from notevault.storage.b2 import B2StorageEngine
from notevault.storage.b2_client import B2APIError, B2AuthError, B2Download, B2NotFoundError
from notevault.storage.file_store import FileRecord, FileRepository

UPLOAD_TIMESTAMP = 1700000000000

# Leading bytes a stub detector recognises, standing in for real signatures
SIGNATURES = {
    b"%PDF": DetectedType(mime="application/pdf", extension="pdf"),
    b"\x89PNG": DetectedType(mime="image/png", extension="png"),
    b"MZ": DetectedType(mime="application/x-dosexec", extension="exe"),
}


def signature_detector(buffer: bytes) -> Optional[DetectedType]:
    """Recognise a handful of magic numbers without libmagic."""
    for signature, detected in SIGNATURES.items():
        if buffer.startswith(signature):
            return detected
    return None


async def stream_of(chunks: Iterable[bytes]) -> AsyncIterator[bytes]:
    """Async byte source over a list of chunks."""
    for chunk in chunks:
        yield chunk


def split_bytes(data: bytes, size: int) -> List[bytes]:
    return [data[i:i + size] for i in range(0, len(data), size)]


class FakeB2Client:
    """In-memory stand-in for B2Client that records every call.

    Failures are injected per operation through ``fail`` (always raise),
    ``fail_times`` (raise for the next N calls) and ``expire_once``
    (raise a 401 on the next call only).
    """

    def __init__(self):
        self.calls: List[tuple] = []
        self.part_sizes: List[int] = []
        self.part_numbers: List[int] = []
        self.objects: Dict[str, Dict[str, Any]] = {}
        self.sessions: Dict[str, Dict[str, Any]] = {}
        self.fail: Dict[str, Exception] = {}
        self.fail_times: Dict[str, int] = {}
        self.expire_once: set = set()
        self.on_upload_part: Optional[Callable[[], None]] = None
        self._next_id = 0

    def call_names(self) -> List[str]:
        return [name for name, _ in self.calls]

    def count(self, name: str) -> int:
        return self.call_names().count(name)

    def _record(self, name: str, *args: Any) -> None:
        self.calls.append((name, args))
        if name in self.expire_once:
            self.expire_once.discard(name)
            raise B2AuthError(401, "expired_auth_token", "Authorization token has expired")
        if name in self.fail:
            raise self.fail[name]
        if self.fail_times.get(name, 0) > 0:
            self.fail_times[name] -= 1
            raise B2APIError(503, "service_unavailable", f"{name} temporarily unavailable")

    def _new_id(self, prefix: str) -> str:
        self._next_id += 1
        return f"{prefix}_{self._next_id}"

    async def authorize(self) -> Dict[str, Any]:
        self._record("authorize")
        return {
            "accountId": "account",
            "authorizationToken": "account-token",
            "apiUrl": "https://api.example.test",
            "downloadUrl": "https://download.example.test",
        }

    async def start_large_file(self, bucket_id: str, file_name: str, content_type: str = "b2/x-auto"):
        self._record("start_large_file", bucket_id, file_name, content_type)
        file_id = self._new_id("large")
        self.sessions[file_id] = {"fileName": file_name, "parts": {}, "contentType": content_type}
        return {"fileId": file_id, "fileName": file_name}

    async def get_upload_url(self, bucket_id: str):
        self._record("get_upload_url", bucket_id)
        return {"uploadUrl": "https://upload.example.test/regular", "authorizationToken": "upload-token"}

    async def get_upload_part_url(self, file_id: str):
        self._record("get_upload_part_url", file_id)
        return {
            "uploadUrl": f"https://upload.example.test/part/{file_id}",
            "authorizationToken": f"part-token-{len(self.calls)}",
            "fileId": file_id,
        }

    async def upload_part(self, upload_url: str, auth_token: str, part_number: int, data: bytes):
        if self.on_upload_part is not None:
            self.on_upload_part()
        self._record("upload_part", part_number, len(data))
        file_id = upload_url.rsplit("/", 1)[-1]
        sha1 = hashlib.sha1(data).hexdigest()
        self.sessions[file_id]["parts"][part_number] = data
        self.part_sizes.append(len(data))
        self.part_numbers.append(part_number)
        return {"fileId": file_id, "partNumber": part_number, "contentLength": len(data), "contentSha1": sha1}

    async def upload_file(self, upload_url, auth_token, file_name, data, content_type="b2/x-auto"):
        self._record("upload_file", file_name, len(data), content_type)
        file_id = self._new_id("file")
        sha1 = hashlib.sha1(data).hexdigest()
        self.objects[file_name] = {
            "fileId": file_id,
            "data": data,
            "contentSha1": sha1,
            "contentType": content_type,
        }
        return {
            "fileId": file_id,
            "fileName": file_name,
            "contentLength": len(data),
            "contentSha1": sha1,
            "uploadTimestamp": UPLOAD_TIMESTAMP,
        }

    async def finish_large_file(self, file_id: str, part_sha1_array: List[str]):
        self._record("finish_large_file", file_id, list(part_sha1_array))
        session = self.sessions.pop(file_id)
        data = b"".join(session["parts"][n] for n in sorted(session["parts"]))
        self.objects[session["fileName"]] = {
            "fileId": file_id,
            "data": data,
            "contentSha1": "none",
            "contentType": session["contentType"],
        }
        return {
            "fileId": file_id,
            "fileName": session["fileName"],
            "contentLength": len(data),
            "uploadTimestamp": UPLOAD_TIMESTAMP,
        }

    async def cancel_large_file(self, file_id: str):
        self._record("cancel_large_file", file_id)
        self.sessions.pop(file_id, None)
        return {"fileId": file_id}

    async def list_file_names(self, bucket_id, prefix="", start_file_name=None, max_file_count=1):
        self._record("list_file_names", prefix)
        names = sorted(name for name in self.objects if name.startswith(prefix))
        if start_file_name is not None:
            names = [name for name in names if name >= start_file_name]
        return {
            "files": [
                {"fileName": name, "fileId": self.objects[name]["fileId"]}
                for name in names[:max_file_count]
            ]
        }

    async def delete_file_version(self, file_id: str, file_name: str):
        self._record("delete_file_version", file_id, file_name)
        self.objects.pop(file_name, None)
        return {"fileId": file_id, "fileName": file_name}

    async def download_file_by_name(self, bucket_name: str, file_name: str) -> B2Download:
        self._record("download_file_by_name", bucket_name, file_name)
        stored = self.objects.get(file_name)
        if stored is None:
            raise B2NotFoundError(404, "not_found", f"File not present: {file_name}")
        headers = httpx.Headers(
            {
                "content-length": str(len(stored["data"])),
                "content-type": stored["contentType"],
                "x-bz-content-sha1": stored["contentSha1"],
                "x-bz-upload-timestamp": str(UPLOAD_TIMESTAMP),
                "x-bz-file-id": stored["fileId"],
            }
        )
        return B2Download(headers=headers, stream=stream_of(split_bytes(stored["data"], 4)))


@pytest.fixture
def fake_b2():
    """Recording fake of the B2 API client."""
    return FakeB2Client()


@pytest.fixture
def b2_engine(fake_b2):
    """B2 engine with a 10-byte chunk size and no retry backoff."""
    return B2StorageEngine(
        fake_b2,
        bucket_id="bucket-id",
        bucket_name="notes",
        bucket_region="us-west-004",
        chunk_size=10,
        retry_backoff=0,
    )


@pytest.fixture
def repository():
    """Fresh file metadata repository for each test."""
    return FileRepository()


def stored_records(repository: FileRepository) -> List[FileRecord]:
    """Every record currently held by a repository."""
    return list(repository._records.values())

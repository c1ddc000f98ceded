"""Tests for the storage service adapter."""

import hashlib

import pytest

from conftest import signature_detector, split_bytes, stored_records, stream_of
from notevault.exceptions import FileTooLargeError, FileValidationError, StorageBackendError
from notevault.ingest.detection import detect_file_type
from notevault.services.file_storage import FileStorageService
from notevault.services.upload_adapter import IncomingFile, StorageServiceAdapter
from notevault.storage.b2 import B2StorageEngine
from notevault.storage.b2_client import B2APIError

PDF_BYTES = b"%PDF-1.7\n" + bytes(range(40))


@pytest.fixture
def service(b2_engine, repository):
    return FileStorageService(b2_engine, repository)


def make_adapter(service, allowed=None, max_file_size=None):
    return StorageServiceAdapter(
        service,
        allowed_mime_types=allowed,
        max_buffer_size=4096,
        max_file_size=max_file_size,
        detector=signature_detector,
    )


def incoming(data, filename="report.pdf", chunk_size=7):
    return IncomingFile(field_name="file", filename=filename, stream=stream_of(split_bytes(data, chunk_size)))


@pytest.mark.asyncio
async def test_handle_file_stores_validated_content(service, repository, fake_b2):
    """Test a valid upload end to end."""
    adapter = make_adapter(service, allowed=["application/pdf"])

    uploaded = await adapter.handle_file(incoming(PDF_BYTES), "user-1")

    assert uploaded.mimetype == "application/pdf"
    assert uploaded.extension == "pdf"
    assert uploaded.original_name == "report.pdf"
    assert uploaded.name == "report"
    assert uploaded.size == len(PDF_BYTES)
    assert uploaded.user_id == "user-1"

    record = repository.find_by_id(uploaded.file_id)
    assert record.key == uploaded.key
    assert fake_b2.objects[uploaded.key]["data"] == PDF_BYTES


@pytest.mark.asyncio
async def test_detected_type_wins_over_declared_type(service, repository):
    """Test that the stored MIME type comes from the bytes, not the client."""
    adapter = make_adapter(service)
    file = incoming(PDF_BYTES, filename="photo.png")
    file.declared_content_type = "image/png"

    uploaded = await adapter.handle_file(file, "user-1")

    assert uploaded.mimetype == "application/pdf"
    assert repository.find_by_id(uploaded.file_id).mimetype == "application/pdf"


@pytest.mark.asyncio
async def test_disallowed_type_never_reaches_storage(service, repository, fake_b2):
    """Test that a rejected upload makes no storage call."""
    adapter = make_adapter(service, allowed=["application/pdf"])

    with pytest.raises(FileValidationError, match="Invalid file type"):
        await adapter.handle_file(incoming(b"MZ\x90\x00" + bytes(100), "setup.pdf"), "user-1")

    assert fake_b2.calls == []
    assert stored_records(repository) == []


@pytest.mark.asyncio
async def test_undetectable_content_rejected(service, fake_b2):
    """Test 4096 featureless bytes against a JPEG-only allow-list."""
    adapter = make_adapter(service, allowed=["image/jpeg"])

    with pytest.raises(FileValidationError, match="Could not detect file type"):
        await adapter.handle_file(incoming(bytes(4096), "photo.jpg", chunk_size=1024), "user-1")

    assert fake_b2.calls == []


@pytest.mark.asyncio
async def test_oversized_file_aborts_upload(service, repository, fake_b2):
    """Test that exceeding the size limit cancels the storage upload."""
    adapter = make_adapter(service, max_file_size=20)

    with pytest.raises(FileTooLargeError):
        await adapter.handle_file(incoming(PDF_BYTES), "user-1")

    assert stored_records(repository) == []
    assert fake_b2.objects == {}
    assert fake_b2.count("cancel_large_file") == 1


@pytest.mark.asyncio
async def test_storage_failure_propagates(service, repository, fake_b2):
    """Test that a provisioning failure reaches the caller."""
    fake_b2.fail["start_large_file"] = B2APIError(503, "service_unavailable", "busy")
    adapter = make_adapter(service)

    with pytest.raises(StorageBackendError):
        await adapter.handle_file(incoming(PDF_BYTES), "user-1")

    assert stored_records(repository) == []


@pytest.mark.asyncio
async def test_handle_files_is_all_or_nothing(service, repository, fake_b2):
    """Test that one bad file removes the files stored before it."""
    adapter = make_adapter(service, allowed=["application/pdf"])
    files = [
        incoming(PDF_BYTES, "first.pdf"),
        incoming(PDF_BYTES, "second.pdf"),
        incoming(b"MZ" + bytes(50), "third.pdf"),
    ]

    with pytest.raises(FileValidationError):
        await adapter.handle_files(files, "user-1")

    assert stored_records(repository) == []
    assert fake_b2.objects == {}


@pytest.mark.asyncio
async def test_handle_files_keeps_request_order(service):
    """Test that results follow the order of the request."""
    adapter = make_adapter(service)
    files = [incoming(PDF_BYTES, "a.pdf"), incoming(b"\x89PNG" + bytes(20), "b.png")]

    uploaded = await adapter.handle_files(files, "user-1")

    assert [item.original_name for item in uploaded] == ["a.pdf", "b.png"]
    assert [item.mimetype for item in uploaded] == ["application/pdf", "image/png"]


@pytest.mark.asyncio
async def test_remove_file_never_raises(service, fake_b2):
    """Test best-effort removal."""
    adapter = make_adapter(service)
    uploaded = await adapter.handle_file(incoming(PDF_BYTES), "user-1")
    fake_b2.fail["delete_file_version"] = B2APIError(500, "internal_error", "boom")

    await adapter.remove_file(uploaded, "user-1")


@pytest.mark.asyncio
async def test_small_png_takes_single_shot_path(fake_b2, repository):
    """Test a 2,048-byte PNG against a PNG/JPEG allow-list."""
    engine = B2StorageEngine(fake_b2, "bucket-id", "notes", "us-west-004", retry_backoff=0)
    adapter = make_adapter(FileStorageService(engine, repository), allowed=["image/png", "image/jpeg"])
    data = b"\x89PNG\r\n\x1a\n" + bytes(2040)

    uploaded = await adapter.handle_file(incoming(data, "scan.png", chunk_size=512), "user-1")

    record = repository.find_by_id(uploaded.file_id)
    assert uploaded.size == 2048
    assert record.hash == hashlib.sha1(data).hexdigest()
    assert fake_b2.count("upload_file") == 1
    assert fake_b2.count("upload_part") == 0


@pytest.mark.asyncio
async def test_pdf_in_small_chunks_with_libmagic(service, repository):
    """Test that libmagic types a PDF correctly when it arrives two bytes at a time."""
    pytest.importorskip("magic")
    adapter = StorageServiceAdapter(
        service, allowed_mime_types=["application/pdf"], max_buffer_size=4096, detector=detect_file_type
    )
    data = b"%PDF-1.7\n%\xe2\xe3\xcf\xd3\n1 0 obj\n<< /Type /Catalog >>\nendobj\n"

    uploaded = await adapter.handle_file(incoming(data, chunk_size=2), "user-1")

    assert uploaded.mimetype == "application/pdf"
    assert repository.find_by_id(uploaded.file_id).size == len(data)

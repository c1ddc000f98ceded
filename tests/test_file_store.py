"""Tests for the file metadata repository."""

import pytest

from notevault.exceptions import DuplicateFileKeyError


def create(repository, key="key-1", user_id="user-1"):
    return repository.create_file(
        key=key, mimetype="application/pdf", size=1024, hash="abc123", user_id=user_id
    )


def test_create_and_find(repository):
    """Test creating a record and reading it back by id and key."""
    record = create(repository)

    assert record.id
    assert record.created_at.tzinfo is not None
    assert repository.find_by_id(record.id) == record
    assert repository.find_by_key("key-1") == record


def test_generated_ids_are_unique(repository):
    """Test that every record gets its own id."""
    first = create(repository, key="key-1")
    second = create(repository, key="key-2")

    assert first.id != second.id


def test_duplicate_key_rejected(repository):
    """Test that storage keys are unique."""
    create(repository)

    with pytest.raises(DuplicateFileKeyError):
        create(repository)


def test_find_missing(repository):
    """Test lookups that match nothing."""
    assert repository.find_by_id("nope") is None
    assert repository.find_by_key("nope") is None


def test_delete_by_key(repository):
    """Test removing a record by storage key."""
    record = create(repository)

    assert repository.delete_by_key("key-1") == record
    assert repository.find_by_id(record.id) is None
    assert repository.delete_by_key("key-1") is None


def test_delete_by_id_and_owner(repository):
    """Test that only the owner can remove a record."""
    record = create(repository, user_id="owner")

    assert repository.delete_by_id_and_owner(record.id, "someone-else") is None
    assert repository.find_by_id(record.id) is not None

    assert repository.delete_by_id_and_owner(record.id, "owner") == record
    assert repository.find_by_id(record.id) is None


import pytest

from imagepipe.core.exceptions import StorageError, StorageObjectNotFoundError
from imagepipe.core.storage import LocalStorage


@pytest.mark.asyncio
async def test_write_read_roundtrip(storage):
    stored = await storage.write("jobs/abc/original.png", b"data", "image/png")

    assert stored.path == "jobs/abc/original.png"
    assert stored.url == "/static/storage/jobs/abc/original.png"
    assert await storage.read(stored.path) == b"data"
    assert await storage.exists(stored.path) is True


@pytest.mark.asyncio
async def test_read_missing_object_is_not_recoverable(storage):
    with pytest.raises(StorageObjectNotFoundError) as exc_info:
        await storage.read("jobs/missing.png")

    assert exc_info.value.recoverable is False


@pytest.mark.asyncio
async def test_delete(storage):
    await storage.write("a.bin", b"x")

    assert await storage.delete("a.bin") is True
    assert await storage.delete("a.bin") is False
    assert await storage.exists("a.bin") is False


@pytest.mark.asyncio
async def test_path_traversal_is_rejected(storage):
    with pytest.raises(StorageError) as exc_info:
        await storage.write("../outside.bin", b"x")

    assert exc_info.value.recoverable is False


def test_public_url_trailing_slash_is_normalized(tmp_path):
    storage = LocalStorage(str(tmp_path), "https://cdn.example.com/images/")

    assert storage.get_url("jobs/a.webp") == "https://cdn.example.com/images/jobs/a.webp"

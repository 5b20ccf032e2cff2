"""
Tests for upload checks, error sanitization, image storage, the metadata
cache and the arq job body.
"""
import os

import pytest

from bookstack.core.error_handler import is_sensitive_error, sanitize_error_message, status_code_for
from bookstack.core.exceptions import (
    BatchNotFoundError, BatchQueueingError, ManifestError, PersistenceError, UploadTooLargeError,
)
from bookstack.core.metadata_cache import MetadataCache
from bookstack.core.upload_validation import detect_image_type
from bookstack.jobs.worker import WorkerSettings, process_batch_job
from bookstack.services.image_store import LocalImageStore, safe_filename
from bookstack.services.manifest_parser import Manifest


@pytest.mark.parametrize("content,expected", [
    (b"\xff\xd8\xff\xe0rest", "image/jpeg"),
    (b"\x89PNG\r\n\x1a\nrest", "image/png"),
    (b"GIF89a...", "image/gif"),
    (b"RIFF\x00\x00\x00\x00WEBPVP8", "image/webp"),
    (b"RIFF\x00\x00\x00\x00WAVEfmt", None),
    (b"%PDF-1.7", None),
    (b"", None),
])
def test_detect_image_type(content, expected):
    assert detect_image_type(content) == expected


class TestErrorMapping:
    def test_status_codes(self):
        assert status_code_for(UploadTooLargeError("big", limit_bytes=1)) == 413
        assert status_code_for(ManifestError("bad")) == 400
        assert status_code_for(BatchNotFoundError("x")) == 404
        assert status_code_for(BatchQueueingError("down", batch_id="x")) == 503
        assert status_code_for(PersistenceError("down")) == 503

    def test_sensitive_messages_are_hidden(self):
        message = 'sqlalchemy.exc.OperationalError: File "/app/db.py"'
        assert is_sensitive_error(message)
        assert sanitize_error_message(message) == "An internal error occurred. Please try again later."
        assert sanitize_error_message(message, debug=True) == message

    def test_long_messages_are_truncated(self):
        assert sanitize_error_message("x" * 300).endswith("...")
        assert len(sanitize_error_message("x" * 300)) == 203


class TestImageStore:
    def test_safe_filename(self):
        assert safe_filename("../../etc/passwd") == "passwd"
        assert safe_filename("my cover (1).jpg") == "my_cover__1_.jpg"
        assert safe_filename(".hidden") == "hidden"
        assert safe_filename("") == "image"

    @pytest.mark.asyncio
    async def test_same_name_never_collides(self, tmp_path):
        store = LocalImageStore(str(tmp_path))

        first = await store.save("1.jpg", b"one")
        second = await store.save("1.jpg", b"two")

        assert first != second
        assert os.path.dirname(first) == str(tmp_path / "images")
        with open(second, "rb") as fh:
            assert fh.read() == b"two"

    @pytest.mark.asyncio
    async def test_delete(self, tmp_path):
        store = LocalImageStore(str(tmp_path))
        path = await store.save("1.jpg", b"one")

        await store.delete(path)
        await store.delete(path)

        assert not os.path.exists(path)


class TestMetadataCache:
    def test_ttl(self):
        now = [0.0]
        cache = MetadataCache(ttl_seconds=10, clock=lambda: now[0])
        cache.set("isbn", {"title": "A"})

        now[0] = 5
        assert cache.get("ISBN ") == {"title": "A"}
        now[0] = 11
        assert cache.get("isbn") is None

    def test_lru_eviction(self):
        cache = MetadataCache(max_size=2)
        cache.set("a", 1)
        cache.set("b", 2)
        cache.get("a")
        cache.set("c", 3)

        assert cache.get("b") is None
        assert cache.get("a") == 1
        stats = cache.get_stats()
        assert stats["evictions"] == 1
        assert stats["size"] == 2


@pytest.mark.asyncio
async def test_worker_job_runs_batch(pipeline_factory, catalog_provider):
    pipeline = await pipeline_factory([catalog_provider])
    accepted = await pipeline.coordinator.accept(Manifest(records=[{"title": "Dune", "author": "Frank Herbert"}]))
    await pipeline.runner.drain()

    # A second run over the same batch finds nothing pending
    result = await process_batch_job({"pipeline": pipeline}, accepted.batch_id)

    assert result == {
        "batch_id": accepted.batch_id,
        "status": "completed",
        "successful_records": 1,
        "failed_records": 0,
    }
    assert len(catalog_provider.calls) == 1


def test_worker_settings():
    assert process_batch_job in WorkerSettings.functions
    assert WorkerSettings.max_tries == 1

"""
End-to-end tests for batch intake: accept, background run, final status.
"""
import os

import pytest

from bookstack.core.exceptions import (
    BatchNotFoundError, BatchQueueingError, ManifestError, PersistenceError, ProviderResponseError,
)
from bookstack.jobs.runner import JobRunner
from bookstack.repositories.base import BatchStatus, RecordStatus
from bookstack.repositories.memory import InMemoryIntakeRepository
from bookstack.services.image_store import LocalImageStore
from bookstack.services.manifest_parser import Manifest, UploadedImage
from tests.conftest import FakeProvider

JPEG = b"\xff\xd8\xff\xe0" + b"\x00" * 16


async def accept_and_run(pipeline, records, **manifest_options):
    accepted = await pipeline.coordinator.accept(Manifest(records=records, **manifest_options))
    await pipeline.runner.drain()
    report = await pipeline.status.get_status(accepted.batch_id)
    return accepted, report


class BrokenInsertRepository(InMemoryIntakeRepository):
    async def insert_batch(self, batch, records):
        raise PersistenceError("database unavailable")


class RecordingImageStore(LocalImageStore):
    def __init__(self, root):
        super().__init__(root)
        self.saved = []

    async def save(self, filename, content):
        path = await super().save(filename, content)
        self.saved.append(path)
        return path


class RefusingRunner(JobRunner):
    async def submit(self, job):
        raise ConnectionError("redis down")


class TestAcceptAndRun:
    """A mixed batch ends completed with per-record outcomes."""

    @pytest.mark.asyncio
    async def test_one_invalid_record_in_three(self, pipeline_factory, catalog_provider):
        pipeline = await pipeline_factory([catalog_provider])
        records = [
            {"isbn": "9780306406157", "title": "Waves", "author": "Jane Doe"},
            {"title": "Zero Copies", "author": "Sam Roe", "quantity": 0},
            {"title": "Third", "author": "Ann Poe", "quantity": "2"},
        ]

        accepted, report = await accept_and_run(pipeline, records)

        assert accepted.total == 3
        assert accepted.queued == 2
        assert accepted.failed == 1
        assert accepted.errors[0]["row"] == 2
        assert accepted.job_id is not None

        assert report.status == BatchStatus.COMPLETED
        assert report.total_records == 3
        assert report.processed_records == 3
        assert report.successful_records == 2
        assert report.failed_records == 1
        assert report.progress == 100.0
        assert len(report.error_log) == 1
        assert report.error_log[0]["row"] == 2
        assert "Quantity must be between 1 and 1000" in report.error_log[0]["error"]
        assert report.completed_at is not None

    @pytest.mark.asyncio
    async def test_huge_quantity_fails_only_its_row(self, pipeline_factory, catalog_provider):
        pipeline = await pipeline_factory([catalog_provider])

        accepted, report = await accept_and_run(pipeline, [
            {"title": "A", "author": "Ann Poe", "quantity": "9" * 5000},
            {"title": "B", "author": "Bo Roe"},
        ])

        assert (accepted.queued, accepted.failed) == (1, 1)
        assert accepted.errors[0]["row"] == 1
        assert report.status == BatchStatus.COMPLETED
        assert (report.successful_records, report.failed_records) == (1, 1)

    @pytest.mark.asyncio
    async def test_many_records_across_sub_batches(self, pipeline_factory, catalog_provider):
        pipeline = await pipeline_factory([catalog_provider], BATCH_CHUNK_SIZE=4, BATCH_MAX_CONCURRENCY=2)
        records = [{"title": f"Book {n}", "author": f"Author {chr(65 + n % 26)}"} for n in range(25)]

        accepted, report = await accept_and_run(pipeline, records)

        assert report.successful_records == 25
        assert report.failed_records == 0
        completed = await pipeline.status.queue(accepted.batch_id, RecordStatus.COMPLETED)
        assert len(completed) == 25
        assert all(r.assigned_shelf and r.assigned_section for r in completed)
        assert all(r.enrichment_source == "catalog" for r in completed)
        placed = sum(loc.current_count for loc in await pipeline.ledger.all())
        assert placed == 25

    @pytest.mark.asyncio
    async def test_invalid_isbn_is_never_enriched(self, pipeline_factory, catalog_provider):
        pipeline = await pipeline_factory([catalog_provider])

        accepted, report = await accept_and_run(pipeline, [{"isbn": "9780306406158", "title": "Typo"}])

        assert catalog_provider.calls == []
        assert accepted.job_id is None
        assert report.status == BatchStatus.COMPLETED
        assert report.failed_records == 1
        assert report.error_log[0] == {
            "row": 1, "identifier": "9780306406158", "error": "Row 1: Invalid ISBN format: 9780306406158",
        }

    @pytest.mark.asyncio
    async def test_provider_values_win_and_drive_placement(self, pipeline_factory):
        provider = FakeProvider("catalog", [{
            "title": "Cosmos", "author": "Carl Sagan", "genre": "Science", "pages": 396, "publisher": None,
        }])
        pipeline = await pipeline_factory([provider])
        await pipeline.ledger.configure("G", "01", max_capacity=10, genre_preference="Science")

        accepted, _ = await accept_and_run(pipeline, [{
            "isbn": "9780306406157", "title": "cosmos", "author": "someone else",
            "genre": "Poetry", "publisher": "Random House",
        }])

        [record] = await pipeline.status.queue(accepted.batch_id)
        assert (record.assigned_shelf, record.assigned_section) == ("G", "01")
        assert record.placement_reason == "genre_match"
        [item] = pipeline.repository.inventory
        assert item.title == "Cosmos"
        assert item.author == "Carl Sagan"
        assert item.publisher == "Random House"
        assert item.pages == 396

    @pytest.mark.asyncio
    async def test_degraded_enrichment_still_places(self, pipeline_factory):
        down = FakeProvider("catalog", [ProviderResponseError("no match", provider="catalog")])
        pipeline = await pipeline_factory([down])

        accepted, report = await accept_and_run(
            pipeline, [{"title": "Obscure Zine", "author": "Kim Ng", "shelf_location": "B-03"}],
        )

        assert report.successful_records == 1
        [record] = await pipeline.status.queue(accepted.batch_id)
        assert record.enrichment_status == "degraded"
        assert record.enrichment_source is None
        assert record.error_message == "Enrichment degraded: catalog: no match"
        assert (record.assigned_shelf, record.assigned_section) == ("B", "03")
        assert record.placement_reason == "manual_preference"

    @pytest.mark.asyncio
    async def test_repeated_isbn_adds_quantity(self, pipeline_factory, catalog_provider):
        pipeline = await pipeline_factory([catalog_provider])

        await accept_and_run(pipeline, [
            {"isbn": "9780306406157", "quantity": 2},
            {"isbn": "978-0-306-40615-7", "quantity": 3},
        ])

        [item] = pipeline.repository.inventory
        assert item.quantity == 5

    @pytest.mark.asyncio
    async def test_failed_persist_releases_capacity(self, pipeline_factory, catalog_provider):
        class FlakyInventory(InMemoryIntakeRepository):
            async def upsert_inventory_item(self, item):
                if item.title == "Doomed":
                    raise PersistenceError("disk full")
                await super().upsert_inventory_item(item)

        pipeline = await pipeline_factory([catalog_provider], repository=FlakyInventory())

        accepted, report = await accept_and_run(pipeline, [
            {"title": "Fine", "author": "Ada Byron", "quantity": 2},
            {"title": "Doomed", "author": "Ada Byron", "quantity": 4},
        ])

        assert report.successful_records == 1
        assert report.error_log == [{"row": 2, "identifier": "Doomed", "error": "disk full"}]
        [failed] = await pipeline.status.queue(accepted.batch_id, RecordStatus.FAILED)
        assert failed.enrichment_attempts == 1
        assert (await pipeline.ledger.get("B", "01")).current_count == 2

    @pytest.mark.asyncio
    async def test_images_are_stored_and_matched(self, pipeline_factory, catalog_provider):
        pipeline = await pipeline_factory([catalog_provider])

        accepted, _ = await accept_and_run(
            pipeline,
            [{"isbn": "9780306406157"}, {"title": "By Row"}, {"title": "No Image"}],
            images=[
                UploadedImage("isbn_9780306406157.jpg", JPEG),
                UploadedImage("2.jpg", JPEG),
                UploadedImage("99.jpg", JPEG),
            ],
        )

        first, second, third = await pipeline.status.queue(accepted.batch_id)
        assert first.user_image_reference.endswith("isbn_9780306406157.jpg")
        assert second.user_image_reference.endswith("2.jpg")
        assert third.user_image_reference is None
        assert os.path.exists(first.user_image_reference)


class TestStructuralErrors:
    """Malformed or oversized manifests write nothing."""

    @pytest.mark.asyncio
    async def test_malformed_json(self, pipeline_factory):
        pipeline = await pipeline_factory()
        with pytest.raises(ManifestError):
            await pipeline.coordinator.accept(Manifest(filename="m.json", content=b"[{"))
        assert pipeline.repository.batches == {}

    @pytest.mark.asyncio
    async def test_empty(self, pipeline_factory):
        pipeline = await pipeline_factory()
        with pytest.raises(ManifestError, match="Empty batch upload"):
            await pipeline.coordinator.accept(Manifest(records=[]))
        assert pipeline.repository.batches == {}

    @pytest.mark.asyncio
    async def test_too_many_records(self, pipeline_factory):
        pipeline = await pipeline_factory(MAX_BATCH_RECORDS=2)
        with pytest.raises(ManifestError, match="Batch too large"):
            await pipeline.coordinator.accept(Manifest(records=[{"title": str(n)} for n in range(3)]))
        assert pipeline.repository.records == {}

    @pytest.mark.asyncio
    async def test_too_many_images(self, pipeline_factory):
        pipeline = await pipeline_factory(MAX_IMAGES_PER_BATCH=1)
        images = [UploadedImage(f"{n}.jpg", JPEG) for n in range(2)]
        with pytest.raises(ManifestError, match="Too many images"):
            await pipeline.coordinator.accept(Manifest(records=[{"title": "A"}], images=images))


class TestQueueingFailures:
    """A batch that cannot be queued is recorded as failed."""

    @pytest.mark.asyncio
    async def test_insert_failure(self, pipeline_factory):
        pipeline = await pipeline_factory(repository=BrokenInsertRepository())

        with pytest.raises(BatchQueueingError) as exc_info:
            await pipeline.coordinator.accept(Manifest(records=[{"title": "A"}, {"title": "B"}]))

        batch_id = exc_info.value.batch_id
        report = await pipeline.status.get_status(batch_id)
        assert report.status == BatchStatus.FAILED
        assert report.total_records == 2
        assert report.error_log[-1]["error"] == "database unavailable"
        assert pipeline.repository.records == {}

    @pytest.mark.asyncio
    async def test_insert_failure_removes_stored_images(self, pipeline_factory):
        pipeline = await pipeline_factory(repository=BrokenInsertRepository())
        store = RecordingImageStore(pipeline.settings.UPLOAD_DIR)
        pipeline.coordinator.image_store = store
        images = [UploadedImage("1.jpg", JPEG), UploadedImage("2.jpg", JPEG)]

        with pytest.raises(BatchQueueingError):
            await pipeline.coordinator.accept(Manifest(records=[{"title": "A"}, {"title": "B"}], images=images))

        assert len(store.saved) == 2
        assert not any(os.path.exists(path) for path in store.saved)
        assert os.listdir(store.directory) == []

    @pytest.mark.asyncio
    async def test_job_submit_failure(self, pipeline_factory, catalog_provider):
        pipeline = await pipeline_factory([catalog_provider])
        pipeline.coordinator.runner = RefusingRunner()

        with pytest.raises(BatchQueueingError) as exc_info:
            await pipeline.coordinator.accept(Manifest(records=[{"title": "A"}]))

        report = await pipeline.status.get_status(exc_info.value.batch_id)
        assert report.status == BatchStatus.FAILED
        assert report.failed_records == 1
        assert report.error_log[0]["error"] == "Batch could not be scheduled"
        assert catalog_provider.calls == []


@pytest.mark.asyncio
async def test_run_unknown_batch(pipeline_factory):
    pipeline = await pipeline_factory()
    with pytest.raises(BatchNotFoundError):
        await pipeline.coordinator.run_batch("does-not-exist")


@pytest.mark.asyncio
async def test_rerun_skips_finished_records(pipeline_factory, catalog_provider):
    pipeline = await pipeline_factory([catalog_provider])
    accepted, _ = await accept_and_run(pipeline, [{"title": "Once", "author": "Ada Byron"}])

    outcomes = await pipeline.coordinator.run_batch(accepted.batch_id)

    assert outcomes == []
    assert len(catalog_provider.calls) == 1
    assert (await pipeline.ledger.get("B", "01")).current_count == 1

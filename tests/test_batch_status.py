"""
Tests for the batch status aggregator.
"""
import pytest

from bookstack.core.exceptions import BatchNotFoundError
from bookstack.repositories.base import Batch, BatchStatus, NewRecord, RecordStatus
from bookstack.repositories.memory import InMemoryIntakeRepository
from bookstack.services.batch_status import BatchStatusAggregator, progress_of
from bookstack.services.capacity_ledger import CapacityLedger

OUTCOMES = {
    1: (RecordStatus.COMPLETED, None),
    2: (RecordStatus.FAILED, "Row 2: bad quantity"),
    3: (RecordStatus.COMPLETED, None),
    4: (RecordStatus.FAILED, "lookup failed"),
    5: (RecordStatus.COMPLETED, None),
}


async def seeded(batch_id: str = "batch-1"):
    repository = InMemoryIntakeRepository()
    aggregator = BatchStatusAggregator(repository, CapacityLedger(repository))
    records = [NewRecord(row_number=row, title=f"Book {row}") for row in OUTCOMES]
    await repository.insert_batch(
        Batch(id=batch_id, filename="books.csv", total_records=len(records), status=BatchStatus.PROCESSING),
        records,
    )
    return repository, aggregator


async def finish_in_order(repository, order):
    by_row = {r.row_number: r for r in await repository.list_records()}
    for row in order:
        status, error = OUTCOMES[row]
        await repository.update_record(by_row[row].id, processing_status=status, error_message=error)


@pytest.mark.asyncio
async def test_counts_do_not_depend_on_completion_order():
    reports = []
    for order in ([1, 2, 3, 4, 5], [5, 4, 3, 2, 1], [2, 5, 1, 4, 3]):
        repository, aggregator = await seeded()
        await finish_in_order(repository, order)
        reports.append(await aggregator.finalize("batch-1"))

    for report in reports:
        assert report.status == BatchStatus.COMPLETED
        assert report.total_records == 5
        assert report.processed_records == 5
        assert report.successful_records == 3
        assert report.failed_records == 2
        assert report.progress == 100.0
        assert [e["row"] for e in report.error_log] == [2, 4]
        assert report.error_log[1] == {"row": 4, "identifier": "Book 4", "error": "lookup failed"}


@pytest.mark.asyncio
async def test_progress_while_running():
    repository, aggregator = await seeded()
    await finish_in_order(repository, [1, 2])

    report = await aggregator.get_status("batch-1")

    assert report.status == BatchStatus.PROCESSING
    assert report.processed_records == 2
    assert report.progress == 40.0
    assert report.queue_status == {"pending": 3, "processing": 0, "completed": 1, "failed": 1}
    assert report.completed_at is None


@pytest.mark.asyncio
async def test_finalize_persists_counts():
    repository, aggregator = await seeded()
    await finish_in_order(repository, [1, 2, 3, 4, 5])

    await aggregator.finalize("batch-1", BatchStatus.FAILED)

    batch = await repository.get_batch("batch-1")
    assert batch.status == BatchStatus.FAILED
    assert batch.successful_records == 3
    assert batch.failed_records == 2
    assert len(batch.error_log) == 2
    assert batch.completed_at is not None


@pytest.mark.asyncio
async def test_batch_without_records_uses_stored_counts():
    repository = InMemoryIntakeRepository()
    aggregator = BatchStatusAggregator(repository, CapacityLedger(repository))
    await repository.record_failed_batch(Batch(
        id="lost", total_records=7, error_log=[{"row": None, "identifier": None, "error": "db down"}],
    ))

    report = await aggregator.get_status("lost")

    assert report.status == BatchStatus.FAILED
    assert report.total_records == 7
    assert report.progress == 100.0
    assert report.error_log[0]["error"] == "db down"


@pytest.mark.asyncio
async def test_unknown_batch():
    repository = InMemoryIntakeRepository()
    aggregator = BatchStatusAggregator(repository, CapacityLedger(repository))
    with pytest.raises(BatchNotFoundError):
        await aggregator.get_status("nope")


@pytest.mark.asyncio
async def test_queue_filters_by_status():
    repository, aggregator = await seeded()
    await finish_in_order(repository, [2, 4])

    failed = await aggregator.queue("batch-1", RecordStatus.FAILED)
    pending = await aggregator.queue(status=RecordStatus.PENDING, limit=2)

    assert [r.row_number for r in failed] == [2, 4]
    assert [r.row_number for r in pending] == [1, 3]


@pytest.mark.asyncio
async def test_capacity_report(ledger, repository):
    aggregator = BatchStatusAggregator(repository, ledger)
    await ledger.configure("A", "01", max_capacity=2)
    await ledger.increment("A", "01", 3)

    report = await aggregator.capacity_report()

    assert len(report.over_capacity) == 1
    assert report.utilization == pytest.approx(1.5)


def test_progress_of():
    assert progress_of({"completed": 1, "failed": 0, "pending": 2}, 3) == 33.33
    assert progress_of({}, 0) == 0.0

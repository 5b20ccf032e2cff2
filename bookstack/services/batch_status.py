"""
Batch Status Aggregator

Reports batch progress from persisted per-record statuses, never from
in-memory counters, so the answer does not depend on the order in which
records finished.

    progress = (completed + failed) / total * 100
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from bookstack.core.exceptions import BatchNotFoundError
from bookstack.core.utils import utcnow
from bookstack.repositories.base import BatchStatus, IncomingRecord, IntakeRepository, RecordStatus
from bookstack.services.capacity_ledger import CapacityLedger, CapacityReport

logger = logging.getLogger(__name__)

DEFAULT_QUEUE_LIMIT = 100


@dataclass
class BatchStatusReport:
    batch_id: str
    status: BatchStatus
    filename: Optional[str] = None
    total_records: int = 0
    processed_records: int = 0
    successful_records: int = 0
    failed_records: int = 0
    progress: float = 0.0
    queue_status: Dict[str, int] = field(default_factory=dict)
    error_log: List[Dict[str, Any]] = field(default_factory=list)
    created_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


def error_log_entry(record: IncomingRecord) -> Dict[str, Any]:
    return {
        "row": record.row_number,
        "identifier": record.identifier,
        "error": record.error_message or "Unknown error",
    }


def progress_of(counts: Dict[str, int], total: int) -> float:
    if not total:
        return 0.0
    done = counts.get(RecordStatus.COMPLETED.value, 0) + counts.get(RecordStatus.FAILED.value, 0)
    return round(done / total * 100, 2)


class BatchStatusAggregator:
    def __init__(self, repository: IntakeRepository, ledger: CapacityLedger):
        self.repository = repository
        self.ledger = ledger

    async def _derive(self, batch_id: str):
        counts = await self.repository.count_records_by_status(batch_id)
        failed = await self.repository.list_failed_records(batch_id)
        return counts, [error_log_entry(record) for record in failed]

    async def get_status(self, batch_id: str) -> BatchStatusReport:
        """
        Raises:
            BatchNotFoundError: unknown batch id
        """
        batch = await self.repository.get_batch(batch_id)
        if batch is None:
            raise BatchNotFoundError(batch_id)

        counts, error_log = await self._derive(batch_id)
        total = sum(counts.values())
        if not total:
            # A batch that failed while queuing has no record rows
            return BatchStatusReport(
                batch_id=batch.id,
                status=batch.status,
                filename=batch.filename,
                total_records=batch.total_records,
                processed_records=batch.processed_records,
                successful_records=batch.successful_records,
                failed_records=batch.failed_records,
                progress=100.0 if batch.status.is_terminal else 0.0,
                queue_status=counts,
                error_log=list(batch.error_log),
                created_at=batch.created_at,
                completed_at=batch.completed_at,
            )

        completed = counts.get(RecordStatus.COMPLETED.value, 0)
        failed = counts.get(RecordStatus.FAILED.value, 0)
        return BatchStatusReport(
            batch_id=batch.id,
            status=batch.status,
            filename=batch.filename,
            total_records=total,
            processed_records=completed + failed,
            successful_records=completed,
            failed_records=failed,
            progress=progress_of(counts, total),
            queue_status=counts,
            error_log=error_log,
            created_at=batch.created_at,
            completed_at=batch.completed_at,
        )

    async def finalize(self, batch_id: str, status: BatchStatus = BatchStatus.COMPLETED) -> BatchStatusReport:
        """Write terminal counts and error log derived from record statuses."""
        counts, error_log = await self._derive(batch_id)
        completed = counts.get(RecordStatus.COMPLETED.value, 0)
        failed = counts.get(RecordStatus.FAILED.value, 0)
        await self.repository.update_batch(
            batch_id,
            status=status,
            total_records=sum(counts.values()),
            processed_records=completed + failed,
            successful_records=completed,
            failed_records=failed,
            error_log=error_log,
            completed_at=utcnow(),
        )
        logger.info(
            f"[BatchStatus] Batch {batch_id} {status.value}: "
            f"{completed} succeeded, {failed} failed"
        )
        return await self.get_status(batch_id)

    async def queue(
        self,
        batch_id: Optional[str] = None,
        status: Optional[RecordStatus] = None,
        limit: int = DEFAULT_QUEUE_LIMIT,
    ) -> List[IncomingRecord]:
        return await self.repository.list_records(batch_id=batch_id, status=status, limit=limit)

    async def capacity_report(self) -> CapacityReport:
        report = await self.ledger.report()
        for location in report.over_capacity:
            logger.warning(
                f"[BatchStatus] {location.shelf_location}/{location.section} over capacity: "
                f"{location.current_count}/{location.max_capacity}"
            )
        return report

"""
Batch Intake Coordinator

accept() runs inside the upload request and returns as soon as the batch is
queued:

    parse -> batch size check -> validate each record -> store images
          -> one transaction: batch row + every record -> submit job

run_batch() is the job body, executed by the job runner:

    claim pending records -> BatchProcessor(process_record) -> finalize

process_record: enrich -> place -> persist inventory -> mark completed.
Any failure marks the record failed and gives back reserved capacity.
"""
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from bookstack.adapters.base import ProviderQuery
from bookstack.core.exceptions import (
    BatchNotFoundError, BatchQueueingError, BookstackError, ManifestError, PersistenceError,
    RecordValidationError,
)
from bookstack.core.utils import new_id, utcnow
from bookstack.jobs.runner import PROCESS_BATCH_JOB, Job, JobRunner
from bookstack.repositories.base import (
    Batch, BatchStatus, IncomingRecord, IntakeRepository, InventoryItem, NewRecord, RecordStatus,
)
from bookstack.services import record_validator as rv
from bookstack.services.batch_processor import BatchProcessor
from bookstack.services.batch_status import BatchStatusAggregator
from bookstack.services.capacity_ledger import CapacityLedger
from bookstack.services.enrichment_chain import EnrichedMetadata, EnrichmentChain, EnrichmentStatus
from bookstack.services.image_store import ImageStore
from bookstack.services.manifest_parser import (
    Manifest, UploadedImage, build_image_map, match_image, unknown_columns,
)
from bookstack.services.placement import PlacementEngine, PlacementRequest, parse_location

logger = logging.getLogger(__name__)

DEFAULT_MAX_IMAGES = 100
MAX_URL_LENGTH = 500


@dataclass
class BatchAccepted:
    batch_id: str
    total: int
    queued: int
    failed: int
    errors: List[Dict[str, Any]] = field(default_factory=list)
    job_id: Optional[str] = None
    status: BatchStatus = BatchStatus.PROCESSING


@dataclass
class RecordOutcome:
    record_id: int
    row_number: int
    status: RecordStatus
    shelf: Optional[str] = None
    section: Optional[str] = None
    placement_reason: Optional[str] = None
    enrichment_source: Optional[str] = None
    error: Optional[str] = None


def _fit(value: Any, limit: int) -> Optional[str]:
    """Plain text capped to a column width; None for blanks and non-scalars."""
    if value is None or isinstance(value, (dict, list)):
        return None
    text = str(value).strip()
    return text[:limit] if text else None


def _invalid_record(raw: Dict[str, Any], result: rv.ValidationResult) -> NewRecord:
    """Keep what we can of a rejected row so the queue shows what was sent."""
    return NewRecord(
        row_number=result.row_number,
        raw_data=raw,
        isbn=_fit(raw.get("isbn"), rv.MAX_IDENTIFIER_LENGTH),
        upc=_fit(raw.get("upc"), rv.MAX_IDENTIFIER_LENGTH),
        asin=_fit(raw.get("asin"), rv.MAX_IDENTIFIER_LENGTH),
        title=_fit(raw.get("title"), rv.MAX_TITLE_LENGTH),
        author=_fit(raw.get("author"), rv.MAX_AUTHOR_LENGTH),
        processing_status=RecordStatus.FAILED,
        error_message="; ".join(result.errors),
    )


def _error_message(error: BaseException) -> str:
    if isinstance(error, BookstackError):
        return error.message
    return f"{type(error).__name__}: {error}"


class BatchIntakeCoordinator:
    def __init__(
        self,
        repository: IntakeRepository,
        chain: EnrichmentChain,
        placement: PlacementEngine,
        ledger: CapacityLedger,
        status: BatchStatusAggregator,
        processor: BatchProcessor,
        runner: JobRunner,
        image_store: Optional[ImageStore] = None,
        max_batch_records: int = rv.DEFAULT_MAX_BATCH_RECORDS,
        max_images: int = DEFAULT_MAX_IMAGES,
    ):
        self.repository = repository
        self.chain = chain
        self.placement = placement
        self.ledger = ledger
        self.status = status
        self.processor = processor
        self.runner = runner
        self.image_store = image_store
        self.max_batch_records = max_batch_records
        self.max_images = max_images

    # =========================================================================
    # ACCEPT
    # =========================================================================

    async def accept(self, manifest: Manifest) -> BatchAccepted:
        """
        Validate and queue a manifest; processing happens in a background job.

        Raises:
            ManifestError: malformed, empty or oversized manifest (nothing written)
            BatchQueueingError: the batch could not be queued; a failed batch
                row was recorded under the returned batch_id
        """
        raw_records = manifest.parse()
        rv.validate_batch_size(raw_records, self.max_batch_records)
        if len(manifest.images) > self.max_images:
            raise ManifestError(
                f"Too many images: {len(manifest.images)} (max {self.max_images})",
                details={"images": len(manifest.images), "max_images": self.max_images},
            )

        extra = unknown_columns(raw_records)
        if extra:
            logger.info(f"[Intake] Ignoring unknown manifest columns: {', '.join(extra)}")

        records: List[NewRecord] = []
        errors: List[Dict[str, Any]] = []
        for row_number, raw in enumerate(raw_records, start=1):
            result = rv.validate_record(raw, row_number)
            if result.is_valid:
                sanitized = result.record
                records.append(NewRecord(
                    row_number=row_number,
                    raw_data=raw,
                    isbn=sanitized.isbn,
                    upc=sanitized.upc,
                    asin=sanitized.asin,
                    title=sanitized.title,
                    author=sanitized.author,
                    publisher=sanitized.publisher,
                    description=sanitized.description,
                    genre=sanitized.genre,
                    format=sanitized.format,
                    condition=sanitized.condition,
                    quantity=sanitized.quantity,
                    shelf_preference=sanitized.shelf_location,
                ))
            else:
                records.append(_invalid_record(raw, result))
                errors.append({"row": row_number, "identifier": rv.identifier_of(raw), "errors": result.errors})

        failed = len(errors)
        queued = len(records) - failed
        batch = Batch(
            id=new_id(),
            filename=manifest.filename,
            total_records=len(records),
            processed_records=failed,
            failed_records=failed,
            status=BatchStatus.PROCESSING,
            error_log=[
                {"row": e["row"], "identifier": e["identifier"], "error": "; ".join(e["errors"])}
                for e in errors
            ],
            created_at=utcnow(),
        )

        stored_images: List[str] = []
        try:
            await self._attach_images(records, manifest.images, stored_images)
            await self.repository.insert_batch(batch, records)
        except Exception as e:
            await self._discard_images(stored_images)
            await self._record_queueing_failure(batch, e)
            raise BatchQueueingError(
                f"Failed to queue batch: {_error_message(e)}", batch_id=batch.id,
            ) from e

        logger.info(
            f"[Intake] Batch {batch.id} accepted: {len(records)} record(s), "
            f"{queued} queued, {failed} rejected at validation"
        )

        job_id = None
        if queued:
            job_id = await self._submit(batch.id)
        else:
            await self.status.finalize(batch.id, BatchStatus.COMPLETED)

        return BatchAccepted(
            batch_id=batch.id,
            total=len(records),
            queued=queued,
            failed=failed,
            errors=errors,
            job_id=job_id,
            status=BatchStatus.PROCESSING if queued else BatchStatus.COMPLETED,
        )

    async def _attach_images(
        self, records: List[NewRecord], images: List[UploadedImage], stored_images: List[str],
    ) -> None:
        if not images or self.image_store is None:
            return
        image_map = build_image_map(image.filename for image in images)
        by_filename = {image.filename: image for image in images}
        stored: Dict[str, str] = {}
        for record in records:
            if record.processing_status == RecordStatus.FAILED:
                continue
            filename = match_image(record.raw_data, record.row_number, image_map)
            if filename is None:
                continue
            if filename not in stored:
                image = by_filename[filename]
                stored[filename] = await self.image_store.save(image.filename, image.content)
                stored_images.append(stored[filename])
            record.user_image_reference = stored[filename][:MAX_URL_LENGTH]
        unmatched = set(by_filename) - set(stored)
        if unmatched:
            logger.info(f"[Intake] {len(unmatched)} image(s) matched no record: {', '.join(sorted(unmatched))}")

    async def _discard_images(self, references: List[str]) -> None:
        for reference in references:
            try:
                await self.image_store.delete(reference)
            except PersistenceError as e:
                logger.warning(f"[Intake] Could not remove image {reference}: {e.message}")

    async def _record_queueing_failure(self, batch: Batch, error: BaseException) -> None:
        logger.error(f"[Intake] Queuing batch {batch.id} failed: {error!r}")
        batch.status = BatchStatus.FAILED
        batch.completed_at = utcnow()
        batch.error_log = batch.error_log + [{"row": None, "identifier": None, "error": _error_message(error)}]
        try:
            await self.repository.record_failed_batch(batch)
        except Exception:
            # The caller still gets BatchQueueingError with this id
            logger.exception(f"[Intake] Could not record failed batch {batch.id}")

    async def _submit(self, batch_id: str) -> str:
        job = Job(name=PROCESS_BATCH_JOB, args=[batch_id])
        try:
            await self.runner.submit(job)
        except Exception as e:
            logger.error(f"[Intake] Could not submit job for batch {batch_id}: {e!r}")
            await self.repository.fail_unresolved_records(batch_id, "Batch could not be scheduled")
            await self.status.finalize(batch_id, BatchStatus.FAILED)
            raise BatchQueueingError(
                f"Failed to schedule batch processing: {_error_message(e)}", batch_id=batch_id,
            ) from e
        return job.id

    # =========================================================================
    # RUN (job body)
    # =========================================================================

    async def run_batch(self, batch_id: str) -> List[RecordOutcome]:
        """
        Process every pending record of a batch, then write its terminal state.

        Raises:
            BatchNotFoundError: unknown batch id
        """
        batch = await self.repository.get_batch(batch_id)
        if batch is None:
            raise BatchNotFoundError(batch_id)

        logger.info(f"[Intake] Processing batch {batch_id}")
        try:
            pending = await self.repository.list_records(batch_id=batch_id, status=RecordStatus.PENDING)
            claimed = [record for record in pending if await self.repository.claim_record(record.id)]

            def on_progress(completed: int, total: int):
                if completed == total or completed % self.processor.chunk_size == 0:
                    logger.info(f"[Intake] Batch {batch_id}: {completed}/{total} record(s) processed")

            result = await self.processor.run(claimed, self.process_record, on_progress=on_progress)
            if result.errors:
                # Records whose failure could not be written are still "processing"
                await self.repository.fail_unresolved_records(batch_id, "Record processing failed")
        except Exception as e:
            logger.exception(f"[Intake] Batch {batch_id} failed")
            await self.repository.fail_unresolved_records(batch_id, f"Batch processing failed: {_error_message(e)}")
            await self.status.finalize(batch_id, BatchStatus.FAILED)
            raise

        await self.status.finalize(batch_id, BatchStatus.COMPLETED)
        return result.results

    async def process_record(self, record: IncomingRecord) -> RecordOutcome:
        """Enrich, place and store one claimed record."""
        placement = None
        try:
            enriched = await self.chain.enrich(
                ProviderQuery(
                    isbn=record.isbn, upc=record.upc, asin=record.asin,
                    title=record.title, author=record.author,
                ),
                caller={
                    "publisher": record.publisher,
                    "description": record.description,
                    "genre": record.genre,
                    "format": record.format,
                },
            )
            if enriched.status == EnrichmentStatus.FAILED:
                raise RecordValidationError(enriched.error or "Enrichment failed", row=record.row_number)

            preferred_shelf, preferred_section = parse_location(record.shelf_preference)
            placement = await self.placement.place(PlacementRequest(
                author=enriched.author or record.author,
                genre=enriched.genre or record.genre,
                quantity=record.quantity,
                preferred_shelf=preferred_shelf,
                preferred_section=preferred_section,
            ))

            await self.repository.upsert_inventory_item(self._inventory_item(record, enriched, placement))
            await self.repository.update_record(
                record.id,
                processing_status=RecordStatus.COMPLETED,
                assigned_shelf=placement.shelf,
                assigned_section=placement.section,
                placement_reason=placement.reason.value,
                enrichment_source=enriched.source,
                enrichment_status=enriched.status.value,
                error_message=(
                    f"Enrichment degraded: {enriched.error}"
                    if enriched.status == EnrichmentStatus.DEGRADED else None
                ),
                processed_at=utcnow(),
            )
        except Exception as e:
            message = _error_message(e)
            logger.warning(f"[Intake] Row {record.row_number} of batch {record.batch_id} failed: {message}")
            if placement is not None:
                await self.ledger.release(placement.shelf, placement.section, max(1, record.quantity))
            await self.repository.update_record(
                record.id,
                processing_status=RecordStatus.FAILED,
                error_message=message,
                enrichment_attempts=record.enrichment_attempts + 1,
                processed_at=utcnow(),
            )
            return RecordOutcome(
                record_id=record.id, row_number=record.row_number,
                status=RecordStatus.FAILED, error=message,
            )

        return RecordOutcome(
            record_id=record.id,
            row_number=record.row_number,
            status=RecordStatus.COMPLETED,
            shelf=placement.shelf,
            section=placement.section,
            placement_reason=placement.reason.value,
            enrichment_source=enriched.source,
        )

    @staticmethod
    def _inventory_item(record: IncomingRecord, enriched: EnrichedMetadata, placement) -> InventoryItem:
        # Provider values win; manifest values fill the gaps
        return InventoryItem(
            isbn=record.isbn,
            upc=record.upc,
            asin=record.asin,
            title=_fit(enriched.title or record.title, rv.MAX_TITLE_LENGTH),
            author=_fit(enriched.author or record.author, rv.MAX_AUTHOR_LENGTH),
            publisher=_fit(enriched.publisher or record.publisher, rv.MAX_PUBLISHER_LENGTH),
            description=_fit(enriched.description or record.description, rv.MAX_DESCRIPTION_LENGTH),
            genre=_fit(enriched.genre or record.genre, rv.MAX_GENRE_LENGTH),
            pages=enriched.pages,
            format=_fit(enriched.format or record.format, rv.MAX_SHORT_FIELD_LENGTH),
            cover_url=_fit(enriched.cover_url, MAX_URL_LENGTH),
            user_image_reference=record.user_image_reference,
            condition=record.condition,
            shelf_location=placement.shelf,
            section=placement.section,
            quantity=record.quantity,
            enrichment_source=enriched.source,
            enrichment_status=enriched.status.value,
        )

"""
Batch upload API

- POST /batch/upload            multipart manifest (CSV/JSON) + optional images
- POST /batch/upload/json       {"books": [...]}
- GET  /batch/queue             queue inspection
- GET  /batch/inventory/status  shelf capacity report
- PUT  /batch/inventory/shelves define a shelf location
- GET  /batch/{batch_id}        batch status

Uploads answer 202 as soon as the batch is queued; processing continues in a
background job. Errors are rendered by bookstack.core.error_handler.
"""
import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, File, Query, UploadFile, status

from bookstack.api.deps import get_pipeline
from bookstack.core.exceptions import ManifestError
from bookstack.core.upload_validation import read_image_upload, read_manifest_upload
from bookstack.repositories.base import RecordStatus, ShelfCapacity
from bookstack.schemas.batch import (
    BatchStatusResponse,
    BatchUploadJSON,
    BatchUploadResponse,
    InventoryStatusResponse,
    QueueRecord,
    QueueResponse,
    ShelfConfigRequest,
    ShelfLocation,
)
from bookstack.services.intake import BatchAccepted
from bookstack.services.manifest_parser import Manifest, UploadedImage
from bookstack.services.pipeline import IntakePipeline

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/batch", tags=["Batch Upload"])


def _accepted_response(accepted: BatchAccepted) -> BatchUploadResponse:
    if accepted.queued:
        message = f"Batch queued: {accepted.queued} record(s) processing, {accepted.failed} rejected"
    else:
        message = f"No valid records: {accepted.failed} rejected"
    return BatchUploadResponse(
        batch_id=accepted.batch_id,
        status=accepted.status.value,
        total=accepted.total,
        queued=accepted.queued,
        failed=accepted.failed,
        errors=accepted.errors,
        job_id=accepted.job_id,
        message=message,
    )


def _location(location: ShelfCapacity) -> ShelfLocation:
    return ShelfLocation(**location.to_dict())


# ==============================================================================
# Uploads
# ==============================================================================

@router.post("/upload", status_code=status.HTTP_202_ACCEPTED, response_model=BatchUploadResponse)
async def upload_batch(
    manifest: UploadFile = File(...),
    images: Optional[List[UploadFile]] = File(default=None),
    pipeline: IntakePipeline = Depends(get_pipeline),
):
    """
    Upload a CSV or JSON manifest with optional cover images.

    Images are matched to records by file name: isbn_<isbn>.jpg, <upc>.jpg
    or the 1-based row number (1.jpg).
    """
    settings = pipeline.settings
    images = images or []
    if len(images) > settings.MAX_IMAGES_PER_BATCH:
        raise ManifestError(f"Too many images: {len(images)} (max {settings.MAX_IMAGES_PER_BATCH})")

    content = await read_manifest_upload(manifest, settings.max_upload_bytes)
    uploaded = [
        UploadedImage(
            filename=image.filename or f"image-{i}",
            content=await read_image_upload(image, settings.max_upload_bytes),
            content_type=image.content_type,
        )
        for i, image in enumerate(images, start=1)
    ]

    accepted = await pipeline.coordinator.accept(
        Manifest(filename=manifest.filename, content=content, images=uploaded)
    )
    return _accepted_response(accepted)


@router.post("/upload/json", status_code=status.HTTP_202_ACCEPTED, response_model=BatchUploadResponse)
async def upload_batch_json(
    body: BatchUploadJSON,
    pipeline: IntakePipeline = Depends(get_pipeline),
):
    """Upload records as JSON: {"books": [...]}"""
    accepted = await pipeline.coordinator.accept(Manifest(filename=None, records=body.books))
    return _accepted_response(accepted)


# ==============================================================================
# Queue and inventory
# ==============================================================================

@router.get("/queue", response_model=QueueResponse)
async def get_queue(
    batch_id: Optional[str] = None,
    record_status: Optional[RecordStatus] = Query(default=None, alias="status"),
    limit: int = Query(default=100, ge=1, le=1000),
    pipeline: IntakePipeline = Depends(get_pipeline),
):
    """Records waiting in (or done with) the intake queue, oldest first."""
    records = await pipeline.status.queue(batch_id=batch_id, status=record_status, limit=limit)
    return QueueResponse(
        total=len(records),
        records=[
            QueueRecord(
                id=r.id,
                batch_id=r.batch_id,
                row_number=r.row_number,
                isbn=r.isbn,
                upc=r.upc,
                asin=r.asin,
                title=r.title,
                author=r.author,
                quantity=r.quantity,
                processing_status=RecordStatus(r.processing_status).value,
                assigned_shelf=r.assigned_shelf,
                assigned_section=r.assigned_section,
                placement_reason=r.placement_reason,
                enrichment_source=r.enrichment_source,
                enrichment_status=r.enrichment_status,
                enrichment_attempts=r.enrichment_attempts,
                error_message=r.error_message,
                created_at=r.created_at,
                processed_at=r.processed_at,
            )
            for r in records
        ],
    )


@router.get("/inventory/status", response_model=InventoryStatusResponse)
async def get_inventory_status(pipeline: IntakePipeline = Depends(get_pipeline)):
    """Capacity per location, per-shelf totals and over-capacity alerts."""
    report = await pipeline.status.capacity_report()
    return InventoryStatusResponse(
        total_capacity=report.total_capacity,
        total_count=report.total_count,
        utilization=round(report.utilization, 4),
        shelves=[
            {
                "shelf_location": shelf.shelf_location,
                "sections": shelf.sections,
                "total_capacity": shelf.total_capacity,
                "total_count": shelf.total_count,
                "available_space": shelf.available_space,
                "utilization": round(shelf.utilization, 4),
            }
            for shelf in report.shelves
        ],
        locations=[_location(loc) for loc in report.locations],
        over_capacity=[_location(loc) for loc in report.over_capacity],
    )


@router.put("/inventory/shelves", response_model=ShelfLocation)
async def configure_shelf(
    body: ShelfConfigRequest,
    pipeline: IntakePipeline = Depends(get_pipeline),
):
    """Create or update a shelf location's capacity and genre preference."""
    location = await pipeline.ledger.configure(
        body.shelf_location, body.section, body.max_capacity, body.genre_preference,
    )
    return _location(location)


# ==============================================================================
# Batch status (registered last: {batch_id} would shadow the fixed paths)
# ==============================================================================

@router.get("/{batch_id}", response_model=BatchStatusResponse)
async def get_batch_status(batch_id: str, pipeline: IntakePipeline = Depends(get_pipeline)) -> Dict[str, Any]:
    """Counts, progress and error log of one batch."""
    report = await pipeline.status.get_status(batch_id)
    return {
        "batch_id": report.batch_id,
        "filename": report.filename,
        "status": report.status.value,
        "total_records": report.total_records,
        "processed_records": report.processed_records,
        "successful_records": report.successful_records,
        "failed_records": report.failed_records,
        "progress": report.progress,
        "queue_status": report.queue_status,
        "error_log": report.error_log,
        "created_at": report.created_at,
        "completed_at": report.completed_at,
    }

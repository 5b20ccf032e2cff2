"""
SQLAlchemy intake repository (PostgreSQL via asyncpg, SQLite via aiosqlite).

Capacity changes are single statements so concurrent workers cannot lose
updates:
- reserve: UPDATE ... SET current_count = current_count + :q
           WHERE current_count + :q <= max_capacity
- adjust:  INSERT ... ON CONFLICT (shelf_location, section)
           DO UPDATE SET current_count = GREATEST(0, current_count + :delta)
- claim:   UPDATE incoming_books SET processing_status = 'processing'
           WHERE id = :id AND processing_status = 'pending'
"""
import logging
from contextlib import asynccontextmanager
from enum import Enum
from typing import AsyncIterator, Dict, List, Optional

from sqlalchemy import case, func, select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from bookstack.core.database import Database
from bookstack.core.exceptions import PersistenceError
from bookstack.core.utils import utcnow
from bookstack.models.intake import BatchUploadRow, IncomingRecordRow, InventoryItemRow, ShelfCapacityRow
from bookstack.repositories.base import (
    Batch, BatchStatus, IncomingRecord, IntakeRepository, InventoryItem, NewRecord,
    RECORD_STATUSES, RecordStatus, ShelfCapacity, section_sort_key,
)

logger = logging.getLogger(__name__)


def _plain(fields: dict) -> dict:
    return {name: value.value if isinstance(value, Enum) else value for name, value in fields.items()}


def _to_batch(row: BatchUploadRow) -> Batch:
    return Batch(
        id=row.id,
        filename=row.filename,
        total_records=row.total_records,
        processed_records=row.processed_records,
        successful_records=row.successful_records,
        failed_records=row.failed_records,
        status=BatchStatus(row.status),
        error_log=list(row.error_log or []),
        created_at=row.created_at,
        completed_at=row.completed_at,
    )


def _to_record(row: IncomingRecordRow) -> IncomingRecord:
    return IncomingRecord(
        id=row.id,
        batch_id=row.batch_id,
        row_number=row.row_number,
        raw_data=dict(row.raw_data or {}),
        isbn=row.isbn,
        upc=row.upc,
        asin=row.asin,
        title=row.title,
        author=row.author,
        publisher=row.publisher,
        description=row.description,
        genre=row.genre,
        format=row.format,
        condition=row.condition,
        quantity=row.quantity,
        shelf_preference=row.shelf_preference,
        user_image_reference=row.user_image_reference,
        processing_status=RecordStatus(row.processing_status),
        error_message=row.error_message,
        assigned_shelf=row.assigned_shelf,
        assigned_section=row.assigned_section,
        placement_reason=row.placement_reason,
        enrichment_source=row.enrichment_source,
        enrichment_status=row.enrichment_status,
        enrichment_attempts=row.enrichment_attempts,
        created_at=row.created_at,
        processed_at=row.processed_at,
    )


def _to_shelf(row: ShelfCapacityRow) -> ShelfCapacity:
    return ShelfCapacity(
        shelf_location=row.shelf_location,
        section=row.section,
        max_capacity=row.max_capacity,
        current_count=row.current_count,
        genre_preference=row.genre_preference,
    )


class SqlAlchemyIntakeRepository(IntakeRepository):
    def __init__(self, database: Database):
        self._database = database
        dialect = database.engine.dialect.name
        if dialect == "postgresql":
            self._insert = postgresql.insert
        elif dialect == "sqlite":
            self._insert = sqlite.insert
        else:
            raise ValueError(f"Unsupported database dialect for upserts: {dialect}")

    @asynccontextmanager
    async def _session(self) -> AsyncIterator[AsyncSession]:
        try:
            async with self._database.session() as db:
                yield db
        except SQLAlchemyError as e:
            logger.error(f"[Repository] Database error: {type(e).__name__}: {e}")
            raise PersistenceError(f"Database operation failed: {type(e).__name__}") from e

    # ----- batches and records -----

    async def insert_batch(self, batch: Batch, records: List[NewRecord]) -> None:
        async with self._session() as db:
            db.add(BatchUploadRow(
                id=batch.id,
                filename=batch.filename,
                total_records=batch.total_records,
                processed_records=batch.processed_records,
                successful_records=batch.successful_records,
                failed_records=batch.failed_records,
                status=BatchStatus(batch.status).value,
                error_log=list(batch.error_log),
                created_at=batch.created_at or utcnow(),
            ))
            # Parent row first so the foreign key holds on every backend
            await db.flush()
            now = utcnow()
            db.add_all([
                IncomingRecordRow(
                    batch_id=batch.id,
                    row_number=record.row_number,
                    raw_data=record.raw_data,
                    isbn=record.isbn,
                    upc=record.upc,
                    asin=record.asin,
                    title=record.title,
                    author=record.author,
                    publisher=record.publisher,
                    description=record.description,
                    genre=record.genre,
                    format=record.format,
                    condition=record.condition,
                    quantity=record.quantity,
                    shelf_preference=record.shelf_preference,
                    user_image_reference=record.user_image_reference,
                    processing_status=RecordStatus(record.processing_status).value,
                    error_message=record.error_message,
                    processed_at=now if record.processing_status == RecordStatus.FAILED else None,
                    created_at=now,
                )
                for record in records
            ])

    async def record_failed_batch(self, batch: Batch) -> None:
        now = utcnow()
        values = {
            "id": batch.id,
            "filename": batch.filename,
            "total_records": batch.total_records,
            "processed_records": batch.processed_records,
            "successful_records": batch.successful_records,
            "failed_records": batch.failed_records,
            "status": BatchStatus.FAILED.value,
            "error_log": list(batch.error_log),
            "created_at": batch.created_at or now,
            "completed_at": batch.completed_at or now,
        }
        stmt = self._insert(BatchUploadRow).values(**values)
        stmt = stmt.on_conflict_do_update(
            index_elements=["id"],
            set_={name: value for name, value in values.items() if name not in ("id", "created_at")},
        )
        async with self._session() as db:
            await db.execute(stmt)

    async def get_batch(self, batch_id: str) -> Optional[Batch]:
        async with self._session() as db:
            row = await db.get(BatchUploadRow, batch_id)
            return _to_batch(row) if row else None

    async def update_batch(self, batch_id: str, **fields) -> None:
        async with self._session() as db:
            await db.execute(
                update(BatchUploadRow).where(BatchUploadRow.id == batch_id).values(**_plain(fields))
            )

    async def list_records(
        self,
        batch_id: Optional[str] = None,
        status: Optional[RecordStatus] = None,
        limit: Optional[int] = None,
    ) -> List[IncomingRecord]:
        query = select(IncomingRecordRow)
        if batch_id is not None:
            query = query.where(IncomingRecordRow.batch_id == batch_id)
        if status is not None:
            query = query.where(IncomingRecordRow.processing_status == RecordStatus(status).value)
        query = query.order_by(IncomingRecordRow.created_at, IncomingRecordRow.id)
        if limit is not None:
            query = query.limit(limit)
        async with self._session() as db:
            result = await db.execute(query)
            return [_to_record(row) for row in result.scalars().all()]

    async def claim_record(self, record_id: int) -> bool:
        async with self._session() as db:
            result = await db.execute(
                update(IncomingRecordRow)
                .where(
                    IncomingRecordRow.id == record_id,
                    IncomingRecordRow.processing_status == RecordStatus.PENDING.value,
                )
                .values(processing_status=RecordStatus.PROCESSING.value)
            )
            return result.rowcount == 1

    async def update_record(self, record_id: int, **fields) -> None:
        async with self._session() as db:
            await db.execute(
                update(IncomingRecordRow).where(IncomingRecordRow.id == record_id).values(**_plain(fields))
            )

    async def fail_unresolved_records(self, batch_id: str, message: str) -> int:
        async with self._session() as db:
            result = await db.execute(
                update(IncomingRecordRow)
                .where(
                    IncomingRecordRow.batch_id == batch_id,
                    IncomingRecordRow.processing_status.in_(
                        [RecordStatus.PENDING.value, RecordStatus.PROCESSING.value]
                    ),
                )
                .values(
                    processing_status=RecordStatus.FAILED.value,
                    error_message=message,
                    processed_at=utcnow(),
                )
            )
            return result.rowcount or 0

    async def count_records_by_status(self, batch_id: str) -> Dict[str, int]:
        counts = {status: 0 for status in RECORD_STATUSES}
        async with self._session() as db:
            result = await db.execute(
                select(IncomingRecordRow.processing_status, func.count(IncomingRecordRow.id))
                .where(IncomingRecordRow.batch_id == batch_id)
                .group_by(IncomingRecordRow.processing_status)
            )
            for status, count in result.all():
                counts[status] = count
        return counts

    async def list_failed_records(self, batch_id: str) -> List[IncomingRecord]:
        async with self._session() as db:
            result = await db.execute(
                select(IncomingRecordRow)
                .where(
                    IncomingRecordRow.batch_id == batch_id,
                    IncomingRecordRow.processing_status == RecordStatus.FAILED.value,
                )
                .order_by(IncomingRecordRow.row_number)
            )
            return [_to_record(row) for row in result.scalars().all()]

    # ----- shelf capacity -----

    async def get_shelf_capacity(self, shelf: str, section: Optional[str] = None) -> Optional[ShelfCapacity]:
        if section is None:
            sections = await self.list_shelf_capacity(shelf)
            return sections[0] if sections else None
        async with self._session() as db:
            result = await db.execute(
                select(ShelfCapacityRow).where(
                    ShelfCapacityRow.shelf_location == shelf,
                    ShelfCapacityRow.section == section,
                )
            )
            row = result.scalar_one_or_none()
            return _to_shelf(row) if row else None

    async def list_shelf_capacity(self, shelf: Optional[str] = None) -> List[ShelfCapacity]:
        query = select(ShelfCapacityRow)
        if shelf is not None:
            query = query.where(ShelfCapacityRow.shelf_location == shelf)
        async with self._session() as db:
            result = await db.execute(query)
            rows = [_to_shelf(row) for row in result.scalars().all()]
        rows.sort(key=lambda loc: (loc.shelf_location, section_sort_key(loc.section)))
        return rows

    async def create_shelf_capacity(
        self,
        shelf: str,
        section: str,
        max_capacity: int,
        genre_preference: Optional[str] = None,
    ) -> ShelfCapacity:
        stmt = self._insert(ShelfCapacityRow).values(
            shelf_location=shelf,
            section=section,
            max_capacity=max_capacity,
            current_count=0,
            genre_preference=genre_preference,
        ).on_conflict_do_nothing(index_elements=["shelf_location", "section"])
        async with self._session() as db:
            await db.execute(stmt)
        return await self.get_shelf_capacity(shelf, section)

    async def configure_shelf_capacity(
        self,
        shelf: str,
        section: str,
        max_capacity: int,
        genre_preference: Optional[str] = None,
    ) -> ShelfCapacity:
        stmt = self._insert(ShelfCapacityRow).values(
            shelf_location=shelf,
            section=section,
            max_capacity=max_capacity,
            current_count=0,
            genre_preference=genre_preference,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["shelf_location", "section"],
            set_={
                "max_capacity": max_capacity,
                "genre_preference": genre_preference,
                "updated_at": utcnow(),
            },
        )
        async with self._session() as db:
            await db.execute(stmt)
        return await self.get_shelf_capacity(shelf, section)

    async def upsert_shelf_capacity(
        self,
        shelf: str,
        section: str,
        delta: int,
        default_capacity: int,
    ) -> ShelfCapacity:
        adjusted = ShelfCapacityRow.current_count + delta
        stmt = self._insert(ShelfCapacityRow).values(
            shelf_location=shelf,
            section=section,
            max_capacity=default_capacity,
            current_count=max(0, delta),
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["shelf_location", "section"],
            set_={
                "current_count": case((adjusted < 0, 0), else_=adjusted),
                "updated_at": utcnow(),
            },
        )
        async with self._session() as db:
            await db.execute(stmt)
        return await self.get_shelf_capacity(shelf, section)

    async def reserve_shelf_capacity(self, shelf: str, section: str, quantity: int) -> bool:
        async with self._session() as db:
            result = await db.execute(
                update(ShelfCapacityRow)
                .where(
                    ShelfCapacityRow.shelf_location == shelf,
                    ShelfCapacityRow.section == section,
                    ShelfCapacityRow.current_count + quantity <= ShelfCapacityRow.max_capacity,
                )
                .values(
                    current_count=ShelfCapacityRow.current_count + quantity,
                    updated_at=utcnow(),
                )
            )
            return result.rowcount == 1

    async def find_genre_shelf(self, genre: str, quantity: int) -> Optional[ShelfCapacity]:
        async with self._session() as db:
            result = await db.execute(
                select(ShelfCapacityRow).where(
                    func.lower(func.trim(ShelfCapacityRow.genre_preference)) == genre.strip().lower(),
                    ShelfCapacityRow.current_count + quantity <= ShelfCapacityRow.max_capacity,
                )
            )
            candidates = [_to_shelf(row) for row in result.scalars().all()]
        candidates.sort(key=lambda loc: (loc.current_count, loc.shelf_location, section_sort_key(loc.section)))
        return candidates[0] if candidates else None

    # ----- inventory -----

    async def upsert_inventory_item(self, item: InventoryItem) -> None:
        values = {
            "isbn": item.isbn,
            "upc": item.upc,
            "asin": item.asin,
            "title": item.title,
            "author": item.author,
            "publisher": item.publisher,
            "description": item.description,
            "genre": item.genre,
            "pages": item.pages,
            "format": item.format,
            "cover_url": item.cover_url,
            "user_image_reference": item.user_image_reference,
            "condition": item.condition,
            "shelf_location": item.shelf_location,
            "section": item.section,
            "quantity": item.quantity,
            "enrichment_source": item.enrichment_source,
            "enrichment_status": item.enrichment_status,
        }
        stmt = self._insert(InventoryItemRow).values(**values)
        if item.isbn:
            stmt = stmt.on_conflict_do_update(
                index_elements=["isbn"],
                set_={
                    "quantity": InventoryItemRow.quantity + stmt.excluded.quantity,
                    "updated_at": utcnow(),
                },
            )
        async with self._session() as db:
            await db.execute(stmt)

    async def close(self) -> None:
        await self._database.dispose()

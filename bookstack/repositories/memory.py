"""
In-memory intake repository.

Dict-backed implementation of IntakeRepository used by tests and by
REPOSITORY_BACKEND=memory for local runs. Capacity rows are guarded by a lock
per (shelf, section) so read-modify-write cycles never interleave.
"""
import asyncio
import copy
import itertools
from collections import defaultdict
from dataclasses import asdict, replace
from typing import Dict, List, Optional, Tuple

from bookstack.core.utils import utcnow
from bookstack.repositories.base import (
    Batch, BatchStatus, IncomingRecord, IntakeRepository, InventoryItem, NewRecord,
    RECORD_STATUSES, RecordStatus, ShelfCapacity, section_sort_key,
)


class KeyLockManager:
    """Per-key asyncio locks."""

    def __init__(self):
        self._locks: Dict[Tuple[str, str], asyncio.Lock] = defaultdict(asyncio.Lock)
        self._lock = asyncio.Lock()  # Protects _locks dict creation

    async def get_lock(self, key: Tuple[str, str]) -> asyncio.Lock:
        async with self._lock:
            if key not in self._locks:
                self._locks[key] = asyncio.Lock()
            return self._locks[key]


class InMemoryIntakeRepository(IntakeRepository):
    def __init__(self):
        self.batches: Dict[str, Batch] = {}
        self.records: Dict[int, IncomingRecord] = {}
        self.shelves: Dict[Tuple[str, str], ShelfCapacity] = {}
        self.inventory: List[InventoryItem] = []
        self._ids = itertools.count(1)
        self._batch_lock = asyncio.Lock()
        self._record_lock = asyncio.Lock()
        self._shelf_locks = KeyLockManager()
        self._inventory_lock = asyncio.Lock()

    # ----- batches and records -----

    async def insert_batch(self, batch: Batch, records: List[NewRecord]) -> None:
        async with self._batch_lock:
            now = utcnow()
            staged = [
                IncomingRecord(**asdict(record), id=next(self._ids), batch_id=batch.id, created_at=now)
                for record in records
            ]
            stored = replace(batch, error_log=list(batch.error_log), created_at=batch.created_at or now)
            # Nothing is visible until every row is staged
            self.batches[batch.id] = stored
            for record in staged:
                record.processing_status = RecordStatus(record.processing_status)
                self.records[record.id] = record

    async def record_failed_batch(self, batch: Batch) -> None:
        async with self._batch_lock:
            self.batches[batch.id] = replace(
                batch,
                status=BatchStatus.FAILED,
                error_log=list(batch.error_log),
                created_at=batch.created_at or utcnow(),
                completed_at=batch.completed_at or utcnow(),
            )

    async def get_batch(self, batch_id: str) -> Optional[Batch]:
        batch = self.batches.get(batch_id)
        return copy.deepcopy(batch) if batch else None

    async def update_batch(self, batch_id: str, **fields) -> None:
        async with self._batch_lock:
            batch = self.batches.get(batch_id)
            if batch is None:
                return
            for name, value in fields.items():
                setattr(batch, name, value)

    async def list_records(
        self,
        batch_id: Optional[str] = None,
        status: Optional[RecordStatus] = None,
        limit: Optional[int] = None,
    ) -> List[IncomingRecord]:
        rows = [
            r for r in self.records.values()
            if (batch_id is None or r.batch_id == batch_id)
            and (status is None or r.processing_status == status)
        ]
        rows.sort(key=lambda r: (r.created_at, r.batch_id, r.row_number))
        if limit is not None:
            rows = rows[:limit]
        return [copy.deepcopy(r) for r in rows]

    async def claim_record(self, record_id: int) -> bool:
        async with self._record_lock:
            record = self.records.get(record_id)
            if record is None or record.processing_status != RecordStatus.PENDING:
                return False
            record.processing_status = RecordStatus.PROCESSING
            return True

    async def update_record(self, record_id: int, **fields) -> None:
        async with self._record_lock:
            record = self.records.get(record_id)
            if record is None:
                return
            for name, value in fields.items():
                setattr(record, name, value)

    async def fail_unresolved_records(self, batch_id: str, message: str) -> int:
        async with self._record_lock:
            count = 0
            for record in self.records.values():
                if record.batch_id == batch_id and record.processing_status in (
                    RecordStatus.PENDING, RecordStatus.PROCESSING,
                ):
                    record.processing_status = RecordStatus.FAILED
                    record.error_message = message
                    record.processed_at = utcnow()
                    count += 1
            return count

    async def count_records_by_status(self, batch_id: str) -> Dict[str, int]:
        counts = {status: 0 for status in RECORD_STATUSES}
        for record in self.records.values():
            if record.batch_id == batch_id:
                counts[RecordStatus(record.processing_status).value] += 1
        return counts

    async def list_failed_records(self, batch_id: str) -> List[IncomingRecord]:
        rows = [
            r for r in self.records.values()
            if r.batch_id == batch_id and r.processing_status == RecordStatus.FAILED
        ]
        rows.sort(key=lambda r: r.row_number)
        return [copy.deepcopy(r) for r in rows]

    # ----- shelf capacity -----

    async def get_shelf_capacity(self, shelf: str, section: Optional[str] = None) -> Optional[ShelfCapacity]:
        if section is not None:
            location = self.shelves.get((shelf, section))
            return replace(location) if location else None
        sections = await self.list_shelf_capacity(shelf)
        return sections[0] if sections else None

    async def list_shelf_capacity(self, shelf: Optional[str] = None) -> List[ShelfCapacity]:
        rows = [replace(loc) for (name, _), loc in self.shelves.items() if shelf is None or name == shelf]
        rows.sort(key=lambda loc: (loc.shelf_location, section_sort_key(loc.section)))
        return rows

    async def create_shelf_capacity(
        self,
        shelf: str,
        section: str,
        max_capacity: int,
        genre_preference: Optional[str] = None,
    ) -> ShelfCapacity:
        lock = await self._shelf_locks.get_lock((shelf, section))
        async with lock:
            location = self.shelves.get((shelf, section))
            if location is None:
                location = ShelfCapacity(shelf, section, max_capacity, 0, genre_preference)
                self.shelves[(shelf, section)] = location
            return replace(location)

    async def configure_shelf_capacity(
        self,
        shelf: str,
        section: str,
        max_capacity: int,
        genre_preference: Optional[str] = None,
    ) -> ShelfCapacity:
        lock = await self._shelf_locks.get_lock((shelf, section))
        async with lock:
            location = self.shelves.get((shelf, section))
            if location is None:
                location = ShelfCapacity(shelf, section, max_capacity, 0, genre_preference)
                self.shelves[(shelf, section)] = location
            else:
                location.max_capacity = max_capacity
                location.genre_preference = genre_preference
            return replace(location)

    async def upsert_shelf_capacity(
        self,
        shelf: str,
        section: str,
        delta: int,
        default_capacity: int,
    ) -> ShelfCapacity:
        lock = await self._shelf_locks.get_lock((shelf, section))
        async with lock:
            location = self.shelves.get((shelf, section))
            if location is None:
                location = ShelfCapacity(shelf, section, default_capacity, 0)
                self.shelves[(shelf, section)] = location
            location.current_count = max(0, location.current_count + delta)
            return replace(location)

    async def reserve_shelf_capacity(self, shelf: str, section: str, quantity: int) -> bool:
        lock = await self._shelf_locks.get_lock((shelf, section))
        async with lock:
            location = self.shelves.get((shelf, section))
            if location is None or location.current_count + quantity > location.max_capacity:
                return False
            location.current_count += quantity
            return True

    async def find_genre_shelf(self, genre: str, quantity: int) -> Optional[ShelfCapacity]:
        wanted = genre.strip().lower()
        candidates = [
            loc for loc in await self.list_shelf_capacity()
            if loc.genre_preference
            and loc.genre_preference.strip().lower() == wanted
            and loc.current_count + quantity <= loc.max_capacity
        ]
        candidates.sort(key=lambda loc: (loc.current_count, loc.shelf_location, section_sort_key(loc.section)))
        return candidates[0] if candidates else None

    # ----- inventory -----

    async def upsert_inventory_item(self, item: InventoryItem) -> None:
        async with self._inventory_lock:
            if item.isbn:
                for existing in self.inventory:
                    if existing.isbn == item.isbn:
                        existing.quantity += item.quantity
                        return
            self.inventory.append(replace(item))

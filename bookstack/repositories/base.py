"""
Intake persistence port

The coordinator, ledger, placement engine and status aggregator talk to
storage only through IntakeRepository. Two implementations ship:

- SqlAlchemyIntakeRepository: PostgreSQL/SQLite through async SQLAlchemy
- InMemoryIntakeRepository: dict-backed, for tests and local experiments

Every capacity mutation is atomic per (shelf, section). reserve_shelf_capacity
is the only call that consumes normal capacity: it succeeds only when
current_count + quantity stays within max_capacity.
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional


class BatchStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (BatchStatus.COMPLETED, BatchStatus.FAILED)


class RecordStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


RECORD_STATUSES = [status.value for status in RecordStatus]


def section_sort_key(section: str):
    """Numeric sections sort by value ("2" before "10"), others after, alphabetically."""
    if section.isdigit():
        return (0, int(section), section)
    return (1, 0, section)


@dataclass
class Batch:
    id: str
    filename: Optional[str] = None
    total_records: int = 0
    processed_records: int = 0
    successful_records: int = 0
    failed_records: int = 0
    status: BatchStatus = BatchStatus.PENDING
    error_log: List[Dict[str, Any]] = field(default_factory=list)
    created_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


@dataclass
class NewRecord:
    """A record as queued by the coordinator."""
    row_number: int
    raw_data: Dict[str, Any] = field(default_factory=dict)
    isbn: Optional[str] = None
    upc: Optional[str] = None
    asin: Optional[str] = None
    title: Optional[str] = None
    author: Optional[str] = None
    publisher: Optional[str] = None
    description: Optional[str] = None
    genre: Optional[str] = None
    format: Optional[str] = None
    condition: str = "Good"
    quantity: int = 1
    shelf_preference: Optional[str] = None
    user_image_reference: Optional[str] = None
    processing_status: RecordStatus = RecordStatus.PENDING
    error_message: Optional[str] = None


@dataclass
class IncomingRecord(NewRecord):
    id: int = 0
    batch_id: str = ""
    assigned_shelf: Optional[str] = None
    assigned_section: Optional[str] = None
    placement_reason: Optional[str] = None
    enrichment_source: Optional[str] = None
    enrichment_status: Optional[str] = None
    enrichment_attempts: int = 0
    created_at: Optional[datetime] = None
    processed_at: Optional[datetime] = None

    @property
    def identifier(self) -> Optional[str]:
        return self.isbn or self.upc or self.asin or self.title


@dataclass
class ShelfCapacity:
    shelf_location: str
    section: str
    max_capacity: int
    current_count: int = 0
    genre_preference: Optional[str] = None

    @property
    def available_space(self) -> int:
        return max(0, self.max_capacity - self.current_count)

    @property
    def utilization(self) -> float:
        if self.max_capacity <= 0:
            return 1.0
        return self.current_count / self.max_capacity

    def to_dict(self) -> Dict[str, Any]:
        return {
            "shelf_location": self.shelf_location,
            "section": self.section,
            "max_capacity": self.max_capacity,
            "current_count": self.current_count,
            "genre_preference": self.genre_preference,
            "available_space": self.available_space,
            "utilization": round(self.utilization, 4),
        }


@dataclass
class InventoryItem:
    isbn: Optional[str] = None
    upc: Optional[str] = None
    asin: Optional[str] = None
    title: Optional[str] = None
    author: Optional[str] = None
    publisher: Optional[str] = None
    description: Optional[str] = None
    genre: Optional[str] = None
    pages: Optional[int] = None
    format: Optional[str] = None
    cover_url: Optional[str] = None
    user_image_reference: Optional[str] = None
    condition: str = "Good"
    shelf_location: Optional[str] = None
    section: Optional[str] = None
    quantity: int = 1
    enrichment_source: Optional[str] = None
    enrichment_status: Optional[str] = None


class IntakeRepository(ABC):
    """Storage port for batches, records, shelf capacity and inventory."""

    # ----- batches and records -----

    @abstractmethod
    async def insert_batch(self, batch: Batch, records: List[NewRecord]) -> None:
        """Insert the batch row and every record in one transaction."""

    @abstractmethod
    async def record_failed_batch(self, batch: Batch) -> None:
        """Best-effort insert (or overwrite) of a failed batch row, separate from any rolled back work."""

    @abstractmethod
    async def get_batch(self, batch_id: str) -> Optional[Batch]:
        ...

    @abstractmethod
    async def update_batch(self, batch_id: str, **fields) -> None:
        ...

    @abstractmethod
    async def list_records(
        self,
        batch_id: Optional[str] = None,
        status: Optional[RecordStatus] = None,
        limit: Optional[int] = None,
    ) -> List[IncomingRecord]:
        """Records in queue order (batch creation, then row number)."""

    @abstractmethod
    async def claim_record(self, record_id: int) -> bool:
        """pending -> processing; False if another worker already moved it."""

    @abstractmethod
    async def update_record(self, record_id: int, **fields) -> None:
        ...

    @abstractmethod
    async def fail_unresolved_records(self, batch_id: str, message: str) -> int:
        """Mark every pending/processing record of the batch failed. Returns how many."""

    @abstractmethod
    async def count_records_by_status(self, batch_id: str) -> Dict[str, int]:
        ...

    @abstractmethod
    async def list_failed_records(self, batch_id: str) -> List[IncomingRecord]:
        """Failed records ordered by row number."""

    # ----- shelf capacity -----

    @abstractmethod
    async def get_shelf_capacity(self, shelf: str, section: Optional[str] = None) -> Optional[ShelfCapacity]:
        """One location; with no section, the shelf's first section."""

    @abstractmethod
    async def list_shelf_capacity(self, shelf: Optional[str] = None) -> List[ShelfCapacity]:
        """Locations ordered by shelf, then section."""

    @abstractmethod
    async def create_shelf_capacity(
        self,
        shelf: str,
        section: str,
        max_capacity: int,
        genre_preference: Optional[str] = None,
    ) -> ShelfCapacity:
        """Create the location if missing; an existing location is returned unchanged."""

    @abstractmethod
    async def configure_shelf_capacity(
        self,
        shelf: str,
        section: str,
        max_capacity: int,
        genre_preference: Optional[str] = None,
    ) -> ShelfCapacity:
        """Create or overwrite capacity and genre of a location, keeping its count."""

    @abstractmethod
    async def upsert_shelf_capacity(
        self,
        shelf: str,
        section: str,
        delta: int,
        default_capacity: int,
    ) -> ShelfCapacity:
        """Unconditional current_count += delta, clamped at zero, creating the row if needed."""

    @abstractmethod
    async def reserve_shelf_capacity(self, shelf: str, section: str, quantity: int) -> bool:
        """Conditional current_count += quantity, only if it stays within max_capacity."""

    @abstractmethod
    async def find_genre_shelf(self, genre: str, quantity: int) -> Optional[ShelfCapacity]:
        """
        Location whose genre_preference matches (case-insensitive) with room for
        quantity; fewest items first, then shelf, then section.
        """

    async def next_section_for(self, shelf: str, width: int = 2) -> str:
        """MAX(numeric section) + 1, zero padded."""
        numbers = [int(loc.section) for loc in await self.list_shelf_capacity(shelf) if loc.section.isdigit()]
        return str(max(numbers, default=0) + 1).zfill(width)

    # ----- inventory -----

    @abstractmethod
    async def upsert_inventory_item(self, item: InventoryItem) -> None:
        """Insert, or add quantity to the existing row for the same ISBN."""

    async def close(self) -> None:
        """Release storage resources."""

"""
Shelf Capacity Ledger

Authoritative record of how full each (shelf, section) location is, and the
only place new section numbers are handed out.

- increment: unconditional, clamped at zero, creates the location lazily
- try_reserve: conditional; succeeds only if the location stays within capacity
- release: compensating decrement after a failed persist
"""
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from bookstack.repositories.base import IntakeRepository, ShelfCapacity

logger = logging.getLogger(__name__)

DEFAULT_SHELF_CAPACITY = 100
DEFAULT_SECTION_WIDTH = 2


@dataclass
class ShelfSummary:
    shelf_location: str
    sections: int = 0
    total_capacity: int = 0
    total_count: int = 0

    @property
    def available_space(self) -> int:
        return max(0, self.total_capacity - self.total_count)

    @property
    def utilization(self) -> float:
        return self.total_count / self.total_capacity if self.total_capacity else 0.0


@dataclass
class CapacityReport:
    locations: List[ShelfCapacity] = field(default_factory=list)
    shelves: List[ShelfSummary] = field(default_factory=list)
    total_capacity: int = 0
    total_count: int = 0

    @property
    def over_capacity(self) -> List[ShelfCapacity]:
        return [loc for loc in self.locations if loc.current_count > loc.max_capacity]

    @property
    def utilization(self) -> float:
        return self.total_count / self.total_capacity if self.total_capacity else 0.0


class CapacityLedger:
    def __init__(
        self,
        repository: IntakeRepository,
        default_capacity: int = DEFAULT_SHELF_CAPACITY,
        section_width: int = DEFAULT_SECTION_WIDTH,
    ):
        self.repository = repository
        self.default_capacity = default_capacity
        self.section_width = section_width

    async def get(self, shelf: str, section: Optional[str] = None) -> Optional[ShelfCapacity]:
        return await self.repository.get_shelf_capacity(shelf, section)

    async def sections(self, shelf: str) -> List[ShelfCapacity]:
        return await self.repository.list_shelf_capacity(shelf)

    async def all(self) -> List[ShelfCapacity]:
        return await self.repository.list_shelf_capacity()

    async def create(
        self,
        shelf: str,
        section: str,
        max_capacity: Optional[int] = None,
        genre_preference: Optional[str] = None,
    ) -> ShelfCapacity:
        """Idempotent: an existing location comes back unchanged."""
        return await self.repository.create_shelf_capacity(
            shelf, section, max_capacity or self.default_capacity, genre_preference,
        )

    async def configure(
        self,
        shelf: str,
        section: str,
        max_capacity: int,
        genre_preference: Optional[str] = None,
    ) -> ShelfCapacity:
        location = await self.repository.configure_shelf_capacity(shelf, section, max_capacity, genre_preference)
        logger.info(
            f"[CapacityLedger] Configured {shelf}/{section}: max={max_capacity}, genre={genre_preference or '-'}"
        )
        return location

    async def increment(self, shelf: str, section: str, delta: int) -> ShelfCapacity:
        return await self.repository.upsert_shelf_capacity(shelf, section, delta, self.default_capacity)

    async def try_reserve(self, shelf: str, section: str, quantity: int) -> bool:
        reserved = await self.repository.reserve_shelf_capacity(shelf, section, quantity)
        if not reserved:
            logger.debug(f"[CapacityLedger] Reservation of {quantity} on {shelf}/{section} refused")
        return reserved

    async def release(self, shelf: str, section: str, quantity: int) -> ShelfCapacity:
        logger.info(f"[CapacityLedger] Releasing {quantity} from {shelf}/{section}")
        return await self.increment(shelf, section, -quantity)

    async def next_section(self, shelf: str) -> str:
        return await self.repository.next_section_for(shelf, self.section_width)

    async def find_genre_location(self, genre: str, quantity: int) -> Optional[ShelfCapacity]:
        return await self.repository.find_genre_shelf(genre, quantity)

    async def report(self) -> CapacityReport:
        locations = await self.all()
        by_shelf: Dict[str, ShelfSummary] = {}
        for loc in locations:
            summary = by_shelf.setdefault(loc.shelf_location, ShelfSummary(loc.shelf_location))
            summary.sections += 1
            summary.total_capacity += loc.max_capacity
            summary.total_count += loc.current_count
        return CapacityReport(
            locations=locations,
            shelves=list(by_shelf.values()),
            total_capacity=sum(loc.max_capacity for loc in locations),
            total_count=sum(loc.current_count for loc in locations),
        )

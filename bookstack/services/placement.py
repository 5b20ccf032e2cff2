"""
Placement Engine

Assigns a shelf/section to an item. The first rule with room for the item's
quantity wins:

1. manual_preference - the shelf (and section) named in the manifest
2. genre_match       - a location whose genre_preference matches, emptiest first
3. author_alpha      - the shelf named after the first letter of the author's surname
4. overflow_nearest  - alphabetical shelf full: closest shelf letter with room
5. overflow_new      - nowhere has room: new section on "<letter>-OVERFLOW"

Every candidate is committed with a conditional reservation on the capacity
ledger. A reservation lost to a concurrent placement re-runs the decision,
up to max_attempts, then falls through to overflow_new.
"""
import logging
import re
import unicodedata
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional, Tuple

from bookstack.repositories.base import ShelfCapacity, section_sort_key
from bookstack.services.capacity_ledger import CapacityLedger

logger = logging.getLogger(__name__)

DEFAULT_OVERFLOW_CAPACITY = 200
DEFAULT_MAX_ATTEMPTS = 5
FALLBACK_SHELF = "Z"
OVERFLOW_SUFFIX = "-OVERFLOW"

NAME_SUFFIXES = {"jr", "sr", "ii", "iii", "iv", "v", "phd", "md", "esq"}


class PlacementReason(str, Enum):
    MANUAL_PREFERENCE = "manual_preference"
    GENRE_MATCH = "genre_match"
    AUTHOR_ALPHA = "author_alpha"
    OVERFLOW_NEAREST = "overflow_nearest"
    OVERFLOW_NEW = "overflow_new"


@dataclass
class PlacementRequest:
    author: Optional[str] = None
    genre: Optional[str] = None
    quantity: int = 1
    preferred_shelf: Optional[str] = None
    preferred_section: Optional[str] = None


@dataclass
class PlacementResult:
    shelf: str
    section: str
    reason: PlacementReason
    utilization_at_assignment: float


def parse_location(text: Optional[str]) -> Tuple[Optional[str], Optional[str]]:
    """
    "B-03" -> ("B", "03"); "Shelf B, Section 3" -> ("B", "3"); "b" -> ("B", None)
    """
    if not text or not text.strip():
        return None, None
    text = text.strip()

    dash = re.fullmatch(r"([A-Za-z]+)-(\d+)", text)
    if dash:
        return dash.group(1).upper(), dash.group(2)

    shelf = section = None
    parts = [p for p in re.split(r"[,\s]+", text) if p]
    for i, part in enumerate(parts[:-1]):
        if "shelf" in part.lower():
            shelf = parts[i + 1].upper()
        elif "section" in part.lower():
            section = parts[i + 1]

    if not shelf and not section:
        shelf = text.upper()
    return shelf, section


def _fold(text: str) -> str:
    return unicodedata.normalize("NFKD", text).encode("ascii", "ignore").decode("ascii")


def author_surname(author: Optional[str]) -> Optional[str]:
    """
    Surname of the first listed author.

    "J.R.R. Tolkien" -> "Tolkien"; "Tolkien, J.R.R." -> "Tolkien";
    "Martin Luther King Jr." -> "King"; "Gaiman, Neil, Pratchett, Terry" -> "Gaiman"
    """
    if not author or not author.strip():
        return None
    first = re.split(r"\s*(?:;|&|\band\b)\s*", author.strip())[0]

    if "," in first:
        head, _, rest = first.partition(",")
        # "Surname, Given" when the part before the comma is a single word
        if len(head.split()) == 1 and rest.strip() and head.strip(".").lower() not in NAME_SUFFIXES:
            return head.strip()
        first = head

    tokens = [t for t in first.split() if t.strip(".,").lower() not in NAME_SUFFIXES]
    if not tokens:
        return None
    return tokens[-1].strip(".,")


def alpha_shelf_for(author: Optional[str]) -> str:
    """First letter of the surname, A-Z; anything else goes to Z."""
    surname = author_surname(author)
    if not surname:
        return FALLBACK_SHELF
    letters = [c for c in _fold(surname).upper() if not c.isspace()]
    if letters and "A" <= letters[0] <= "Z":
        return letters[0]
    return FALLBACK_SHELF


def _letter_distance(shelf: str, target: str) -> int:
    return abs(ord(shelf[:1].upper() or FALLBACK_SHELF) - ord(target))


class PlacementEngine:
    def __init__(
        self,
        ledger: CapacityLedger,
        overflow_capacity: int = DEFAULT_OVERFLOW_CAPACITY,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    ):
        self.ledger = ledger
        self.overflow_capacity = overflow_capacity
        self.max_attempts = max_attempts

    async def place(self, request: PlacementRequest) -> PlacementResult:
        quantity = max(1, request.quantity)
        target = alpha_shelf_for(request.author)

        for attempt in range(1, self.max_attempts + 1):
            candidate = await self._choose(request, quantity, target)
            if candidate is None:
                break
            location, reason = candidate
            if await self.ledger.try_reserve(location.shelf_location, location.section, quantity):
                return await self._result(location.shelf_location, location.section, reason, quantity)
            logger.info(
                f"[Placement] Lost reservation race on {location.shelf_location}/{location.section} "
                f"(attempt {attempt}/{self.max_attempts}), re-evaluating"
            )

        return await self._overflow_new(target, quantity)

    async def _choose(
        self, request: PlacementRequest, quantity: int, target: str,
    ) -> Optional[Tuple[ShelfCapacity, PlacementReason]]:
        if request.preferred_shelf:
            location = await self._preferred_location(request, quantity)
            if location:
                return location, PlacementReason.MANUAL_PREFERENCE

        if request.genre and request.genre.strip():
            location = await self.ledger.find_genre_location(request.genre, quantity)
            if location:
                return location, PlacementReason.GENRE_MATCH

        location = await self._first_section_with_space(target, quantity)
        if location:
            return location, PlacementReason.AUTHOR_ALPHA

        location = await self._nearest_with_space(target, quantity)
        if location:
            return location, PlacementReason.OVERFLOW_NEAREST
        return None

    async def _preferred_location(self, request: PlacementRequest, quantity: int) -> Optional[ShelfCapacity]:
        shelf = request.preferred_shelf.strip().upper()
        if request.preferred_section:
            location = await self.ledger.get(shelf, request.preferred_section)
            if location is None:
                location = await self.ledger.create(shelf, request.preferred_section)
            return location if location.available_space >= quantity else None
        return await self._first_section_with_space(shelf, quantity)

    async def _first_section_with_space(self, shelf: str, quantity: int) -> Optional[ShelfCapacity]:
        """Lowest-numbered section with room; a shelf without sections gets its first one."""
        sections = await self.ledger.sections(shelf)
        if not sections:
            created = await self.ledger.create(shelf, await self.ledger.next_section(shelf))
            return created if created.available_space >= quantity else None
        for location in sections:
            if location.available_space >= quantity:
                return location
        return None

    async def _nearest_with_space(self, target: str, quantity: int) -> Optional[ShelfCapacity]:
        candidates: List[ShelfCapacity] = [
            loc for loc in await self.ledger.all() if loc.available_space >= quantity
        ]
        if not candidates:
            return None
        candidates.sort(key=lambda loc: (
            _letter_distance(loc.shelf_location, target),
            -loc.available_space,
            loc.shelf_location,
            section_sort_key(loc.section),
        ))
        return candidates[0]

    async def _overflow_new(self, target: str, quantity: int) -> PlacementResult:
        shelf = f"{target}{OVERFLOW_SUFFIX}"
        section = await self.ledger.next_section(shelf)
        await self.ledger.create(shelf, section, max_capacity=self.overflow_capacity)
        # Unconditional: the item is placed even if it alone exceeds the new section
        await self.ledger.increment(shelf, section, quantity)
        logger.warning(f"[Placement] No space left, opened overflow location {shelf}/{section}")
        return await self._result(shelf, section, PlacementReason.OVERFLOW_NEW, quantity)

    async def _result(self, shelf: str, section: str, reason: PlacementReason, quantity: int) -> PlacementResult:
        location = await self.ledger.get(shelf, section)
        utilization = location.utilization if location else 0.0
        logger.info(f"[Placement] {quantity} item(s) -> {shelf}/{section} ({reason.value}, {utilization:.0%} full)")
        return PlacementResult(shelf=shelf, section=section, reason=reason, utilization_at_assignment=utilization)

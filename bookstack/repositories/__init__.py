"""
Intake persistence: the IntakeRepository port and its implementations.
"""
from bookstack.repositories.base import (
    Batch,
    BatchStatus,
    IncomingRecord,
    IntakeRepository,
    InventoryItem,
    NewRecord,
    RecordStatus,
    ShelfCapacity,
)
from bookstack.repositories.memory import InMemoryIntakeRepository

__all__ = [
    "Batch",
    "BatchStatus",
    "IncomingRecord",
    "IntakeRepository",
    "InventoryItem",
    "NewRecord",
    "RecordStatus",
    "ShelfCapacity",
    "InMemoryIntakeRepository",
]

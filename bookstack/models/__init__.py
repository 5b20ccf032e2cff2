from bookstack.models.intake import (
    BatchUploadRow,
    IncomingRecordRow,
    InventoryItemRow,
    ShelfCapacityRow,
)

__all__ = [
    "BatchUploadRow",
    "IncomingRecordRow",
    "InventoryItemRow",
    "ShelfCapacityRow",
]

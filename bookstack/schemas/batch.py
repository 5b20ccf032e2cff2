from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator


# ============================================================================
# UPLOAD SCHEMAS
# ============================================================================
class BatchUploadJSON(BaseModel):
    # Shape is checked by the coordinator so errors match the file upload
    books: Any = None


class RowErrors(BaseModel):
    row: int
    identifier: Optional[str] = None
    errors: List[str]


class BatchUploadResponse(BaseModel):
    batch_id: str
    status: str
    total: int
    queued: int
    failed: int
    errors: List[RowErrors] = []
    job_id: Optional[str] = None
    message: str


# ============================================================================
# STATUS SCHEMAS
# ============================================================================
class ErrorLogEntry(BaseModel):
    row: Optional[int] = None
    identifier: Optional[str] = None
    error: str


class BatchStatusResponse(BaseModel):
    batch_id: str
    filename: Optional[str] = None
    status: str
    total_records: int
    processed_records: int
    successful_records: int
    failed_records: int
    progress: float
    queue_status: Dict[str, int]
    error_log: List[ErrorLogEntry]
    created_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class QueueRecord(BaseModel):
    id: int
    batch_id: str
    row_number: int
    isbn: Optional[str] = None
    upc: Optional[str] = None
    asin: Optional[str] = None
    title: Optional[str] = None
    author: Optional[str] = None
    quantity: int
    processing_status: str
    assigned_shelf: Optional[str] = None
    assigned_section: Optional[str] = None
    placement_reason: Optional[str] = None
    enrichment_source: Optional[str] = None
    enrichment_status: Optional[str] = None
    enrichment_attempts: int = 0
    error_message: Optional[str] = None
    created_at: Optional[datetime] = None
    processed_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class QueueResponse(BaseModel):
    total: int
    records: List[QueueRecord]


# ============================================================================
# SHELF / CAPACITY SCHEMAS
# ============================================================================
class ShelfLocation(BaseModel):
    shelf_location: str
    section: str
    max_capacity: int
    current_count: int
    genre_preference: Optional[str] = None
    available_space: int
    utilization: float


class ShelfTotals(BaseModel):
    shelf_location: str
    sections: int
    total_capacity: int
    total_count: int
    available_space: int
    utilization: float


class InventoryStatusResponse(BaseModel):
    total_capacity: int
    total_count: int
    utilization: float
    shelves: List[ShelfTotals]
    locations: List[ShelfLocation]
    over_capacity: List[ShelfLocation]


class ShelfConfigRequest(BaseModel):
    shelf_location: str = Field(min_length=1, max_length=50)
    section: str = Field(min_length=1, max_length=20)
    max_capacity: int = Field(ge=1, le=100000)
    genre_preference: Optional[str] = Field(default=None, max_length=100)

    @field_validator("shelf_location", "section", "genre_preference", mode="before")
    @classmethod
    def strip_text(cls, v):
        if isinstance(v, str):
            v = v.strip()
            return v or None
        return v

    @field_validator("shelf_location")
    @classmethod
    def upper_shelf(cls, v: str) -> str:
        return v.upper()

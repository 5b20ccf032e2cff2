"""
Intake tables

- batch_uploads: one row per accepted manifest
- incoming_books: one row per manifest record, the durable work queue
- shelf_capacity: capacity ledger, unique per (shelf_location, section)
- inventory_books: placed inventory, unique per ISBN
"""
from datetime import datetime, timezone

from sqlalchemy import (
    JSON, CheckConstraint, Column, DateTime, ForeignKey, Index, Integer, String,
    Text, UniqueConstraint,
)
from sqlalchemy.sql import func

from bookstack.core.database import Base


def _utcnow():
    return datetime.now(timezone.utc)


class BatchUploadRow(Base):
    """An accepted manifest and its aggregate progress"""
    __tablename__ = "batch_uploads"

    id = Column(String(36), primary_key=True)
    filename = Column(String(255), nullable=True)

    total_records = Column(Integer, nullable=False, default=0)
    processed_records = Column(Integer, nullable=False, default=0)
    successful_records = Column(Integer, nullable=False, default=0)
    failed_records = Column(Integer, nullable=False, default=0)

    status = Column(String(20), nullable=False, default="pending", index=True)
    # pending, processing, completed, failed

    # [{"row": 2, "error": "...", "identifier": "978..."}]
    error_log = Column(JSON, nullable=False, default=list)

    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, server_default=func.now())
    completed_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'processing', 'completed', 'failed')",
            name="chk_batch_status",
        ),
    )


class IncomingRecordRow(Base):
    """A manifest record waiting for (or done with) enrichment and placement"""
    __tablename__ = "incoming_books"

    id = Column(Integer, primary_key=True, autoincrement=True)
    batch_id = Column(String(36), ForeignKey("batch_uploads.id", ondelete="CASCADE"), nullable=False, index=True)
    row_number = Column(Integer, nullable=False)
    raw_data = Column(JSON, nullable=True)

    # Identifiers and caller-supplied metadata
    isbn = Column(String(20), nullable=True, index=True)
    upc = Column(String(20), nullable=True)
    asin = Column(String(20), nullable=True)
    title = Column(String(255), nullable=True)
    author = Column(String(255), nullable=True)
    publisher = Column(String(255), nullable=True)
    description = Column(Text, nullable=True)
    genre = Column(String(100), nullable=True)
    format = Column(String(50), nullable=True)
    condition = Column(String(20), nullable=False, default="Good")
    quantity = Column(Integer, nullable=False, default=1)
    shelf_preference = Column(String(50), nullable=True)
    user_image_reference = Column(String(500), nullable=True)

    # Workflow
    processing_status = Column(String(20), nullable=False, default="pending", index=True)
    # pending, processing, completed, failed
    assigned_shelf = Column(String(50), nullable=True)
    assigned_section = Column(String(20), nullable=True)
    placement_reason = Column(String(30), nullable=True)
    enrichment_source = Column(String(30), nullable=True)
    enrichment_status = Column(String(20), nullable=True)
    enrichment_attempts = Column(Integer, nullable=False, default=0)
    error_message = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, server_default=func.now())
    processed_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        CheckConstraint(
            "processing_status IN ('pending', 'processing', 'completed', 'failed')",
            name="chk_incoming_status",
        ),
        CheckConstraint("quantity >= 0", name="chk_incoming_quantity"),
        Index("ix_incoming_batch_status", "batch_id", "processing_status"),
    )


class ShelfCapacityRow(Base):
    """Capacity of one shelf section"""
    __tablename__ = "shelf_capacity"

    id = Column(Integer, primary_key=True, autoincrement=True)
    shelf_location = Column(String(50), nullable=False, index=True)
    section = Column(String(20), nullable=False)
    max_capacity = Column(Integer, nullable=False, default=100)
    current_count = Column(Integer, nullable=False, default=0)
    genre_preference = Column(String(100), nullable=True)

    updated_at = Column(
        DateTime(timezone=True), nullable=False, default=_utcnow,
        server_default=func.now(), onupdate=_utcnow,
    )

    __table_args__ = (
        UniqueConstraint("shelf_location", "section", name="uq_shelf_section"),
        CheckConstraint("current_count >= 0", name="chk_shelf_count_non_negative"),
    )


class InventoryItemRow(Base):
    """Placed inventory; re-ingesting an ISBN adds to its quantity"""
    __tablename__ = "inventory_books"

    id = Column(Integer, primary_key=True, autoincrement=True)
    isbn = Column(String(20), nullable=True, unique=True)
    upc = Column(String(20), nullable=True)
    asin = Column(String(20), nullable=True)
    title = Column(String(255), nullable=True)
    author = Column(String(255), nullable=True)
    publisher = Column(String(255), nullable=True)
    description = Column(Text, nullable=True)
    genre = Column(String(100), nullable=True)
    pages = Column(Integer, nullable=True)
    format = Column(String(50), nullable=True)
    cover_url = Column(String(500), nullable=True)
    user_image_reference = Column(String(500), nullable=True)
    condition = Column(String(20), nullable=False, default="Good")
    shelf_location = Column(String(50), nullable=True)
    section = Column(String(20), nullable=True)
    quantity = Column(Integer, nullable=False, default=1)
    enrichment_source = Column(String(30), nullable=True)
    enrichment_status = Column(String(20), nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, server_default=func.now())
    updated_at = Column(
        DateTime(timezone=True), nullable=False, default=_utcnow,
        server_default=func.now(), onupdate=_utcnow,
    )

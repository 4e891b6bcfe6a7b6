# catalog_importer/models.py
from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from .database import Base
from .utils import utcnow


class JobStatus:
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"

    TERMINAL = (COMPLETED, FAILED)
    ACTIVE = (PENDING, PROCESSING)


class Category(Base):
    __tablename__ = "categories"
    id = Column(String(36), primary_key=True)
    store_id = Column(String(64), nullable=False, index=True)
    name = Column(String(255), nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)


class Product(Base):
    __tablename__ = "products"
    id = Column(String(36), primary_key=True)
    store_id = Column(String(64), nullable=False, index=True)
    category_id = Column(String(36), ForeignKey("categories.id"), nullable=False, index=True)
    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    price = Column(Numeric(10, 2), nullable=False)
    keywords = Column(JSON, nullable=False, default=list)
    download_url = Column(String(2048), nullable=True)
    video_url = Column(String(2048), nullable=True)
    is_featured = Column(Boolean, nullable=False, default=False)
    is_archived = Column(Boolean, nullable=False, default=False)
    downloads_count = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    category = relationship("Category", lazy="joined")
    images = relationship(
        "ProductImage",
        order_by="ProductImage.position",
        cascade="all, delete-orphan",
        lazy="selectin",
    )

    # Case-sensitive: "Logo" and "logo" are different entries.
    __table_args__ = (
        UniqueConstraint("store_id", "name", name="uq_products_store_name"),
        Index("ix_products_store_created", "store_id", "created_at"),
    )


class ProductImage(Base):
    __tablename__ = "product_images"
    id = Column(String(36), primary_key=True)
    product_id = Column(
        String(36), ForeignKey("products.id", ondelete="CASCADE"), nullable=False, index=True
    )
    url = Column(String(2048), nullable=False)
    position = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)


class ImportJob(Base):
    __tablename__ = "import_jobs"
    id = Column(String(36), primary_key=True)
    store_id = Column(String(64), nullable=False, index=True)
    user_id = Column(String(128), nullable=True)
    file_name = Column(String(512), nullable=True)
    total_rows = Column(Integer, nullable=False)
    processed = Column(Integer, nullable=False, default=0)
    failed = Column(Integer, nullable=False, default=0)
    status = Column(String(16), nullable=False, default=JobStatus.PENDING, index=True)
    total_chunks = Column(Integer, nullable=False, default=0)
    dispatched_chunks = Column(Integer, nullable=False, default=0)
    dispatch_state = Column(String(32), nullable=True)
    abort_requested = Column(Boolean, nullable=False, default=False)
    error = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    started_at = Column(DateTime(timezone=True), nullable=True)
    finished_at = Column(DateTime(timezone=True), nullable=True)


class ImportChunkReceipt(Base):
    """One row per chunk whose outcome was counted on its job."""

    __tablename__ = "import_chunk_receipts"
    id = Column(Integer, primary_key=True, autoincrement=True)
    job_id = Column(
        String(36), ForeignKey("import_jobs.id", ondelete="CASCADE"), nullable=False
    )
    chunk_index = Column(Integer, nullable=False)
    succeeded = Column(Integer, nullable=False, default=0)
    failed = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (
        UniqueConstraint("job_id", "chunk_index", name="uq_chunk_receipts_job_chunk"),
    )


class ImportRowError(Base):
    __tablename__ = "import_row_errors"
    id = Column(Integer, primary_key=True, autoincrement=True)
    job_id = Column(
        String(36), ForeignKey("import_jobs.id", ondelete="CASCADE"), nullable=False, index=True
    )
    row = Column(Integer, nullable=True)
    name = Column(String(255), nullable=True)
    field = Column(String(64), nullable=True)
    kind = Column(String(32), nullable=False)
    message = Column(Text, nullable=False)

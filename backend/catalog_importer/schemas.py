# catalog_importer/schemas.py
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional
from urllib.parse import urlparse

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

from .utils import loose_bool, split_list

PRICE_QUANT = Decimal("0.01")
MAX_PRICE = Decimal("99999999.99")


def _check_url(value: str) -> str:
    parsed = urlparse(value)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise ValueError(f"not a valid http(s) URL: {value!r}")
    return value


class ProductRow(BaseModel):
    """One feed row normalized to the catalog entry shape.

    Accepts the camelCase keys produced by the dashboard CSV tools as well as
    snake_case. Serialized with ``model_dump(mode="json")`` it is also the row
    format carried inside queue messages.
    """

    model_config = ConfigDict(extra="ignore", str_strip_whitespace=True)

    row: int = 0
    name: str = Field(min_length=1, max_length=255)
    description: Optional[str] = Field(default=None, max_length=10000)
    price: Decimal
    category_id: str = Field(
        min_length=1,
        max_length=36,
        validation_alias=AliasChoices("category_id", "categoryId", "category"),
    )
    download_url: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("download_url", "downloadUrl")
    )
    video_url: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("video_url", "videoUrl")
    )
    keywords: List[str] = Field(default_factory=list)
    # None means "not supplied": existing images are left alone.
    image_urls: Optional[List[str]] = Field(
        default=None,
        validation_alias=AliasChoices("image_urls", "imageUrls", "imageUrl", "images"),
    )
    is_featured: bool = Field(
        default=False, validation_alias=AliasChoices("is_featured", "isFeatured")
    )
    is_archived: bool = Field(
        default=False, validation_alias=AliasChoices("is_archived", "isArchived")
    )

    @field_validator("name", "category_id", "description", mode="before")
    @classmethod
    def _coerce_text(cls, v):
        if isinstance(v, bool):
            raise ValueError("expected text")
        if isinstance(v, (int, float, Decimal)):
            return str(v)
        return v

    @field_validator("description", mode="before")
    @classmethod
    def _blank_description(cls, v):
        if isinstance(v, str) and not v.strip():
            return None
        return v

    @field_validator("price", mode="before")
    @classmethod
    def _parse_price(cls, v):
        if v is None or isinstance(v, bool):
            raise ValueError("price is required")
        if isinstance(v, str):
            text = v.replace(",", "").replace("$", "").strip()
            if not text:
                raise ValueError("price is required")
        else:
            text = str(v)
        try:
            price = Decimal(text)
        except InvalidOperation:
            raise ValueError(f"price is not a number: {v!r}")
        if not price.is_finite():
            raise ValueError(f"price is not a number: {v!r}")
        if price < 0:
            raise ValueError("price must be 0 or greater")
        price = price.quantize(PRICE_QUANT)
        if price > MAX_PRICE:
            raise ValueError("price is too large")
        return price

    @field_validator("download_url", "video_url", mode="before")
    @classmethod
    def _parse_link(cls, v):
        # spreadsheet exports give {"text": ..., "hyperlink": ...}
        if isinstance(v, dict):
            v = v.get("hyperlink")
        if v is None:
            return None
        text = str(v).strip()
        if not text:
            return None
        return _check_url(text)

    @field_validator("keywords", mode="before")
    @classmethod
    def _parse_keywords(cls, v):
        seen = set()
        out = []
        for keyword in split_list(v):
            if keyword not in seen:
                seen.add(keyword)
                out.append(keyword)
        return out

    @field_validator("image_urls", mode="before")
    @classmethod
    def _parse_images(cls, v):
        if v is None:
            return None
        return [_check_url(url) for url in split_list(v)]

    @field_validator("is_featured", "is_archived", mode="before")
    @classmethod
    def _parse_flag(cls, v):
        return loose_bool(v)


class ChunkMessage(BaseModel):
    job_id: str
    store_id: str
    chunk_index: int
    rows: List[ProductRow]


class RowErrorOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    row: Optional[int] = None
    name: Optional[str] = None
    field: Optional[str] = None
    kind: str
    message: str


class RenameOut(BaseModel):
    row: int
    original: str
    renamed: str


class BulkImportRequest(BaseModel):
    items: List[Dict[str, Any]]
    file_name: Optional[str] = None


class ImportAccepted(BaseModel):
    job_id: str
    total_rows: int
    valid_rows: int
    failed_rows: int
    total_chunks: int
    dispatched_chunks: int
    dispatch_state: Optional[str] = None
    partial: bool
    errors: List[RowErrorOut] = []
    renamed: List[RenameOut] = []


class ImportStatusOut(BaseModel):
    job_id: str
    store_id: str
    status: str
    total: int
    processed: int
    failed: int
    succeeded: int
    outstanding: int
    total_chunks: int
    dispatched_chunks: int
    dispatch_state: Optional[str] = None
    abort_requested: bool = False
    error: Optional[str] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    errors: List[RowErrorOut] = []


class ImageOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    url: str
    position: int


class CategoryOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    name: str


class ProductOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    store_id: str
    name: str
    description: Optional[str] = None
    price: Decimal
    category_id: str
    category: Optional[CategoryOut] = None
    keywords: List[str] = []
    download_url: Optional[str] = None
    video_url: Optional[str] = None
    is_featured: bool
    is_archived: bool
    downloads_count: int = 0
    images: List[ImageOut] = []
    created_at: datetime
    updated_at: datetime


class SearchResponse(BaseModel):
    results: List[ProductOut]
    total: int
    page: int
    page_size: int
    page_count: int
    source: str


class AutocompleteResponse(BaseModel):
    suggestions: List[str]


class RebuildQueued(BaseModel):
    task_id: str

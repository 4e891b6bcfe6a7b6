"""Merge one queued chunk into the catalog.

Each row is looked up by (store, name) and either created, updated field by
field, or left alone when nothing differs; only rows that were written are
pushed to the search index. Rows fail independently. If the database itself
is unreachable the whole chunk raises TransportError so the queue redelivers
it; rows merged before that are safe to merge again.
"""
from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import List, Optional, Union

from sqlalchemy.exc import IntegrityError, OperationalError, SQLAlchemyError

from . import crud
from .errors import (
    CatalogImportError,
    DanglingReferenceError,
    JobNotFoundError,
    JobStateError,
    TransportError,
)
from .jobs import JobTracker
from .schemas import ChunkMessage, ProductRow
from .sync import SearchSynchronizer
from .validation import RowError

logger = logging.getLogger(__name__)

CREATED = "created"
UPDATED = "updated"
UNCHANGED = "unchanged"
FAILED = "failed"


@dataclass
class RowResult:
    action: str
    entry_id: Optional[str] = None
    error: Optional[RowError] = None
    index_stale: bool = False


@dataclass
class ChunkOutcome:
    job_id: str
    chunk_index: int
    created: int = 0
    updated: int = 0
    unchanged: int = 0
    failed: int = 0
    index_stale: int = 0
    redelivered: bool = False
    errors: List[RowError] = field(default_factory=list)

    @property
    def succeeded(self) -> int:
        return self.created + self.updated + self.unchanged


class MergeWorker:
    def __init__(
        self,
        session_factory,
        synchronizer: SearchSynchronizer,
        tracker: JobTracker,
        row_concurrency: int = 4,
    ):
        self.session_factory = session_factory
        self.synchronizer = synchronizer
        self.tracker = tracker
        self.row_concurrency = max(1, row_concurrency)

    def process(self, message: Union[ChunkMessage, dict]) -> ChunkOutcome:
        chunk = message if isinstance(message, ChunkMessage) else ChunkMessage.model_validate(message)
        outcome = ChunkOutcome(chunk.job_id, chunk.chunk_index)

        if self.tracker.is_chunk_recorded(chunk.job_id, chunk.chunk_index):
            logger.info("Chunk %d of job %s was already merged", chunk.chunk_index, chunk.job_id)
            outcome.redelivered = True
            return outcome

        rows = chunk.rows
        workers = min(self.row_concurrency, len(rows))
        if workers > 1:
            with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="merge-row") as pool:
                results = list(pool.map(lambda r: self.merge_row(chunk.store_id, r), rows))
        else:
            results = [self.merge_row(chunk.store_id, r) for r in rows]

        for result in results:
            if result.action == CREATED:
                outcome.created += 1
            elif result.action == UPDATED:
                outcome.updated += 1
            elif result.action == UNCHANGED:
                outcome.unchanged += 1
            else:
                outcome.failed += 1
                outcome.errors.append(result.error)
            if result.index_stale:
                outcome.index_stale += 1

        logger.info(
            "Job %s chunk %d merged: %d created, %d updated, %d unchanged, %d failed",
            chunk.job_id, chunk.chunk_index,
            outcome.created, outcome.updated, outcome.unchanged, outcome.failed,
        )
        try:
            counted = self.tracker.record_chunk(
                chunk.job_id, chunk.chunk_index, outcome.succeeded, outcome.failed, outcome.errors
            )
            outcome.redelivered = not counted
        except (JobStateError, JobNotFoundError) as e:
            logger.error("Could not record chunk %d of job %s: %s", chunk.chunk_index, chunk.job_id, e)
        return outcome

    def merge_row(self, store_id: str, row: ProductRow) -> RowResult:
        try:
            action, entry_id = self._write(store_id, row)
        except OperationalError as e:
            raise TransportError(f"catalog database unavailable: {e}") from e
        except (CatalogImportError, SQLAlchemyError, ValueError) as e:
            logger.warning("Row %d (%r) failed: %s", row.row, row.name, e)
            return RowResult(FAILED, error=RowError.from_exception(row.row, row.name, e))

        result = RowResult(action, entry_id)
        if action in (CREATED, UPDATED):
            try:
                self.synchronizer.upsert(entry_id)
            except TransportError as e:
                # catalog write stands; a later upsert or rebuild repairs the index
                logger.warning("Search index stale for product %s: %s", entry_id, e)
                result.index_stale = True
        return result

    def _write(self, store_id: str, row: ProductRow):
        with self.session_factory() as db:
            # the category may have been deleted since validation
            if not crud.category_exists(db, store_id, row.category_id):
                raise DanglingReferenceError(
                    f"Category {row.category_id} does not exist in store {store_id}"
                )
            obj = crud.get_product_by_name(db, store_id, row.name)
            if obj is None:
                try:
                    obj = crud.create_product(db, store_id, row)
                    return CREATED, obj.id
                except IntegrityError:
                    # another worker created the same name first
                    db.rollback()
                    obj = crud.get_product_by_name(db, store_id, row.name)
                    if obj is None:
                        raise
            changed = crud.diff_product(obj, row)
            if not changed:
                return UNCHANGED, obj.id
            crud.apply_changes(db, obj, row, changed)
            return UPDATED, obj.id

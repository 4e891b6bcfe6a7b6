"""Entry points for bulk import, import status, search and entry maintenance.

``ImportPipeline`` wires the components together for one process. The API
process uses it to submit imports and answer reads; Celery workers use it to
merge chunks and rebuild the index.
"""
from __future__ import annotations

import logging
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError

from . import crud
from .chunking import plan_chunks
from .config import Settings
from .crud import CategoryStore
from .dispatch import Dispatcher, TaskQueue
from .errors import JobNotFoundError, ProductNotFoundError, SubmissionError, TransportError
from .jobs import JobTracker
from .merge import ChunkOutcome, MergeWorker
from .search import SearchGateway, SearchPage
from .sync import RebuildResult, SearchSynchronizer
from .validation import validate_rows

logger = logging.getLogger(__name__)

ProgressHook = Callable[[Dict[str, Any]], None]


class ImportPipeline:
    def __init__(
        self,
        session_factory,
        queue: TaskQueue,
        index,
        settings: Settings,
        on_progress: Optional[ProgressHook] = None,
    ):
        self.session_factory = session_factory
        self.settings = settings
        self.on_progress = on_progress
        self.categories = CategoryStore(session_factory)
        self.tracker = JobTracker(session_factory)
        self.dispatcher = Dispatcher(
            queue,
            self.tracker,
            batch_size=settings.dispatch_batch_size,
            max_attempts=settings.dispatch_max_attempts,
            backoff=settings.dispatch_backoff,
        )
        self.synchronizer = SearchSynchronizer(
            session_factory,
            index,
            index_archived=settings.index_archived,
            max_attempts=settings.index_max_attempts,
            backoff=settings.index_backoff,
            batch_size=settings.rebuild_batch_size,
        )
        self.worker = MergeWorker(
            session_factory,
            self.synchronizer,
            self.tracker,
            row_concurrency=settings.row_concurrency,
        )
        self.gateway = SearchGateway(session_factory, index)

    # ---- import ----

    def submit_import(
        self,
        store_id: str,
        rows: Any,
        user_id: Optional[str] = None,
        file_name: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Validate, plan and dispatch one submission.

        Returns as soon as dispatch stops, which may be before every chunk
        was queued (``partial`` is then True and ``dispatched_chunks`` says
        how far it got). Bad rows are counted as failed right away.
        """
        if not isinstance(rows, list):
            raise SubmissionError("rows must be a list")
        if not rows:
            raise SubmissionError("No rows submitted")
        if len(rows) > self.settings.max_import_rows:
            raise SubmissionError(
                f"Too many rows: {len(rows)} (max {self.settings.max_import_rows})"
            )

        outcome = self._validate(store_id, rows)
        job_id = self.tracker.create_job(store_id, len(rows), user_id=user_id, file_name=file_name)
        logger.info(
            "Accepted import %s for store %s: %d row(s), %d valid",
            job_id, store_id, len(rows), len(outcome.valid),
        )

        if outcome.errors:
            self.tracker.record_row_errors(job_id, outcome.errors)
            self.tracker.record_outcome(job_id, False, outcome.failed)

        accepted = {
            "job_id": job_id,
            "total_rows": len(rows),
            "valid_rows": len(outcome.valid),
            "failed_rows": outcome.failed,
            "total_chunks": 0,
            "dispatched_chunks": 0,
            "dispatch_state": None,
            "partial": False,
            "errors": [e.as_dict() for e in outcome.errors[:100]],
            "renamed": [
                {"row": r.row, "original": r.original, "renamed": r.renamed}
                for r in outcome.renames
            ],
        }
        if outcome.valid:
            chunks = plan_chunks(
                job_id,
                store_id,
                outcome.valid,
                self.settings.chunk_size,
                self.settings.chunk_max_bytes,
            )
            result = self.dispatcher.dispatch(job_id, chunks)
            accepted.update(
                total_chunks=result.total_chunks,
                dispatched_chunks=result.dispatched_chunks,
                dispatch_state=result.state.value,
                partial=result.partial,
            )
        self.publish_progress(job_id)
        return accepted

    def _validate(self, store_id: str, rows: List[Any]):
        try:
            return validate_rows(store_id, rows, self.categories.exists, self._names_in_use)
        except SQLAlchemyError as e:
            raise TransportError(f"catalog lookup failed: {e}") from e

    def _names_in_use(self, store_id: str, names, prefixes):
        with self.session_factory() as db:
            return crud.names_in_use(db, store_id, names, prefixes)

    def get_import_status(self, job_id: str, store_id: Optional[str] = None) -> Dict[str, Any]:
        status = self.tracker.get_status(job_id)
        if store_id is not None and status["store_id"] != store_id:
            # not this store's job; do not reveal that it exists
            raise JobNotFoundError(f"import job {job_id} not found")
        return status

    def abort(self, job_id: str, store_id: Optional[str] = None) -> Dict[str, Any]:
        self.get_import_status(job_id, store_id)
        self.tracker.request_abort(job_id)
        status = self.tracker.get_status(job_id)
        self.publish_progress(job_id, status)
        return status

    def merge_chunk(self, message: Dict[str, Any]) -> ChunkOutcome:
        outcome = self.worker.process(message)
        self.publish_progress(outcome.job_id)
        return outcome

    def publish_progress(self, job_id: str, status: Optional[Dict[str, Any]] = None) -> None:
        if self.on_progress is None:
            return
        try:
            status = status or self.tracker.get_status(job_id)
        except JobNotFoundError:
            return
        self.on_progress(status)

    # ---- search ----

    def search(
        self,
        store_id: str,
        query: str,
        category_id: Optional[str] = None,
        page: int = 1,
        page_size: int = 48,
    ) -> SearchPage:
        return self.gateway.search(store_id, query, category_id=category_id, page=page, page_size=page_size)

    def autocomplete(
        self,
        store_id: str,
        prefix: str,
        limit: int = 10,
        category_id: Optional[str] = None,
    ) -> List[str]:
        return self.gateway.autocomplete(store_id, prefix, limit=limit, category_id=category_id)

    def rebuild_search_index(self) -> RebuildResult:
        return self.synchronizer.rebuild_all()

    # ---- entry maintenance ----

    def _owned_product(self, db, store_id: str, product_id: str):
        obj = crud.get_product(db, product_id)
        if obj is None or obj.store_id != store_id:
            raise ProductNotFoundError(f"product {product_id} not found")
        return obj

    def archive_product(self, store_id: str, product_id: str, archived: bool = True):
        with self.session_factory() as db:
            obj = self._owned_product(db, store_id, product_id)
            if bool(obj.is_archived) != archived:
                crud.set_archived(db, obj, archived)
                logger.info("Product %s %s", product_id, "archived" if archived else "restored")
        self._sync_quietly(product_id)
        return obj

    def delete_product(self, store_id: str, product_id: str) -> None:
        with self.session_factory() as db:
            obj = self._owned_product(db, store_id, product_id)
            crud.delete_product(db, obj)
        logger.info("Deleted product %s from store %s", product_id, store_id)
        self._sync_quietly(product_id)

    def _sync_quietly(self, product_id: str) -> None:
        try:
            self.synchronizer.upsert(product_id)
        except TransportError as e:
            logger.warning("Search index stale for product %s: %s", product_id, e)

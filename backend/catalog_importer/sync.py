"""Keep the search index in step with the catalog.

``upsert`` and ``remove`` are safe to repeat: documents are always written
whole and a missing document counts as removed. ``rebuild_all`` loads a fresh
staging index and only then swaps it live, so searches keep hitting the old
index for the whole rebuild and a failed rebuild leaves it untouched.
"""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional

from sqlalchemy.exc import SQLAlchemyError

from . import crud
from .errors import TransportError
from .search_index import IndexRef, to_search_document

logger = logging.getLogger(__name__)


class RebuildFailed(Exception):
    pass


@dataclass
class RebuildResult:
    ok: bool
    indexed: int = 0
    batches: int = 0
    index_name: Optional[str] = None
    previous_index: Optional[str] = None
    error: Optional[str] = None


class SearchSynchronizer:
    def __init__(
        self,
        session_factory,
        index,
        index_archived: bool = True,
        max_attempts: int = 3,
        backoff: float = 0.5,
        batch_size: int = 1000,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.session_factory = session_factory
        self.index = index
        self.index_archived = index_archived
        self.max_attempts = max(1, max_attempts)
        self.backoff = backoff
        self.batch_size = batch_size
        self.sleep = sleep

    def _indexable(self, product) -> bool:
        return self.index_archived or not product.is_archived

    def _retry(self, what: str, fn):
        for attempt in range(self.max_attempts):
            try:
                return fn()
            except TransportError as e:
                if attempt + 1 >= self.max_attempts:
                    raise
                delay = self.backoff * (2 ** attempt)
                logger.warning(
                    "%s failed (%s), retry %d/%d in %.1fs",
                    what, e, attempt + 1, self.max_attempts - 1, delay,
                )
                self.sleep(delay)

    def upsert(self, entry_id: str) -> str:
        """Project the current catalog entry into the index.

        Returns "upserted", or "removed" when the entry is gone or excluded.
        """
        with self.session_factory() as db:
            product = crud.get_product(db, entry_id)
            doc = to_search_document(product) if product is not None and self._indexable(product) else None
        if doc is None:
            self.remove(entry_id)
            return "removed"
        self._retry(f"Index upsert of {entry_id}", lambda: self.index.upsert(doc))
        logger.debug("Synced product %s to search index", entry_id)
        return "upserted"

    def remove(self, entry_id: str) -> bool:
        found = self._retry(f"Index delete of {entry_id}", lambda: self.index.delete(entry_id))
        if not found:
            logger.debug("Product %s was not in the search index", entry_id)
        return bool(found)

    def rebuild_all(self) -> RebuildResult:
        leftover = self._retry("Staging lookup", self.index.staging)
        if leftover is not None:
            logger.warning("Dropping leftover staging index %s", leftover.name)
            self._retry("Staging drop", lambda: self.index.drop(leftover))

        staging: IndexRef = self._retry("Staging create", self.index.create_staging)
        result = RebuildResult(ok=False, index_name=staging.name)
        try:
            with self.session_factory() as db:
                for batch in crud.iter_product_batches(db, self.batch_size):
                    docs = [to_search_document(p) for p in batch if self._indexable(p)]
                    result.batches += 1
                    self._load_batch(staging, docs, result.batches)
                    result.indexed += len(docs)
                    logger.info("Rebuild batch %d: %d documents staged", result.batches, result.indexed)
                    db.expunge_all()
        except (RebuildFailed, TransportError, SQLAlchemyError) as e:
            return self._discard(staging, result, e)

        try:
            previous = self._retry("Alias swap", lambda: self.index.promote(staging))
        except TransportError as e:
            return self._swap_failed(staging, result, e)
        result.ok = True
        if previous is not None:
            result.previous_index = previous.name
            try:
                self.index.drop(previous)
            except TransportError as e:
                logger.warning("Could not drop old index %s: %s", previous.name, e)
        logger.info("Search index rebuilt: %d documents in %s", result.indexed, staging.name)
        return result

    def _discard(self, staging: IndexRef, result: RebuildResult, error: Exception) -> RebuildResult:
        result.error = str(error)
        logger.error("Search index rebuild failed, live index kept: %s", error)
        try:
            self.index.drop(staging)
        except TransportError as drop_error:
            logger.warning("Could not drop staging index %s: %s", staging.name, drop_error)
        return result

    def _swap_failed(self, staging: IndexRef, result: RebuildResult, error: Exception) -> RebuildResult:
        try:
            live = self.index.live()
        except TransportError:
            # staging may already be live; the next rebuild drops it if not
            result.error = str(error)
            logger.error("Alias swap failed and the live index is unknown, keeping %s: %s", staging.name, error)
            return result
        if live is not None and live.name == staging.name:
            logger.warning("Alias swap reported %s but %s is live", error, staging.name)
            result.ok = True
            return result
        return self._discard(staging, result, error)

    def _load_batch(self, staging: IndexRef, docs, batch_number: int) -> None:
        if not docs:
            return
        last_error = None
        for attempt in range(self.max_attempts):
            try:
                errors = self.index.bulk_load(staging, docs)
            except TransportError as e:
                errors = [{"error": str(e)}]
            if not errors:
                return
            last_error = errors[0]
            if attempt + 1 < self.max_attempts:
                delay = self.backoff * (2 ** attempt)
                logger.warning(
                    "Rebuild batch %d: %d error(s), retry %d/%d in %.1fs",
                    batch_number, len(errors), attempt + 1, self.max_attempts - 1, delay,
                )
                self.sleep(delay)
        raise RebuildFailed(f"batch {batch_number} failed after {self.max_attempts} attempt(s): {last_error}")

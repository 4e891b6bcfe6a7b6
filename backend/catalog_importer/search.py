"""Storefront search with a catalog fallback.

The index only supplies ids and their order; full entries always come from
the catalog. If the index is down the same request is answered from the
catalog with a plain substring match.
"""
from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import List, Optional

from sqlalchemy.exc import SQLAlchemyError

from . import crud
from .errors import SearchFailedError, TransportError

logger = logging.getLogger(__name__)

MAX_PAGE_SIZE = 100


@dataclass
class SearchPage:
    results: list
    total: int
    page: int
    page_size: int
    source: str

    @property
    def page_count(self) -> int:
        return math.ceil(self.total / self.page_size) if self.page_size else 0


class SearchGateway:
    def __init__(self, session_factory, index):
        self.session_factory = session_factory
        self.index = index

    def search(
        self,
        store_id: str,
        query: str,
        category_id: Optional[str] = None,
        page: int = 1,
        page_size: int = 48,
    ) -> SearchPage:
        page = max(page, 1)
        page_size = min(max(page_size, 1), MAX_PAGE_SIZE)
        try:
            return self._search_index(store_id, query, category_id, page, page_size)
        except TransportError as e:
            logger.warning("Search index unavailable, falling back to catalog: %s", e)
        try:
            return self._search_catalog(store_id, query, category_id, page, page_size)
        except SQLAlchemyError as e:
            logger.error("Catalog fallback search failed: %s", e)
            raise SearchFailedError("Search failed") from e

    def _search_index(self, store_id, query, category_id, page, page_size) -> SearchPage:
        hits = self.index.search(store_id, query, category_id=category_id, page=page, page_size=page_size)
        with self.session_factory() as db:
            found = crud.get_products_by_ids(db, hits.ids)
        results = [found[i] for i in hits.ids if i in found]
        stale = len(hits.ids) - len(results)
        if stale:
            logger.info("Dropped %d stale search hit(s) for store %s", stale, store_id)
        return SearchPage(results, max(hits.total - stale, len(results)), page, page_size, "index")

    def _search_catalog(self, store_id, query, category_id, page, page_size) -> SearchPage:
        with self.session_factory() as db:
            items, total = crud.fallback_search(
                db,
                store_id,
                query,
                category_id=category_id,
                skip=(page - 1) * page_size,
                limit=page_size,
            )
        return SearchPage(items, total, page, page_size, "fallback")

    def autocomplete(
        self,
        store_id: str,
        prefix: str,
        limit: int = 10,
        category_id: Optional[str] = None,
    ) -> List[str]:
        if not prefix or not prefix.strip():
            return []
        limit = min(max(limit, 1), MAX_PAGE_SIZE)
        try:
            return self.index.suggest(store_id, prefix, limit=limit, category_id=category_id)
        except TransportError as e:
            logger.warning("Search index unavailable for autocomplete: %s", e)
        try:
            with self.session_factory() as db:
                return crud.name_prefix_suggestions(db, store_id, prefix, limit, category_id)
        except SQLAlchemyError as e:
            logger.error("Catalog fallback autocomplete failed: %s", e)
            raise SearchFailedError("Autocomplete failed") from e

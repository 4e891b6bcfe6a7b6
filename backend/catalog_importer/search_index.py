"""
Product Search Index

Thin client over Elasticsearch for the product search documents.
Handles the read/write alias layout, error translation, and staged rebuilds.

Layout:
    products           -> alias, always points at exactly one LIVE index
    products-staging   -> alias, only exists while a rebuild is loading
    products_<stamp>   -> concrete indices

Readers and upserts only ever address the aliases, so a rebuild can load a
fresh index and repoint ``products`` in one ``update_aliases`` call without
the live index ever being empty. Deletes resolve the aliases to concrete
indices first.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional

from elasticsearch import ApiError, Elasticsearch, NotFoundError, helpers
from elasticsearch import TransportError as ESTransportError

from .errors import SearchUnavailableError
from .utils import new_id

logger = logging.getLogger(__name__)

PRODUCT_MAPPINGS = {
    "dynamic": "strict",
    "properties": {
        "id": {"type": "keyword"},
        "store_id": {"type": "keyword"},
        "name": {"type": "text", "fields": {"raw": {"type": "keyword"}}},
        "description": {"type": "text"},
        "keywords": {"type": "text", "fields": {"raw": {"type": "keyword"}}},
        "category_id": {"type": "keyword"},
        "category_name": {"type": "keyword"},
        "price": {"type": "float"},
        "downloads_count": {"type": "integer"},
        "is_archived": {"type": "boolean"},
        "is_featured": {"type": "boolean"},
        "created_at": {"type": "long"},
    },
}

PRODUCT_SETTINGS = {"number_of_shards": 1}

SEARCH_FIELDS = ["name^3", "keywords^2", "description"]
SUGGEST_FIELDS = ["name^2", "keywords"]
# create errors for documents a concurrent upsert already wrote
CONFLICT_STATUS = 409


class IndexKind(str, Enum):
    STAGING = "STAGING"
    LIVE = "LIVE"


@dataclass(frozen=True)
class IndexRef:
    kind: IndexKind
    name: str


@dataclass
class SearchHits:
    ids: List[str]
    total: int


def to_search_document(product) -> Dict[str, Any]:
    """Project a catalog entry onto its search document."""
    created = product.created_at
    if created is not None and created.tzinfo is None:
        created = created.replace(tzinfo=timezone.utc)
    return {
        "id": product.id,
        "store_id": product.store_id,
        "name": product.name,
        "description": product.description or "",
        "keywords": list(product.keywords or []),
        "category_id": product.category_id,
        "category_name": product.category.name if product.category is not None else "",
        "price": float(product.price) if product.price is not None else 0.0,
        "downloads_count": product.downloads_count or 0,
        "is_archived": bool(product.is_archived),
        "is_featured": bool(product.is_featured),
        "created_at": int(created.timestamp()) if created is not None else 0,
    }


class ProductSearchIndex:
    """
    Product index client.

    Every Elasticsearch failure (connection, timeout, HTTP error) surfaces as
    SearchUnavailableError; "document not found" on delete is not a failure.

    Usage:
        index = ProductSearchIndex(Elasticsearch("http://localhost:9200"))
        index.upsert(to_search_document(product))
        hits = index.search(store_id, "canvas mockup")
    """

    def __init__(self, client: Elasticsearch, alias: str = "products"):
        self.client = client
        self.alias = alias
        self.staging_alias = f"{alias}-staging"
        self._live_checked = False

    @classmethod
    def from_settings(cls, settings) -> "ProductSearchIndex":
        client = Elasticsearch(
            settings.search_url,
            request_timeout=settings.search_timeout,
            max_retries=1,
            retry_on_timeout=False,
        )
        return cls(client, alias=settings.search_alias)

    def _call(self, what: str, fn, *args, **kwargs):
        try:
            return fn(*args, **kwargs)
        except NotFoundError:
            raise
        except (ApiError, ESTransportError) as e:
            raise SearchUnavailableError(f"search index {what} failed: {e}") from e

    # ---- index / alias management ----

    def _aliased(self, alias: str) -> List[str]:
        try:
            resp = self._call("alias lookup", self.client.indices.get_alias, name=alias)
        except NotFoundError:
            return []
        return list(resp)

    def live(self) -> Optional[IndexRef]:
        names = self._aliased(self.alias)
        return IndexRef(IndexKind.LIVE, names[0]) if names else None

    def staging(self) -> Optional[IndexRef]:
        names = self._aliased(self.staging_alias)
        return IndexRef(IndexKind.STAGING, names[0]) if names else None

    def _create_index(self) -> str:
        stamp = datetime.now(timezone.utc).strftime("%Y%m%d%H%M%S")
        name = f"{self.alias}_{stamp}_{new_id()[:8]}"
        self._call(
            "create",
            self.client.indices.create,
            index=name,
            mappings=PRODUCT_MAPPINGS,
            settings=PRODUCT_SETTINGS,
        )
        return name

    def ensure_live(self) -> IndexRef:
        current = self.live()
        if current is not None:
            self._live_checked = True
            return current
        name = self._create_index()
        self._call("alias create", self.client.indices.put_alias, index=name, name=self.alias)
        logger.info("Created live search index %s", name)
        self._live_checked = True
        return IndexRef(IndexKind.LIVE, name)

    def create_staging(self) -> IndexRef:
        name = self._create_index()
        self._call("alias create", self.client.indices.put_alias, index=name, name=self.staging_alias)
        logger.info("Created staging search index %s", name)
        return IndexRef(IndexKind.STAGING, name)

    def promote(self, staging: IndexRef) -> Optional[IndexRef]:
        """Point the live alias at ``staging`` in one atomic alias update.

        Returns the previously live index (not deleted here).
        """
        if staging.kind is not IndexKind.STAGING:
            raise ValueError(f"{staging.name} is not a staging index")
        previous = self.live()
        actions = [
            {"remove": {"index": staging.name, "alias": self.staging_alias}},
            {"add": {"index": staging.name, "alias": self.alias}},
        ]
        if previous is not None:
            actions.insert(0, {"remove": {"index": previous.name, "alias": self.alias}})
        self._call("alias swap", self.client.indices.update_aliases, actions=actions)
        logger.info("Search alias %s now points at %s", self.alias, staging.name)
        return previous

    def drop(self, ref: IndexRef) -> None:
        try:
            self._call("delete index", self.client.indices.delete, index=ref.name)
        except NotFoundError:
            pass

    # ---- documents ----

    def upsert(self, doc: Dict[str, Any]) -> None:
        """Create-or-replace a document in the live index (and the staging one, mid-rebuild).

        Writes go through the aliases with ``require_alias`` so a write racing
        an alias swap fails instead of auto-creating a concrete index.
        """
        if not self._live_checked:
            self.ensure_live()
        self._write_live(doc)
        if not self._aliased(self.staging_alias):
            return
        try:
            self._write(self.staging_alias, doc)
        except NotFoundError:
            # promoted after the live write; repeat it on the new live index
            logger.debug("Staging alias gone before upsert of %s, rewriting live", doc["id"])
            self._write_live(doc)

    def _write(self, alias: str, doc: Dict[str, Any]) -> None:
        self._call(
            "upsert", self.client.index,
            index=alias, id=doc["id"], document=doc, require_alias=True,
        )

    def _write_live(self, doc: Dict[str, Any]) -> None:
        try:
            self._write(self.alias, doc)
        except NotFoundError as e:
            self._live_checked = False
            raise SearchUnavailableError(f"search alias {self.alias} is missing") from e

    def delete(self, doc_id: str) -> bool:
        """Delete from every aliased index. Returns False when nothing was there."""
        found = False
        for target in self._aliased(self.alias) + self._aliased(self.staging_alias):
            try:
                self._call("delete", self.client.delete, index=target, id=doc_id)
                found = True
            except NotFoundError:
                continue
        return found

    def bulk_load(self, ref: IndexRef, docs: Iterable[Dict[str, Any]]) -> List[Dict[str, Any]]:
        """
        Create documents in ``ref``. Returns the per-document errors.

        Uses op_type create so a fresher copy written by a concurrent upsert
        is kept; those conflicts are not reported as errors.
        """
        actions = (
            {"_op_type": "create", "_index": ref.name, "_id": doc["id"], "_source": doc}
            for doc in docs
        )
        _, errors = self._call(
            "bulk load",
            helpers.bulk,
            self.client,
            actions,
            raise_on_error=False,
            stats_only=False,
        )
        real = []
        for item in errors:
            detail = item.get("create", item)
            if detail.get("status") == CONFLICT_STATUS:
                continue
            real.append(detail)
        return real

    # ---- queries ----

    def _filters(self, store_id: str, category_id: Optional[str]) -> List[dict]:
        filters = [
            {"term": {"store_id": store_id}},
            {"term": {"is_archived": False}},
        ]
        if category_id:
            filters.append({"term": {"category_id": category_id}})
        return filters

    def _query(self, what: str, **kwargs):
        try:
            return self._call(what, self.client.search, index=self.alias, **kwargs)
        except NotFoundError as e:
            raise SearchUnavailableError(f"search index {self.alias} does not exist") from e

    def search(
        self,
        store_id: str,
        query: str,
        category_id: Optional[str] = None,
        page: int = 1,
        page_size: int = 48,
    ) -> SearchHits:
        resp = self._query(
            "search",
            query={
                "bool": {
                    "must": [{
                        "multi_match": {
                            "query": query,
                            "type": "bool_prefix",
                            "fields": SEARCH_FIELDS,
                            "fuzziness": "AUTO",
                        }
                    }],
                    "filter": self._filters(store_id, category_id),
                }
            },
            sort=["_score", {"downloads_count": {"order": "desc"}}],
            from_=(page - 1) * page_size,
            size=page_size,
            source=False,
            track_total_hits=True,
        )
        hits = resp["hits"]
        total = hits["total"]["value"] if isinstance(hits["total"], dict) else hits["total"]
        return SearchHits(ids=[h["_id"] for h in hits["hits"]], total=total)

    def suggest(
        self,
        store_id: str,
        prefix: str,
        limit: int = 10,
        category_id: Optional[str] = None,
    ) -> List[str]:
        resp = self._query(
            "suggest",
            query={
                "bool": {
                    "must": [{
                        "multi_match": {
                            "query": prefix,
                            "type": "bool_prefix",
                            "fields": SUGGEST_FIELDS,
                            "fuzziness": 1,
                        }
                    }],
                    "filter": self._filters(store_id, category_id),
                }
            },
            size=limit * 2,
            source=["name"],
        )
        seen: List[str] = []
        for hit in resp["hits"]["hits"]:
            name = hit["_source"]["name"]
            if name not in seen:
                seen.append(name)
            if len(seen) >= limit:
                break
        return seen

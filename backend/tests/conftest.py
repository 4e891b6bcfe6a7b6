"""Shared test fixtures."""

import os
import tempfile
import threading
from contextlib import contextmanager

# must be set before catalog_importer.config is imported
os.environ["DATABASE_URL"] = "sqlite:///" + os.path.join(tempfile.mkdtemp(), "api.db")
os.environ.setdefault("LOG_LEVEL", "WARNING")

import pytest
from sqlalchemy.orm import sessionmaker

from catalog_importer import crud
from catalog_importer.config import Settings
from catalog_importer.database import Base, make_engine
from catalog_importer.errors import SearchUnavailableError, TransportError
from catalog_importer.jobs import JobTracker
from catalog_importer.pipeline import ImportPipeline
from catalog_importer.schemas import ProductRow
from catalog_importer.search_index import IndexKind, IndexRef, SearchHits

STORE = "store-1"
CATEGORY = "cat-1"


class FakeSearchIndex:
    """In-memory stand-in for ProductSearchIndex with the same alias layout."""

    def __init__(self):
        self.indices = {}
        self.live_name = None
        self.staging_name = None
        self.calls = []
        self.down = False
        self.bulk_failures = 0
        self.on_bulk = None
        self._counter = 0
        self.ensure_live()

    def _check(self):
        if self.down:
            raise SearchUnavailableError("search index unavailable")

    def _new_index(self):
        self._counter += 1
        name = f"products_{self._counter}"
        self.indices[name] = {}
        return name

    @property
    def live_docs(self):
        return self.indices[self.live_name] if self.live_name else {}

    def ensure_live(self):
        if self.live_name is None:
            self.live_name = self._new_index()
        return IndexRef(IndexKind.LIVE, self.live_name)

    def live(self):
        self._check()
        return IndexRef(IndexKind.LIVE, self.live_name) if self.live_name else None

    def staging(self):
        self._check()
        return IndexRef(IndexKind.STAGING, self.staging_name) if self.staging_name else None

    def create_staging(self):
        self._check()
        self.staging_name = self._new_index()
        return IndexRef(IndexKind.STAGING, self.staging_name)

    def promote(self, staging):
        self._check()
        previous = self.live()
        self.live_name = staging.name
        self.staging_name = None
        return previous

    def drop(self, ref):
        self.indices.pop(ref.name, None)
        if self.staging_name == ref.name:
            self.staging_name = None
        if self.live_name == ref.name:
            self.live_name = None

    def upsert(self, doc):
        self._check()
        self.calls.append(("upsert", doc["id"]))
        for name in (self.live_name, self.staging_name):
            if name:
                self.indices[name][doc["id"]] = dict(doc)

    def delete(self, doc_id):
        self._check()
        self.calls.append(("delete", doc_id))
        found = False
        for name in (self.live_name, self.staging_name):
            if name and self.indices[name].pop(doc_id, None) is not None:
                found = True
        return found

    def bulk_load(self, ref, docs):
        self._check()
        docs = list(docs)
        if self.on_bulk is not None:
            self.on_bulk(ref, docs)
        if self.bulk_failures:
            self.bulk_failures -= 1
            return [{"status": 500, "error": "shard failure"}]
        target = self.indices[ref.name]
        for doc in docs:
            # create semantics: a fresher upserted copy wins
            target.setdefault(doc["id"], dict(doc))
        return []

    def _matching(self, store_id, category_id):
        for doc in self.live_docs.values():
            if doc["store_id"] != store_id or doc["is_archived"]:
                continue
            if category_id and doc["category_id"] != category_id:
                continue
            yield doc

    def search(self, store_id, query, category_id=None, page=1, page_size=48):
        self._check()
        q = query.lower()
        hits = [
            d for d in self._matching(store_id, category_id)
            if q in d["name"].lower()
            or q in d["description"].lower()
            or any(q in k.lower() for k in d["keywords"])
        ]
        hits.sort(key=lambda d: (-d["downloads_count"], d["name"]))
        start = (page - 1) * page_size
        return SearchHits(ids=[d["id"] for d in hits[start:start + page_size]], total=len(hits))

    def suggest(self, store_id, prefix, limit=10, category_id=None):
        self._check()
        names = sorted(
            d["name"] for d in self._matching(store_id, category_id)
            if d["name"].lower().startswith(prefix.lower())
        )
        return names[:limit]


class FakeQueue:
    """Records enqueued batches; optionally hands each message to a consumer right away."""

    def __init__(self, handler=None, fail_from_batch=None):
        self.handler = handler
        self.fail_from_batch = fail_from_batch
        self.batches = []
        self.attempts = 0

    @property
    def messages(self):
        return [m for batch in self.batches for m in batch]

    def enqueue(self, messages):
        self.attempts += 1
        if self.fail_from_batch is not None and len(self.batches) >= self.fail_from_batch:
            raise TransportError("broker unavailable")
        self.batches.append(list(messages))
        if self.handler is not None:
            for message in messages:
                self.handler(message)


class SerializedSessions:
    """Session factory that lets one thread at a time hold a session, since SQLite has one writer."""

    def __init__(self, factory):
        self.factory = factory
        self.lock = threading.RLock()

    @contextmanager
    def __call__(self):
        with self.lock:
            with self.factory() as db:
                yield db


def make_row(row=1, name=None, **overrides):
    data = {
        "name": name or f"Product {row}",
        "description": f"Description for product {row}",
        "price": "9.99",
        "category_id": CATEGORY,
    }
    data.update(overrides)
    return ProductRow.model_validate(data).model_copy(update={"row": row})


def raw_row(i, **overrides):
    data = {
        "name": f"Product {i}",
        "description": f"Description {i}",
        "price": "19.00",
        "categoryId": CATEGORY,
        "keywords": "canvas, mockup",
    }
    data.update(overrides)
    return data


@pytest.fixture
def engine(tmp_path):
    engine = make_engine(f"sqlite:///{tmp_path / 'catalog.db'}")
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


@pytest.fixture
def category(session_factory):
    with session_factory() as db:
        return crud.create_category(db, STORE, "Mockups", category_id=CATEGORY)


@pytest.fixture
def search_index():
    return FakeSearchIndex()


@pytest.fixture
def tracker(session_factory):
    return JobTracker(session_factory)


@pytest.fixture
def test_settings():
    return Settings(
        chunk_size=10,
        dispatch_batch_size=2,
        dispatch_backoff=0,
        index_backoff=0,
        row_concurrency=1,
        max_import_rows=100,
    )


@pytest.fixture
def queue():
    return FakeQueue()


@pytest.fixture
def pipeline(session_factory, search_index, test_settings, queue, category):
    pipeline = ImportPipeline(session_factory, queue, search_index, test_settings)
    # merge inline, as a worker would after picking the message up
    queue.handler = pipeline.merge_chunk
    return pipeline

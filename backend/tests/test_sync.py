"""Tests for single-entry sync and the staged full rebuild."""

import pytest

from catalog_importer import crud
from catalog_importer.errors import SearchUnavailableError, TransportError
from catalog_importer.search_index import to_search_document
from catalog_importer.sync import SearchSynchronizer

from conftest import STORE, make_row


def synchronizer(session_factory, index, **kwargs):
    kwargs.setdefault("backoff", 0)
    return SearchSynchronizer(session_factory, index, sleep=lambda s: None, **kwargs)


@pytest.fixture
def products(session_factory, category):
    with session_factory() as db:
        return [crud.create_product(db, STORE, make_row(i)) for i in range(1, 6)]


class TestUpsert:
    def test_projects_current_entry(self, session_factory, search_index, products):
        sync = synchronizer(session_factory, search_index)
        assert sync.upsert(products[0].id) == "upserted"
        doc = search_index.live_docs[products[0].id]
        assert doc["name"] == "Product 1"
        assert doc["category_name"] == "Mockups"
        assert doc["price"] == pytest.approx(9.99)
        assert doc["is_archived"] is False

    def test_missing_entry_is_removed(self, session_factory, search_index, products):
        sync = synchronizer(session_factory, search_index)
        search_index.upsert({"id": "ghost", "store_id": STORE})
        assert sync.upsert("ghost") == "removed"
        assert "ghost" not in search_index.live_docs

    def test_archived_entry_removed_when_not_indexed(self, session_factory, search_index, products):
        sync = synchronizer(session_factory, search_index, index_archived=False)
        sync.upsert(products[0].id)
        with session_factory() as db:
            crud.set_archived(db, crud.get_product(db, products[0].id), True)
        assert sync.upsert(products[0].id) == "removed"
        assert products[0].id not in search_index.live_docs

    def test_remove_tolerates_absence(self, session_factory, search_index):
        assert synchronizer(session_factory, search_index).remove("nothing-here") is False

    def test_exhausted_retries_raise(self, session_factory, search_index, products):
        search_index.down = True
        with pytest.raises(TransportError):
            synchronizer(session_factory, search_index, max_attempts=2).upsert(products[0].id)


class TestRebuild:
    def test_live_index_never_empty(self, session_factory, search_index, products):
        stale = {"id": "stale", "store_id": STORE, "name": "Old", "description": "",
                 "keywords": [], "category_id": "cat-1", "is_archived": False,
                 "downloads_count": 0}
        search_index.upsert(stale)
        old_live = search_index.live_name
        observed = []

        def during_load(ref, docs):
            # a storefront query racing the rebuild still hits the old index
            observed.append(len(search_index.search(STORE, "Old").ids))

        search_index.on_bulk = during_load
        result = synchronizer(session_factory, search_index, batch_size=2).rebuild_all()

        assert result.ok
        assert (result.indexed, result.batches) == (5, 3)
        assert observed == [1, 1, 1]
        assert result.previous_index == old_live
        assert old_live not in search_index.indices
        assert set(search_index.live_docs) == {p.id for p in products}
        assert search_index.staging_name is None

    def test_failed_batch_keeps_live_index(self, session_factory, search_index, products):
        sync = synchronizer(session_factory, search_index, batch_size=2)
        for p in products:
            sync.upsert(p.id)
        live_before = search_index.live_name
        docs_before = dict(search_index.live_docs)
        search_index.bulk_failures = 99

        result = sync.rebuild_all()

        assert not result.ok
        assert "batch 1" in result.error
        assert search_index.live_name == live_before
        assert search_index.live_docs == docs_before
        assert result.index_name not in search_index.indices

    def test_failed_swap_drops_staging(self, session_factory, search_index, products, monkeypatch):
        sync = synchronizer(session_factory, search_index, batch_size=10)
        live_before = search_index.live_name

        def refuse(staging):
            raise SearchUnavailableError("alias update timed out")

        monkeypatch.setattr(search_index, "promote", refuse)
        result = sync.rebuild_all()

        assert not result.ok
        assert "timed out" in result.error
        assert search_index.live_name == live_before
        assert search_index.staging_name is None
        assert result.index_name not in search_index.indices

    def test_swap_that_landed_is_kept(self, session_factory, search_index, products, monkeypatch):
        sync = synchronizer(session_factory, search_index, batch_size=10)
        promote = search_index.promote

        def swap_then_time_out(staging):
            promote(staging)
            raise SearchUnavailableError("response lost")

        monkeypatch.setattr(search_index, "promote", swap_then_time_out)
        result = sync.rebuild_all()

        assert result.ok
        assert search_index.live_name == result.index_name
        assert len(search_index.live_docs) == 5

    def test_batch_retry_recovers(self, session_factory, search_index, products):
        search_index.bulk_failures = 1
        result = synchronizer(session_factory, search_index, batch_size=10).rebuild_all()
        assert result.ok
        assert len(search_index.live_docs) == 5

    def test_upserts_during_rebuild_reach_new_index(self, session_factory, search_index, products):
        sync = synchronizer(session_factory, search_index, batch_size=10)
        target = products[0].id

        def rename_mid_load(ref, docs):
            with session_factory() as db:
                entry = crud.get_product(db, target)
                entry.description = "fresh copy"
                db.commit()
                fresh = to_search_document(entry)
            search_index.upsert(fresh)

        search_index.on_bulk = rename_mid_load
        assert sync.rebuild_all().ok
        assert search_index.live_docs[target]["description"] == "fresh copy"

    def test_leftover_staging_is_dropped(self, session_factory, search_index, products):
        leftover = search_index.create_staging()
        result = synchronizer(session_factory, search_index).rebuild_all()
        assert result.ok
        assert leftover.name not in search_index.indices

    def test_archived_entries_follow_setting(self, session_factory, search_index, products):
        with session_factory() as db:
            crud.set_archived(db, crud.get_product(db, products[0].id), True)
        synchronizer(session_factory, search_index, index_archived=False).rebuild_all()
        assert products[0].id not in search_index.live_docs
        assert len(search_index.live_docs) == 4

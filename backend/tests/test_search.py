"""Tests for storefront search and its catalog fallback."""

from unittest.mock import MagicMock

import pytest
from elasticsearch import NotFoundError
from sqlalchemy.exc import OperationalError

from catalog_importer import crud
from catalog_importer.errors import SearchFailedError
from catalog_importer.search import SearchGateway
from catalog_importer.search_index import ProductSearchIndex, to_search_document

from conftest import STORE, make_row


@pytest.fixture
def catalog(session_factory, search_index, category):
    rows = [
        make_row(1, name="Canvas Mockup", keywords="poster"),
        make_row(2, name="Logo Pack", description="Vector CANVAS textures"),
        make_row(3, name="Font Bundle", keywords="typography, canvas"),
        make_row(4, name="Old Canvas", is_archived="true"),
        make_row(5, name="Icon Set"),
    ]
    with session_factory() as db:
        items = [crud.create_product(db, STORE, r) for r in rows]
        crud.create_product(db, "other-store", make_row(6, name="Canvas Elsewhere"))
        docs = [to_search_document(item) for item in items]
    for doc in docs:
        search_index.upsert(doc)
    return items


def broken_session():
    raise OperationalError("SELECT 1", {}, Exception("database down"))


class TestSearch:
    def test_index_path(self, session_factory, search_index, catalog):
        page = SearchGateway(session_factory, search_index).search(STORE, "canvas")
        assert page.source == "index"
        assert {p.name for p in page.results} == {"Canvas Mockup", "Logo Pack", "Font Bundle"}
        assert page.total == 3
        assert page.page_count == 1

    def test_stale_index_ids_are_dropped(self, session_factory, search_index, catalog):
        search_index.upsert({**to_search_document(catalog[0]), "id": "deleted-entry"})
        page = SearchGateway(session_factory, search_index).search(STORE, "canvas")
        assert "deleted-entry" not in [p.id for p in page.results]
        assert len(page.results) == 3

    def test_fallback_matches_catalog_substring_search(self, session_factory, search_index, catalog):
        search_index.down = True
        page = SearchGateway(session_factory, search_index).search(STORE, "canvas")

        with session_factory() as db:
            expected, total = crud.fallback_search(db, STORE, "canvas")
        assert page.source == "fallback"
        assert [p.id for p in page.results] == [p.id for p in expected]
        assert page.total == total == 3
        assert "Old Canvas" not in {p.name for p in page.results}

    def test_fallback_pagination(self, session_factory, search_index, catalog):
        search_index.down = True
        page = SearchGateway(session_factory, search_index).search(STORE, "canvas", page=2, page_size=2)
        assert len(page.results) == 1
        assert page.page_count == 2

    @pytest.mark.parametrize("query", ["%", "_", "Canvas%"])
    def test_fallback_treats_wildcards_literally(self, session_factory, catalog, query):
        with session_factory() as db:
            items, total = crud.fallback_search(db, STORE, query)
            assert crud.name_prefix_suggestions(db, STORE, query) == []
        assert (items, total) == ([], 0)

    def test_both_paths_down(self, search_index, catalog):
        search_index.down = True
        with pytest.raises(SearchFailedError):
            SearchGateway(broken_session, search_index).search(STORE, "canvas")

    def test_page_size_is_capped(self, session_factory, search_index, catalog):
        page = SearchGateway(session_factory, search_index).search(STORE, "canvas", page_size=10_000)
        assert page.page_size == 100


class TestMissingLiveIndex:
    @pytest.fixture
    def gateway(self, session_factory, catalog):
        client = MagicMock()
        client.search.side_effect = NotFoundError(
            "index_not_found_exception", MagicMock(status=404), {}
        )
        return SearchGateway(session_factory, ProductSearchIndex(client))

    def test_search_uses_catalog(self, gateway):
        page = gateway.search(STORE, "logo")
        assert page.source == "fallback"
        assert [p.name for p in page.results] == ["Logo Pack"]

    def test_autocomplete_uses_catalog(self, gateway):
        assert gateway.autocomplete(STORE, "can") == ["Canvas Mockup"]


class TestAutocomplete:
    def test_empty_prefix(self, session_factory, search_index, catalog):
        assert SearchGateway(session_factory, search_index).autocomplete(STORE, "  ") == []

    def test_index_suggestions(self, session_factory, search_index, catalog):
        assert SearchGateway(session_factory, search_index).autocomplete(STORE, "lo") == ["Logo Pack"]

    def test_fallback_prefix_query(self, session_factory, search_index, catalog):
        search_index.down = True
        names = SearchGateway(session_factory, search_index).autocomplete(STORE, "can")
        assert names == ["Canvas Mockup"]

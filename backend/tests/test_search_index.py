"""Tests for the Elasticsearch product index client, against a mocked client."""

from unittest.mock import MagicMock, patch

import pytest
from elasticsearch import ConnectionError as ESConnectionError
from elasticsearch import NotFoundError

from catalog_importer.errors import SearchUnavailableError
from catalog_importer.search_index import IndexKind, IndexRef, ProductSearchIndex


def not_found():
    return NotFoundError("not found", MagicMock(status=404), {})


def make_client(aliases):
    """``aliases`` maps alias name -> concrete index name."""
    client = MagicMock()

    def get_alias(name):
        if name not in aliases:
            raise not_found()
        return {aliases[name]: {"aliases": {name: {}}}}

    client.indices.get_alias.side_effect = get_alias
    return client


class TestAliases:
    def test_live_and_staging(self):
        index = ProductSearchIndex(make_client({"products": "products_1"}))
        assert index.live() == IndexRef(IndexKind.LIVE, "products_1")
        assert index.staging() is None

    def test_ensure_live_creates_index(self):
        client = make_client({})
        ref = ProductSearchIndex(client).ensure_live()
        assert ref.kind is IndexKind.LIVE
        client.indices.create.assert_called_once()
        client.indices.put_alias.assert_called_once_with(index=ref.name, name="products")

    def test_promote_is_one_alias_update(self):
        client = make_client({"products": "products_old", "products-staging": "products_new"})
        index = ProductSearchIndex(client)

        previous = index.promote(IndexRef(IndexKind.STAGING, "products_new"))

        assert previous.name == "products_old"
        client.indices.update_aliases.assert_called_once_with(actions=[
            {"remove": {"index": "products_old", "alias": "products"}},
            {"remove": {"index": "products_new", "alias": "products-staging"}},
            {"add": {"index": "products_new", "alias": "products"}},
        ])

    def test_promote_rejects_live_ref(self):
        index = ProductSearchIndex(make_client({}))
        with pytest.raises(ValueError):
            index.promote(IndexRef(IndexKind.LIVE, "products_1"))

    def test_drop_missing_index(self):
        client = make_client({})
        client.indices.delete.side_effect = not_found()
        ProductSearchIndex(client).drop(IndexRef(IndexKind.STAGING, "gone"))


class TestDocuments:
    def test_upsert_live_only(self):
        client = make_client({"products": "products_1"})
        ProductSearchIndex(client).upsert({"id": "p1", "name": "Logo"})
        client.index.assert_called_once_with(
            index="products", id="p1", document={"id": "p1", "name": "Logo"}, require_alias=True
        )

    def test_upsert_writes_staging_during_rebuild(self):
        client = make_client({"products": "products_1", "products-staging": "products_2"})
        ProductSearchIndex(client).upsert({"id": "p1"})
        targets = [c.kwargs["index"] for c in client.index.call_args_list]
        assert targets == ["products", "products-staging"]

    def test_staging_promoted_mid_upsert_rewrites_live(self):
        aliases = {"products": "products_1", "products-staging": "products_2"}
        client = make_client(aliases)

        def index_doc(index, **kwargs):
            if index == "products-staging":
                # the rebuild swaps aliases between the lookup and this write
                aliases.pop("products-staging")
                aliases["products"] = "products_2"
                raise not_found()

        client.index.side_effect = index_doc
        ProductSearchIndex(client).upsert({"id": "p1"})

        targets = [c.kwargs["index"] for c in client.index.call_args_list]
        assert targets == ["products", "products-staging", "products"]
        assert all(c.kwargs["require_alias"] for c in client.index.call_args_list)

    def test_missing_live_alias_on_write(self):
        client = make_client({"products": "products_1"})
        client.index.side_effect = not_found()
        with pytest.raises(SearchUnavailableError):
            ProductSearchIndex(client).upsert({"id": "p1"})

    def test_delete_targets_concrete_indices(self):
        client = make_client({"products": "products_1", "products-staging": "products_2"})
        assert ProductSearchIndex(client).delete("p1") is True
        targets = [c.kwargs["index"] for c in client.delete.call_args_list]
        assert targets == ["products_1", "products_2"]

    def test_delete_absent_document(self):
        client = make_client({"products": "products_1"})
        client.delete.side_effect = not_found()
        assert ProductSearchIndex(client).delete("p1") is False

    def test_connection_errors_become_unavailable(self):
        client = make_client({"products": "products_1"})
        client.index.side_effect = ESConnectionError("connection refused")
        with pytest.raises(SearchUnavailableError):
            ProductSearchIndex(client).upsert({"id": "p1"})

    def test_bulk_load_ignores_create_conflicts(self):
        index = ProductSearchIndex(make_client({}))
        errors = [
            {"create": {"_id": "p1", "status": 409, "error": "version conflict"}},
            {"create": {"_id": "p2", "status": 500, "error": "shard failure"}},
        ]
        with patch("catalog_importer.search_index.helpers.bulk", return_value=(1, errors)) as bulk:
            result = index.bulk_load(
                IndexRef(IndexKind.STAGING, "products_2"), [{"id": "p1"}, {"id": "p2"}, {"id": "p3"}]
            )
        assert [e["_id"] for e in result] == ["p2"]
        actions = list(bulk.call_args.args[1])
        assert actions[0] == {
            "_op_type": "create", "_index": "products_2", "_id": "p1", "_source": {"id": "p1"}
        }


class TestQueries:
    def test_search_filters_and_order(self):
        client = make_client({"products": "products_1"})
        client.search.return_value = {
            "hits": {"total": {"value": 7}, "hits": [{"_id": "b"}, {"_id": "a"}]}
        }
        hits = ProductSearchIndex(client).search("s1", "mokup", category_id="c1", page=2, page_size=5)

        assert hits.ids == ["b", "a"]
        assert hits.total == 7
        kwargs = client.search.call_args.kwargs
        query = kwargs["query"]["bool"]
        assert query["must"][0]["multi_match"]["fuzziness"] == "AUTO"
        assert {"term": {"store_id": "s1"}} in query["filter"]
        assert {"term": {"is_archived": False}} in query["filter"]
        assert {"term": {"category_id": "c1"}} in query["filter"]
        assert kwargs["sort"] == ["_score", {"downloads_count": {"order": "desc"}}]
        assert (kwargs["from_"], kwargs["size"]) == (5, 5)

    @pytest.mark.parametrize("call", [
        lambda index: index.search("s1", "logo"),
        lambda index: index.suggest("s1", "lo"),
    ])
    def test_missing_live_index_is_unavailable(self, call):
        client = make_client({})
        client.search.side_effect = not_found()
        with pytest.raises(SearchUnavailableError):
            call(ProductSearchIndex(client))

    def test_suggest_unique_names(self):
        client = make_client({"products": "products_1"})
        client.search.return_value = {"hits": {"hits": [
            {"_source": {"name": "Logo"}},
            {"_source": {"name": "Logo"}},
            {"_source": {"name": "Logo Pack"}},
        ]}}
        assert ProductSearchIndex(client).suggest("s1", "lo", limit=5) == ["Logo", "Logo Pack"]

import json

import httpx
import pytest

from conftest import make_chunk
from visaplan.errors import InvalidResponse, TransientUpstream, UpstreamError
from visaplan.vector_store import SCHEMA_CLASS, InMemoryRetriever, WeaviateRetriever


# ════════════════════════════════════════════════════════════════
# In-memory store
# ════════════════════════════════════════════════════════════════
class TestInMemoryRetriever:
    def _store(self) -> InMemoryRetriever:
        return InMemoryRetriever(
            [
                make_chunk("a", scenario_id="brazil-to-berlin-residence", title="EU Blue Card salary threshold",
                           content="The EU Blue Card requires a minimum gross salary and a recognised degree."),
                make_chunk("b", scenario_id="us-graduate-visa-uk", title="Graduate visa fees",
                           content="The Graduate visa application fee and immigration health surcharge."),
                make_chunk("c", scenario_id="brazil-to-berlin-residence", title="Anmeldung",
                           content="Register your Berlin address within fourteen days of moving in."),
            ],
            ranker="tfidf",
        )

    @pytest.mark.asyncio
    async def test_search_by_scenario(self):
        hits = await self._store().search_by_scenario("brazil-to-berlin-residence", 10)
        assert [h.id for h in hits] == ["a", "c"]

    @pytest.mark.asyncio
    async def test_search_by_scenario_limit(self):
        hits = await self._store().search_by_scenario("brazil-to-berlin-residence", 1)
        assert [h.id for h in hits] == ["a"]

    @pytest.mark.asyncio
    async def test_search_similar_ranks_and_thresholds(self):
        hits = await self._store().search_similar("blue card salary", limit=5, threshold=0.1)
        assert hits
        assert hits[0].id == "a"
        assert all(h.certainty is not None and h.certainty >= 0.1 for h in hits)
        assert "b" not in [h.id for h in hits]

    @pytest.mark.asyncio
    async def test_empty_query_or_store(self):
        assert await self._store().search_similar("   ") == []
        assert await InMemoryRetriever(ranker="tfidf").search_similar("anything") == []

    @pytest.mark.asyncio
    async def test_add_chunks(self):
        store = InMemoryRetriever(ranker="tfidf")
        assert await store.add_chunks([make_chunk("x"), make_chunk("y")]) == 2
        assert len(store) == 2

    @pytest.mark.asyncio
    async def test_add_chunks_replaces_same_id(self):
        store = InMemoryRetriever([make_chunk("x", scenario_id="s"), make_chunk("y", scenario_id="s")], ranker="tfidf")
        await store.add_chunks([make_chunk("x", scenario_id="s", title="Updated")])
        hits = await store.search_by_scenario("s", 10)
        assert [h.id for h in hits] == ["y", "x"]
        assert hits[1].title == "Updated"

    @pytest.mark.asyncio
    async def test_snapshot_round_trip(self, tmp_path):
        path = tmp_path / "curated.jsonl"
        assert self._store().save(path) == 3
        loaded = InMemoryRetriever.load(path, ranker="tfidf")
        hits = await loaded.search_by_scenario("brazil-to-berlin-residence", 10)
        assert [h.id for h in hits] == ["a", "c"]
        assert hits[0].title == "EU Blue Card salary threshold"

    def test_missing_snapshot_is_empty_store(self, tmp_path):
        assert len(InMemoryRetriever.load(tmp_path / "absent.jsonl")) == 0

    def test_corrupt_snapshot_line(self, tmp_path):
        path = tmp_path / "curated.jsonl"
        path.write_text(make_chunk("a").model_dump_json() + "\n{\"title\": 3}\n", encoding="utf-8")
        with pytest.raises(InvalidResponse, match=":2 "):
            InMemoryRetriever.load(path)


# ════════════════════════════════════════════════════════════════
# Weaviate over GraphQL
# ════════════════════════════════════════════════════════════════
def _graphql(nodes):
    return {"data": {"Get": {"ImmigrationSource": nodes}}}


def _retriever(handler) -> WeaviateRetriever:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return WeaviateRetriever("store.test", "w-key", client=client)


class TestWeaviateRetriever:
    @pytest.mark.asyncio
    async def test_scenario_query_maps_nodes(self):
        seen: list[httpx.Request] = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json=_graphql([
                {
                    "title": "Blue Card", "content": "Salary thresholds", "url": "https://www.make-it-in-germany.com",
                    "scenarioId": "brazil-to-berlin-residence", "category": "not-a-category",
                    "formNumbers": ["Form A"], "_additional": {"id": "uuid-1", "certainty": 0.9},
                }
            ]))

        hits = await _retriever(handler).search_by_scenario("brazil-to-berlin-residence", 24)
        assert len(hits) == 1
        assert hits[0].id == "uuid-1"
        assert hits[0].category == "general"
        assert hits[0].origin == "curated"
        assert hits[0].form_numbers == ["Form A"]
        assert str(seen[0].url) == "https://store.test/v1/graphql"
        assert seen[0].headers["Authorization"] == "Bearer w-key"
        query = json.loads(seen[0].content)["query"]
        assert '"brazil-to-berlin-residence"' in query
        assert "limit: 24" in query

    @pytest.mark.asyncio
    async def test_similarity_threshold(self):
        def handler(request):
            return httpx.Response(200, json=_graphql([
                {"title": "High", "content": "x", "url": "https://a.gov", "_additional": {"id": "1", "certainty": 0.8}},
                {"title": "Low", "content": "y", "url": "https://b.gov", "_additional": {"id": "2", "certainty": 0.5}},
            ]))

        hits = await _retriever(handler).search_similar('nurse "berlin"', 12, 0.75)
        assert [h.title for h in hits] == ["High"]

    @pytest.mark.asyncio
    async def test_graphql_errors_raise(self):
        retriever = _retriever(lambda request: httpx.Response(200, json={"errors": [{"message": "bad"}]}))
        with pytest.raises(UpstreamError):
            await retriever.search_by_scenario("x")

    @pytest.mark.asyncio
    async def test_server_error_is_transient(self):
        retriever = _retriever(lambda request: httpx.Response(503))
        with pytest.raises(TransientUpstream):
            await retriever.search_similar("x")

    @pytest.mark.asyncio
    async def test_add_chunks_batches(self):
        seen: list[httpx.Request] = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json=[])

        count = await _retriever(handler).add_chunks([make_chunk("a", scenario_id="s1"), make_chunk("b")])
        assert count == 2
        assert str(seen[0].url) == "https://store.test/v1/batch/objects"
        objects = json.loads(seen[0].content)["objects"]
        assert objects[0]["properties"]["scenarioId"] == "s1"
        assert objects[0]["class"] == "ImmigrationSource"

    @pytest.mark.asyncio
    async def test_add_nothing(self):
        retriever = _retriever(lambda request: httpx.Response(500))
        assert await retriever.add_chunks([]) == 0

    @pytest.mark.asyncio
    async def test_add_chunks_counts_rejected_objects(self):
        def handler(request):
            return httpx.Response(200, json=[
                {"result": {}},
                {"result": {"errors": {"error": [{"message": "invalid date"}]}}},
            ])

        assert await _retriever(handler).add_chunks([make_chunk("a"), make_chunk("b")]) == 1

    @pytest.mark.asyncio
    async def test_non_json_reply_is_invalid_response(self):
        retriever = _retriever(lambda request: httpx.Response(200, text="<html>proxy login</html>"))
        with pytest.raises(InvalidResponse):
            await retriever.search_by_scenario("x")

    @pytest.mark.asyncio
    async def test_list_reply_to_query_is_invalid_response(self):
        retriever = _retriever(lambda request: httpx.Response(200, json=[{"data": {}}]))
        with pytest.raises(InvalidResponse):
            await retriever.search_similar("x")

    @pytest.mark.asyncio
    async def test_malformed_nodes_are_invalid_response(self):
        retriever = _retriever(lambda request: httpx.Response(200, json=_graphql(["not-a-node"])))
        with pytest.raises(InvalidResponse):
            await retriever.search_by_scenario("x")


class TestWeaviateSchema:
    @pytest.mark.asyncio
    async def test_missing_class_is_created_with_vectorizer(self):
        seen: list[httpx.Request] = []

        def handler(request):
            seen.append(request)
            if request.method == "GET":
                return httpx.Response(404)
            return httpx.Response(200, json=SCHEMA_CLASS)

        assert await _retriever(handler).ensure_schema() is True
        assert [(r.method, r.url.path) for r in seen] == [
            ("GET", "/v1/schema/ImmigrationSource"),
            ("POST", "/v1/schema"),
        ]
        created = json.loads(seen[1].content)
        assert created["class"] == "ImmigrationSource"
        assert created["vectorizer"] == "text2vec-openai"
        props = {p["name"]: p["dataType"] for p in created["properties"]}
        assert props["formNumbers"] == ["text[]"]
        assert props["lastUpdated"] == ["date"]
        assert {"scenarioId", "content", "countryTo", "officeHours"} <= set(props)

    @pytest.mark.asyncio
    async def test_existing_class_left_alone(self):
        seen: list[httpx.Request] = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json={"class": "ImmigrationSource"})

        assert await _retriever(handler).ensure_schema() is False
        assert [r.method for r in seen] == ["GET"]

    @pytest.mark.asyncio
    async def test_schema_lookup_error_propagates(self):
        retriever = _retriever(lambda request: httpx.Response(401, text="unauthorized"))
        with pytest.raises(UpstreamError):
            await retriever.ensure_schema()

    @pytest.mark.asyncio
    async def test_in_memory_store_needs_no_schema(self):
        assert await InMemoryRetriever().ensure_schema() is False

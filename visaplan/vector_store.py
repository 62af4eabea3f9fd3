"""Curated knowledge store — exact scenario lookup and semantic similarity.

``WeaviateRetriever`` talks to a hosted store over GraphQL. ``InMemoryRetriever``
keeps chunks in process, loaded from a JSON-lines snapshot (``CURATED_SNAPSHOT``),
and ranks them with a sentence-transformers bi-encoder (TF-IDF fallback when
the model is unavailable).
"""
from __future__ import annotations

import abc
import logging
import uuid
from functools import lru_cache
from pathlib import Path
from typing import Any, get_args

import httpx
from pydantic import ValidationError

from visaplan.errors import InvalidResponse, TransientUpstream, UpstreamError
from visaplan.schemas import ChunkCategory, EvidenceChunk

log = logging.getLogger("visaplan.vector_store")

_CATEGORIES = set(get_args(ChunkCategory))
_CLASS_NAME = "ImmigrationSource"
_FIELDS = (
    "title content url scenarioId countryFrom countryTo visaType category officialWebsite "
    "formNumbers fees processingTime officeHours lastUpdated _additional { id certainty }"
)


def _prop(name: str, description: str, data_type: str = "text") -> dict[str, Any]:
    return {"name": name, "dataType": [data_type], "description": description}


SCHEMA_CLASS: dict[str, Any] = {
    "class": _CLASS_NAME,
    "description": "Immigration guidance sources for country-to-country scenarios",
    "vectorizer": "text2vec-openai",
    "moduleConfig": {"text2vec-openai": {"model": "ada", "modelVersion": "002", "type": "text"}},
    "properties": [
        _prop("scenarioId", "Curated scenario identifier"),
        _prop("title", "Title of the source document or section"),
        _prop("content", "Instructions, requirements and guidance text"),
        _prop("url", "Source URL of the official document"),
        _prop("countryFrom", "Origin country of the applicant"),
        _prop("countryTo", "Destination country"),
        _prop("visaType", "Visa or immigration process type"),
        _prop("category", "Content category"),
        _prop("officialWebsite", "Main official government website"),
        _prop("formNumbers", "Form numbers referenced in the source", "text[]"),
        _prop("fees", "Fees and costs quoted in the source"),
        _prop("processingTime", "Processing times quoted in the source"),
        _prop("officeHours", "Office or appointment hours"),
        _prop("lastUpdated", "When this source was last fetched", "date"),
    ],
}


class VectorRetriever(abc.ABC):
    @abc.abstractmethod
    async def search_by_scenario(self, scenario_id: str, limit: int = 20) -> list[EvidenceChunk]: ...

    @abc.abstractmethod
    async def search_similar(self, query: str, limit: int = 10, threshold: float = 0.7) -> list[EvidenceChunk]: ...

    @abc.abstractmethod
    async def add_chunks(self, chunks: list[EvidenceChunk]) -> int: ...

    async def ensure_schema(self) -> bool:
        """Prepare backing storage before the first write; True when something was created."""
        return False


# ── Model caching (singleton) ────────────────────────────────
@lru_cache(maxsize=1)
def _get_bi_encoder():
    """Lazy-load and cache the bi-encoder model (loaded once, reused)."""
    from sentence_transformers import SentenceTransformer  # type: ignore
    log.info("Loading bi-encoder model (one-time)…")
    return SentenceTransformer("all-MiniLM-L6-v2")


def _bi_encoder_scores(query: str, texts: list[str]) -> list[float]:
    """Cosine similarity mapped onto [0, 1], the same scale as store certainty."""
    model = _get_bi_encoder()
    query_vec = model.encode([query], normalize_embeddings=True)
    text_vecs = model.encode(texts, normalize_embeddings=True)
    return [(1.0 + float(s)) / 2.0 for s in (text_vecs @ query_vec[0]).tolist()]


def _tfidf_scores(query: str, texts: list[str]) -> list[float]:
    from sklearn.feature_extraction.text import TfidfVectorizer
    from sklearn.metrics.pairwise import cosine_similarity

    vectorizer = TfidfVectorizer(stop_words="english", max_features=20000)
    X = vectorizer.fit_transform(texts)
    q = vectorizer.transform([query])
    return [float(s) for s in cosine_similarity(X, q).reshape(-1)]


class InMemoryRetriever(VectorRetriever):
    """Process-local curated store. ``ranker`` is ``auto``, ``bi-encoder`` or ``tfidf``."""

    def __init__(self, chunks: list[EvidenceChunk] | None = None, *, ranker: str = "auto"):
        self._chunks: list[EvidenceChunk] = list(chunks or [])
        self.ranker = ranker

    @classmethod
    def load(cls, path: str | Path, *, ranker: str = "auto") -> "InMemoryRetriever":
        """Read a JSON-lines snapshot written by :meth:`save`; a missing file gives an empty store."""
        path = Path(path)
        if not path.exists():
            log.warning("Curated snapshot %s not found; starting with an empty store", path)
            return cls(ranker=ranker)
        chunks = []
        for n, line in enumerate(path.read_text(encoding="utf-8").splitlines(), start=1):
            if not line.strip():
                continue
            try:
                chunks.append(EvidenceChunk.model_validate_json(line))
            except ValidationError as exc:
                raise InvalidResponse(f"{path}:{n} is not an evidence chunk: {exc.error_count()} errors") from exc
        log.info("Loaded %d curated chunks from %s", len(chunks), path)
        return cls(chunks, ranker=ranker)

    def save(self, path: str | Path) -> int:
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        with path.open("w", encoding="utf-8") as fh:
            for chunk in self._chunks:
                fh.write(chunk.model_dump_json() + "\n")
        return len(self._chunks)

    def __len__(self) -> int:
        return len(self._chunks)

    async def add_chunks(self, chunks: list[EvidenceChunk]) -> int:
        # same id replaces the stored chunk so re-running a backfill does not duplicate
        fresh = {c.id: c for c in chunks}
        self._chunks = [c for c in self._chunks if c.id not in fresh] + list(fresh.values())
        return len(fresh)

    async def search_by_scenario(self, scenario_id: str, limit: int = 20) -> list[EvidenceChunk]:
        hits = [c for c in self._chunks if c.scenario_id == scenario_id][:limit]
        log.info("Retrieved %d curated chunks for scenario %s", len(hits), scenario_id)
        return hits

    async def search_similar(self, query: str, limit: int = 10, threshold: float = 0.7) -> list[EvidenceChunk]:
        if not self._chunks or not query.strip():
            return []
        texts = [f"{c.title}\n{c.content}" for c in self._chunks]
        scores = self._score(query, texts)
        ranked = sorted(zip(self._chunks, scores), key=lambda pair: pair[1], reverse=True)[:limit]
        hits = [c.model_copy(update={"certainty": s}) for c, s in ranked if s >= threshold]
        log.info("Found %d similar chunks (threshold=%.2f) for %r", len(hits), threshold, query[:80])
        return hits

    def _score(self, query: str, texts: list[str]) -> list[float]:
        if self.ranker == "tfidf":
            return _tfidf_scores(query, texts)
        try:
            return _bi_encoder_scores(query, texts)
        except Exception as exc:
            if self.ranker == "bi-encoder":
                raise
            log.info("Bi-encoder unavailable (%s) — falling back to TF-IDF", exc)
            return _tfidf_scores(query, texts)


# ── Weaviate ──────────────────────────────────────────────────
def _to_chunk(node: dict[str, Any]) -> EvidenceChunk:
    extra = node.get("_additional") or {}
    category = node.get("category") or "general"
    return EvidenceChunk(
        id=extra.get("id") or str(uuid.uuid4()),
        title=node.get("title") or node.get("url") or "Untitled",
        content=node.get("content") or "",
        url=node.get("url") or "",
        category=category if category in _CATEGORIES else "general",
        form_numbers=list(node.get("formNumbers") or []),
        fees=node.get("fees") or "",
        processing_time=node.get("processingTime") or "",
        office_hours=node.get("officeHours") or "",
        official_website=node.get("officialWebsite"),
        scenario_id=node.get("scenarioId"),
        country_from=node.get("countryFrom"),
        country_to=node.get("countryTo"),
        visa_type=node.get("visaType"),
        origin="curated",
        certainty=extra.get("certainty"),
        last_updated=node.get("lastUpdated"),
    )


def _to_properties(chunk: EvidenceChunk) -> dict[str, Any]:
    return {
        "scenarioId": chunk.scenario_id,
        "title": chunk.title,
        "content": chunk.content,
        "url": chunk.url,
        "countryFrom": chunk.country_from,
        "countryTo": chunk.country_to,
        "visaType": chunk.visa_type,
        "category": chunk.category,
        "officialWebsite": chunk.official_website,
        "formNumbers": chunk.form_numbers,
        "fees": chunk.fees,
        "processingTime": chunk.processing_time,
        "officeHours": chunk.office_hours,
        "lastUpdated": chunk.last_updated,
    }


class WeaviateRetriever(VectorRetriever):
    def __init__(
        self,
        url: str,
        api_key: str | None = None,
        *,
        vectorizer_key: str | None = None,
        client: httpx.AsyncClient | None = None,
        timeout: float = 30,
    ):
        self.base_url = (url if url.startswith("http") else f"https://{url}").rstrip("/")
        self.headers: dict[str, str] = {}
        if api_key:
            self.headers["Authorization"] = f"Bearer {api_key}"
        if vectorizer_key:
            self.headers["X-OpenAI-Api-Key"] = vectorizer_key
        self.timeout = timeout
        self._client = client

    async def search_by_scenario(self, scenario_id: str, limit: int = 20) -> list[EvidenceChunk]:
        where = f'where: {{path: ["scenarioId"], operator: Equal, valueText: {_gql_string(scenario_id)}}}'
        chunks = await self._get(f"{where}, limit: {int(limit)}")
        log.info("Retrieved %d curated chunks for scenario %s", len(chunks), scenario_id)
        return chunks

    async def search_similar(self, query: str, limit: int = 10, threshold: float = 0.7) -> list[EvidenceChunk]:
        chunks = await self._get(f"nearText: {{concepts: [{_gql_string(query)}]}}, limit: {int(limit)}")
        hits = [c for c in chunks if (c.certainty or 0.0) >= threshold]
        log.info("Found %d similar chunks (threshold=%.2f) for %r", len(hits), threshold, query[:80])
        return hits

    async def add_chunks(self, chunks: list[EvidenceChunk]) -> int:
        if not chunks:
            return 0
        body = {"objects": [{"class": _CLASS_NAME, "properties": _to_properties(c)} for c in chunks]}
        results = await self._request("POST", "/v1/batch/objects", body)
        failed = 0
        if isinstance(results, list):
            failed = sum(1 for r in results if isinstance(r, dict) and ((r.get("result") or {}).get("errors")))
        if failed:
            log.warning("Curated store rejected %d of %d chunks", failed, len(chunks))
        log.info("Stored %d chunks in curated store", len(chunks) - failed)
        return len(chunks) - failed

    async def ensure_schema(self) -> bool:
        """Create the ``ImmigrationSource`` class with its vectorizer if it is missing.

        Returns True when the class was created. ``nearText`` needs the
        vectorizer, so this must run before the first batch write.
        """
        existing = await self._request("GET", f"/v1/schema/{_CLASS_NAME}", missing_ok=True)
        if existing is not None:
            return False
        await self._request("POST", "/v1/schema", SCHEMA_CLASS)
        log.info("Created curated store class %s (%s)", _CLASS_NAME, SCHEMA_CLASS["vectorizer"])
        return True

    async def _get(self, arguments: str) -> list[EvidenceChunk]:
        query = f"{{ Get {{ {_CLASS_NAME}({arguments}) {{ {_FIELDS} }} }} }}"
        data = await self._request("POST", "/v1/graphql", {"query": query})
        if not isinstance(data, dict):
            raise InvalidResponse(f"Vector store returned {type(data).__name__} for a GraphQL query")
        if data.get("errors"):
            raise UpstreamError(f"Vector store query failed: {data['errors']}")
        try:
            nodes = ((data.get("data") or {}).get("Get") or {}).get(_CLASS_NAME) or []
            return [_to_chunk(n) for n in nodes]
        except (AttributeError, TypeError, ValueError) as exc:
            raise InvalidResponse(f"Malformed GraphQL payload from vector store: {exc}") from exc

    async def _request(
        self, method: str, path: str, body: dict[str, Any] | None = None, *, missing_ok: bool = False
    ) -> Any:
        if self._client is not None:
            resp = await self._send(self._client, method, path, body)
        else:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                resp = await self._send(client, method, path, body)

        if missing_ok and resp.status_code == 404:
            return None
        if resp.status_code == 429 or resp.status_code >= 500:
            raise TransientUpstream(f"Vector store {resp.status_code}: {resp.text[:300]}", status_code=resp.status_code)
        if resp.status_code >= 400:
            raise UpstreamError(f"Vector store {resp.status_code}: {resp.text[:300]}", status_code=resp.status_code)
        try:
            return resp.json()
        except ValueError as exc:
            raise InvalidResponse(f"Vector store returned a non-JSON body: {resp.text[:200]!r}") from exc

    async def _send(
        self, client: httpx.AsyncClient, method: str, path: str, body: dict[str, Any] | None
    ) -> httpx.Response:
        try:
            return await client.request(method, f"{self.base_url}{path}", headers=self.headers, json=body)
        except httpx.TransportError as exc:
            raise UpstreamError(f"Vector store request failed: {exc}") from exc


def _gql_string(value: str) -> str:
    escaped = value.replace("\\", "\\\\").replace('"', '\\"').replace("\n", " ")
    return f'"{escaped}"'

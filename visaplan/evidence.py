"""Tiered evidence assembly.

Tier 1 asks the curated store (by scenario id, then by similarity). Only when
that comes back empty does tier 2 run live search → extraction → chunking.
"""
from __future__ import annotations

import logging
import time
from typing import Mapping

import httpx

from visaplan.chunking import build_chunks
from visaplan.errors import EvidenceUnavailable, PlannerError
from visaplan.llm import LLMConfig, call_llm_json
from visaplan.prompts import QUERY_PROMPT
from visaplan.scenarios import ScenarioDefinition
from visaplan.schemas import EvidenceChunk
from visaplan.vector_store import VectorRetriever
from visaplan.web_ingest import MAX_RESULTS_PER_QUERY, SearchGateway, SourceFetcher, is_http_url

log = logging.getLogger("visaplan.evidence")

SCENARIO_LIMIT = 24
SCENARIO_SIMILAR_LIMIT = 15
SCENARIO_SIMILAR_THRESHOLD = 0.6
OPEN_SIMILAR_LIMIT = 12
OPEN_SIMILAR_THRESHOLD = 0.75
MIN_DOCUMENT_CHARS = 100
MAX_QUERIES = 4

_QUERY_SCHEMA = {
    "type": "object",
    "properties": {"queries": {"type": "array", "minItems": 1, "maxItems": MAX_QUERIES, "items": {"type": "string"}}},
    "required": ["queries"],
    "additionalProperties": False,
}


def fallback_queries(prompt: str) -> list[str]:
    return [f"{prompt} official requirements", f"{prompt} government guidance"]


async def generate_search_queries(
    prompt: str, answers: Mapping[str, str], llm: LLMConfig | None
) -> list[str]:
    """2–4 search queries from the generation service, or the plain fallback pair."""
    if llm is None:
        return fallback_queries(prompt)
    try:
        out = await call_llm_json(
            prompt=QUERY_PROMPT,
            payload={"prompt": prompt, "answers": dict(answers)},
            cfg=llm,
            schema=_QUERY_SCHEMA,
            schema_name="queries",
        )
    except PlannerError as exc:
        log.warning("Query generation unavailable (%s) — using fallback queries", exc)
        return fallback_queries(prompt)

    queries: list[str] = []
    for q in out.get("queries") or []:
        q = str(q).strip()
        if q and q not in queries:
            queries.append(q)
    return queries[:MAX_QUERIES] or fallback_queries(prompt)


def dedupe_chunks(chunks: list[EvidenceChunk]) -> list[EvidenceChunk]:
    seen: set[tuple[str, str, str]] = set()
    out: list[EvidenceChunk] = []
    for ch in chunks:
        key = (ch.url, ch.heading, ch.content)
        if key in seen:
            continue
        seen.add(key)
        out.append(ch)
    return out


class EvidenceAssembler:
    def __init__(
        self,
        *,
        retriever: VectorRetriever | None,
        search: SearchGateway,
        fetcher: SourceFetcher,
        llm: LLMConfig | None = None,
        max_sources: int = 5,
        max_evidence: int = 40,
    ):
        self.retriever = retriever
        self.search = search
        self.fetcher = fetcher
        self.llm = llm
        self.max_sources = max_sources
        self.max_evidence = max_evidence

    async def assemble(
        self, prompt: str, answers: Mapping[str, str], scenario: ScenarioDefinition | None
    ) -> list[EvidenceChunk]:
        t0 = time.perf_counter()
        chunks = await self.curated(prompt, answers, scenario)
        tier = "curated"
        if not chunks:
            log.info("No curated evidence — falling back to live search")
            chunks = await self.live(prompt, answers, scenario)
            tier = "live"

        chunks = dedupe_chunks(chunks)[: self.max_evidence]
        if not chunks:
            raise EvidenceUnavailable("No evidence collected from the curated store or live search")

        log.info(
            "Assembled %d evidence chunks (%s) in %.0fms",
            len(chunks), tier, (time.perf_counter() - t0) * 1000,
        )
        return chunks

    # ── Tier 1 ────────────────────────────────────────────────
    async def curated(
        self, prompt: str, answers: Mapping[str, str], scenario: ScenarioDefinition | None
    ) -> list[EvidenceChunk]:
        if self.retriever is None:
            return []
        try:
            if scenario:
                hits = await self.retriever.search_by_scenario(scenario.id, SCENARIO_LIMIT)
                if not hits:
                    query = f"{scenario.label} {scenario.summary}"
                    log.info("No direct scenario matches — similarity retry for %r", query[:80])
                    hits = await self.retriever.search_similar(
                        query, SCENARIO_SIMILAR_LIMIT, SCENARIO_SIMILAR_THRESHOLD
                    )
            else:
                query = " ".join([prompt, *(v for v in answers.values() if v)]).strip()
                hits = await self.retriever.search_similar(query, OPEN_SIMILAR_LIMIT, OPEN_SIMILAR_THRESHOLD)
        except (PlannerError, httpx.HTTPError) as exc:
            log.error("Curated store lookup failed: %s", exc)
            return []

        return [
            ch.model_copy(update={"id": f"curated-{i}", "origin": "curated"})
            for i, ch in enumerate(hits, start=1)
        ]

    # ── Tier 2 ────────────────────────────────────────────────
    async def live(
        self, prompt: str, answers: Mapping[str, str], scenario: ScenarioDefinition | None
    ) -> list[EvidenceChunk]:
        queries = await generate_search_queries(prompt, answers, self.llm)
        log.info("Live search with %d queries", len(queries))

        collected: list[EvidenceChunk] = []
        seen: set[str] = set()
        accepted = 0

        for query in queries:
            try:
                results = await self.search.search(query, MAX_RESULTS_PER_QUERY)
            except (PlannerError, httpx.HTTPError) as exc:
                log.error("Search failed for %r: %s", query, exc)
                continue

            for result in results:
                if not is_http_url(result.url):
                    log.warning("Skipping invalid URL: %r", result.url)
                    continue
                if result.url in seen:
                    continue
                seen.add(result.url)

                # Sequential on purpose: backoff and the seen-set stay coherent.
                try:
                    doc = await self.fetcher.fetch(result.url)
                except Exception as exc:
                    log.warning("Error fetching %s: %s", result.url, exc)
                    continue
                if doc is None:
                    continue
                if len(doc.markdown or "") < MIN_DOCUMENT_CHARS:
                    log.warning("Skipping source with insufficient content: %s", result.url)
                    continue

                if not doc.title and result.title:
                    doc = doc.model_copy(update={"title": result.title})
                chunks = build_chunks(
                    doc, scenario=scenario, fallback_url=result.url, id_prefix=f"source-{accepted + 1}"
                )
                if not chunks:
                    log.warning("Skipping source with no usable sections: %s", result.url)
                    continue

                accepted += 1
                collected.extend(chunks)
                log.info("Accepted %s — %d chunks (%d/%d)", result.url, len(chunks), accepted, self.max_sources)
                if accepted >= self.max_sources:
                    return collected

        return collected

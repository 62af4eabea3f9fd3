"""Out-of-band backfill of the curated store.

    python -m visaplan.populate ph-nurse-berlin-skilled-worker
    python -m visaplan.populate --all
    python -m visaplan.populate --all --snapshot data/curated.jsonl
"""
from __future__ import annotations

import argparse
import asyncio
import logging
import os
import sys

import httpx
from dotenv import load_dotenv

from visaplan.chunking import build_chunks
from visaplan.config import Settings
from visaplan.errors import InvalidResponse, NotFound, PlannerError
from visaplan.evidence import MIN_DOCUMENT_CHARS
from visaplan.scenarios import SCENARIOS, ScenarioDefinition, get_scenario
from visaplan.schemas import EvidenceChunk
from visaplan.vector_store import InMemoryRetriever, VectorRetriever, WeaviateRetriever
from visaplan.web_ingest import MAX_RESULTS_PER_QUERY, SearchGateway, SourceFetcher, is_http_url

log = logging.getLogger("visaplan.populate")


async def scrape_scenario(
    scenario: ScenarioDefinition, fetcher: SourceFetcher, search: SearchGateway
) -> list[EvidenceChunk]:
    """Scrape the scenario's official sites, then its search queries, into tagged chunks."""
    log.info("Scraping %s (%s → %s, %s)", scenario.id, scenario.country_from, scenario.country_to, scenario.visa_type)
    chunks: list[EvidenceChunk] = []
    seen: set[str] = set()
    accepted = 0

    async def ingest(url: str, title: str | None) -> None:
        nonlocal accepted
        try:
            doc = await fetcher.fetch(url)
        except (PlannerError, httpx.HTTPError) as exc:
            log.error("Failed to scrape %s: %s", url, exc)
            return
        if doc is None or len(doc.markdown or "") < MIN_DOCUMENT_CHARS:
            log.warning("Skipping source with insufficient content: %s", url)
            return
        if not doc.title and title:
            doc = doc.model_copy(update={"title": title})
        found = build_chunks(doc, scenario=scenario, fallback_url=url, id_prefix=f"{scenario.id}-{accepted + 1}")
        if not found:
            log.warning("Skipping source with no usable sections: %s", url)
            return
        accepted += 1
        chunks.extend(found)
        log.info("Added %d chunks from %s", len(found), doc.title or url)

    for url in scenario.official_sites:
        if url in seen:
            continue
        seen.add(url)
        await ingest(url, "official")

    for query in scenario.search_queries:
        try:
            results = await search.search(query, MAX_RESULTS_PER_QUERY)
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
            await ingest(result.url, result.title)

    log.info("Completed %s: %d chunks from %d sources", scenario.id, len(chunks), accepted)
    return chunks


async def populate(
    scenarios: list[ScenarioDefinition],
    *,
    fetcher: SourceFetcher,
    search: SearchGateway,
    retriever: VectorRetriever | None,
) -> int:
    total = 0
    if retriever is not None:
        await retriever.ensure_schema()
    for scenario in scenarios:
        chunks = await scrape_scenario(scenario, fetcher, search)
        if not chunks:
            log.warning("No sources scraped for %s. Check credits and connectivity.", scenario.id)
            continue
        if retriever is None:
            log.info("Dry run: %d chunks for %s not stored", len(chunks), scenario.id)
            total += len(chunks)
            continue
        try:
            total += await retriever.add_chunks(chunks)
        except (PlannerError, httpx.HTTPError) as exc:
            log.error("Failed to store chunks for %s: %s", scenario.id, exc)
    return total


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="visaplan-populate", description="Backfill the curated evidence store.")
    p.add_argument("scenario", nargs="?", help="Scenario id, e.g. ph-nurse-berlin-skilled-worker")
    p.add_argument("--all", action="store_true", help="Scrape every catalog scenario")
    p.add_argument("--dry-run", action="store_true", help="Scrape and chunk without writing to the store")
    p.add_argument("--snapshot", metavar="FILE", help="Write to a JSON-lines snapshot instead of Weaviate (chunks with the same id are replaced)")
    return p


def main(argv: list[str] | None = None) -> int:
    load_dotenv()
    logging.basicConfig(
        level=os.environ.get("LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)-5s [%(name)s] %(message)s",
        datefmt="%H:%M:%S",
    )
    args = build_parser().parse_args(argv)
    scenario_id = args.scenario or os.environ.get("SCENARIO_ID")

    if args.all:
        scenarios = list(SCENARIOS)
    elif scenario_id:
        try:
            scenarios = [get_scenario(scenario_id)]
        except NotFound as exc:
            print(str(exc), file=sys.stderr)
            return 1
    else:
        build_parser().print_usage(sys.stderr)
        return 1

    settings = Settings.from_env()
    retriever: VectorRetriever | None = None
    snapshot: InMemoryRetriever | None = None
    if args.snapshot and not args.dry_run:
        try:
            snapshot = retriever = InMemoryRetriever.load(args.snapshot)
        except InvalidResponse as exc:
            print(str(exc), file=sys.stderr)
            return 1
    elif not args.dry_run:
        if not settings.weaviate_url:
            print("WEAVIATE_URL is not set (use --snapshot FILE or --dry-run)", file=sys.stderr)
            return 1
        retriever = WeaviateRetriever(
            settings.weaviate_url, settings.weaviate_api_key, vectorizer_key=settings.llm_api_key
        )

    try:
        total = asyncio.run(
            populate(
                scenarios,
                fetcher=SourceFetcher(settings.firecrawl_api_key, settings.firecrawl_base_url),
                search=SearchGateway(settings.google_search_api_key, settings.google_search_engine_id),
                retriever=retriever,
            )
        )
    except (PlannerError, httpx.HTTPError) as exc:
        log.error("Curated store is not usable: %s", exc)
        return 1
    if snapshot is not None:
        log.info("Snapshot %s now holds %d chunks", args.snapshot, snapshot.save(args.snapshot))
    print(f"Stored {total} chunks for {len(scenarios)} scenario(s)" if retriever is not None else f"Scraped {total} chunks")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())

"""Shared fakes for the visaplan test suite.

The network-facing collaborators (curated store, search, extraction) are
replaced by in-process doubles so pipeline tests never touch the network.
"""
from __future__ import annotations

import pytest

from visaplan.schemas import EvidenceChunk, ExtractedDocument, SearchResult
from visaplan.vector_store import VectorRetriever

LONG_TEXT = (
    "Applicants must hold a signed employment contract, a recognised qualification and proof of "
    "health insurance. Documents required include a passport valid for the whole stay, two biometric "
    "photographs and the completed national visa application form. "
)


def make_chunk(chunk_id: str, **overrides) -> EvidenceChunk:
    fields = {
        "id": chunk_id,
        "title": f"Source {chunk_id}",
        "content": LONG_TEXT,
        "url": f"https://example.gov/{chunk_id}",
        "category": "general",
    }
    fields.update(overrides)
    return EvidenceChunk(**fields)


def make_doc(url: str, *, title: str | None = "Official guidance", body: str = LONG_TEXT) -> ExtractedDocument:
    return ExtractedDocument(url=url, title=title, markdown=f"## Requirements\n\n{body}")


class FakeRetriever(VectorRetriever):
    def __init__(self, by_scenario=None, similar=None, error: Exception | None = None):
        self.by_scenario = list(by_scenario or [])
        self.similar = list(similar or [])
        self.error = error
        self.calls: list[tuple] = []
        self.added: list[EvidenceChunk] = []
        self.schema_checks = 0

    async def search_by_scenario(self, scenario_id, limit=20):
        self.calls.append(("scenario", scenario_id, limit))
        if self.error:
            raise self.error
        return self.by_scenario[:limit]

    async def search_similar(self, query, limit=10, threshold=0.7):
        self.calls.append(("similar", query, limit, threshold))
        if self.error:
            raise self.error
        return self.similar[:limit]

    async def add_chunks(self, chunks):
        self.added.extend(chunks)
        return len(chunks)

    async def ensure_schema(self):
        self.schema_checks += 1
        return False


class FakeSearch:
    def __init__(self, results: dict[str, list[SearchResult]] | None = None, default=None, error=None):
        self.results = results or {}
        self.default = list(default or [])
        self.error = error
        self.queries: list[str] = []

    async def search(self, query, limit=10):
        self.queries.append(query)
        if self.error:
            raise self.error
        return self.results.get(query, self.default)[:limit]


class FakeFetcher:
    """``docs`` maps url → ExtractedDocument, None, or an exception to raise."""

    def __init__(self, docs=None, *, default_doc: bool = True):
        self.docs = docs or {}
        self.default_doc = default_doc
        self.fetched: list[str] = []

    async def fetch(self, url):
        self.fetched.append(url)
        doc = self.docs.get(url, make_doc(url) if self.default_doc else None)
        if isinstance(doc, Exception):
            raise doc
        return doc


@pytest.fixture
def chunk_factory():
    return make_chunk


@pytest.fixture
def doc_factory():
    return make_doc


@pytest.fixture
def fake_retriever():
    return FakeRetriever


@pytest.fixture
def fake_search():
    return FakeSearch


@pytest.fixture
def fake_fetcher():
    return FakeFetcher


def valid_draft(evidence_id: str | None = "curated-1") -> dict:
    """A generator response that satisfies ``PlanDraft``."""
    ids = [evidence_id] if evidence_id else []
    return {
        "summary": {"headline": "Relocation plan", "overview": ["Secure the contract, then apply."]},
        "workstreams": [
            {
                "id": "ws-1",
                "title": "Visa application",
                "steps": [
                    {"id": "s-1", "name": "Book embassy appointment", "evidence_ids": ids},
                    {"id": "s-2", "name": "Submit visa application"},
                ],
            },
            {
                "id": "ws-2",
                "title": "Arrival",
                "steps": [
                    {"id": "s-3", "name": "Anmeldung registration", "evidence_ids": ["missing-id"]},
                    {"id": "s-4", "name": "Health insurance enrolment"},
                ],
            },
        ],
        "checklist": [{"id": "c-1", "label": "Passport", "source_id": "missing-id"}],
        "timeline": [{"id": "t-1", "title": "Visa appointment", "due_date": "2026-01-15", "source_id": evidence_id}],
    }


@pytest.fixture
def draft_payload():
    return valid_draft

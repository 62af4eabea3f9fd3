"""Live web evidence — search gateway and page extraction with bounded retry.

Production features:
- Extraction-service retry on 429 (honours "retry after Ns"), 5xx and dropped connections
- Hard cap of 4 attempts per URL
- Readability + BeautifulSoup fallback when only HTML comes back
- Government-domain promotion for search results
"""
from __future__ import annotations

import asyncio
import logging
import re
import time
from typing import Awaitable, Callable
from urllib.parse import urlparse

import httpx
from bs4 import BeautifulSoup
from readability import Document

from visaplan.errors import InvalidResponse, TransientUpstream, UpstreamError
from visaplan.schemas import ExtractedDocument, SearchResult

log = logging.getLogger("visaplan.web_ingest")

MAX_ATTEMPTS = 4
BASE_RETRY_DELAY_S = 1.5
SERVER_ERROR_JITTER = 1.5
MAX_RESULTS_PER_QUERY = 10

_RETRY_AFTER = re.compile(r"retry after (\d+(?:\.\d+)?)\s*s", re.IGNORECASE)
_GOV_DOMAIN = re.compile(r"\.(gov|gc\.ca|gov\.au|gov\.uk|gouv\.fr|admin\.ch)", re.IGNORECASE)

Sleep = Callable[[float], Awaitable[None]]


def is_http_url(url: str | None) -> bool:
    if not url:
        return False
    parsed = urlparse(url)
    return parsed.scheme in ("http", "https") and bool(parsed.netloc)


def is_government_url(url: str) -> bool:
    return bool(_GOV_DOMAIN.search(url))


def gov_first(results: list[SearchResult]) -> list[SearchResult]:
    """Government results first; relative order is kept within each group."""
    gov = [r for r in results if is_government_url(r.url)]
    others = [r for r in results if not is_government_url(r.url)]
    return gov + others


def parse_retry_after(message: str | None, default: float = BASE_RETRY_DELAY_S) -> float:
    if not message:
        return default
    m = _RETRY_AFTER.search(message)
    if m:
        seconds = float(m.group(1))
        if seconds > 0:
            return seconds
    return default


def json_object(resp: httpx.Response, what: str) -> dict:
    """Decode a 2xx body that must be a JSON object, else ``InvalidResponse``."""
    try:
        data = resp.json()
    except ValueError as exc:
        raise InvalidResponse(f"{what} returned a non-JSON body: {resp.text[:200]!r}") from exc
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise InvalidResponse(f"{what} returned {type(data).__name__}, expected an object")
    return data


def html_to_markdown(html: str) -> tuple[str | None, str]:
    """Reduce an HTML page to (title, markdown-ish text) via readability."""
    doc = Document(html)
    soup = BeautifulSoup(doc.summary(html_partial=True), "lxml")
    lines: list[str] = []
    for el in soup.find_all(["h1", "h2", "h3", "h4", "p", "li"]):
        text = re.sub(r"\s+", " ", el.get_text(" ")).strip()
        if not text:
            continue
        if el.name in ("h1", "h2", "h3", "h4"):
            level = max(2, int(el.name[1]))
            lines.append(f"{'#' * level} {text}")
        elif el.name == "li":
            lines.append(f"- {text}")
        else:
            lines.append(text)
    return (doc.short_title() or None), "\n\n".join(lines)


# ── Extraction ────────────────────────────────────────────────
class SourceFetcher:
    """Fetches one URL through a Firecrawl-compatible ``/v1/scrape`` endpoint."""

    def __init__(
        self,
        api_key: str | None,
        base_url: str = "https://api.firecrawl.dev",
        *,
        client: httpx.AsyncClient | None = None,
        max_attempts: int = MAX_ATTEMPTS,
        base_delay: float = BASE_RETRY_DELAY_S,
        timeout: float = 60,
        sleep: Sleep = asyncio.sleep,
    ):
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.timeout = timeout
        self._client = client
        self._sleep = sleep

    @property
    def enabled(self) -> bool:
        return bool(self.api_key)

    async def fetch(self, url: str) -> ExtractedDocument | None:
        if not self.api_key:
            log.info("FIRECRAWL_API_KEY not set — skipping extraction for %s", url)
            return None

        if self._client is not None:
            return await self._fetch(self._client, url)
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            return await self._fetch(client, url)

    async def _fetch(self, client: httpx.AsyncClient, url: str) -> ExtractedDocument | None:
        endpoint = f"{self.base_url}/v1/scrape"
        headers = {"Authorization": f"Bearer {self.api_key}"}
        body = {"url": url, "formats": ["markdown", "html"]}

        for attempt in range(1, self.max_attempts + 1):
            t0 = time.perf_counter()
            try:
                resp = await client.post(endpoint, headers=headers, json=body)
            except httpx.TransportError as exc:
                delay = self.base_delay * attempt * SERVER_ERROR_JITTER
                if attempt < self.max_attempts:
                    log.warning("Extraction transport error %r — waiting %.1fs (%d/%d) %s", exc, delay, attempt, self.max_attempts, url)
                    await self._sleep(delay)
                    continue
                raise UpstreamError(f"Extraction request failed for {url} after {attempt} attempts: {exc}") from exc

            if resp.status_code == 429:
                delay = parse_retry_after(resp.text, self.base_delay)
                if attempt < self.max_attempts:
                    log.warning("Extraction rate-limited — waiting %.1fs (%d/%d) %s", delay, attempt, self.max_attempts, url)
                    await self._sleep(delay)
                    continue
                raise TransientUpstream(
                    f"Extraction rate-limited after {attempt} attempts: {url}",
                    status_code=429, retry_after=delay,
                )

            if resp.status_code >= 500:
                delay = self.base_delay * attempt * SERVER_ERROR_JITTER
                if attempt < self.max_attempts:
                    log.warning("Extraction %d — waiting %.1fs (%d/%d) %s", resp.status_code, delay, attempt, self.max_attempts, url)
                    await self._sleep(delay)
                    continue
                raise TransientUpstream(
                    f"Extraction {resp.status_code} after {attempt} attempts: {url}",
                    status_code=resp.status_code,
                )

            if resp.status_code >= 400:
                raise UpstreamError(f"Extraction {resp.status_code}: {resp.text[:300]}", status_code=resp.status_code)

            data = json_object(resp, f"Extraction of {url}").get("data")
            if data and not isinstance(data, dict):
                raise InvalidResponse(f"Extraction of {url} returned a malformed data field")
            if not data:
                log.info("Extraction returned no data for %s", url)
                return None

            doc = ExtractedDocument(
                url=data.get("url") or url,
                title=data.get("title") or (data.get("metadata") or {}).get("title") or url,
                markdown=data.get("markdown"),
                html=data.get("html"),
            )
            if not doc.markdown and doc.html:
                title, markdown = html_to_markdown(doc.html)
                doc = doc.model_copy(update={"markdown": markdown, "title": doc.title or title})

            log.info(
                "Extracted %s — %d chars in %.0fms (attempt %d)",
                url, len(doc.markdown or ""), (time.perf_counter() - t0) * 1000, attempt,
            )
            return doc

        return None


# ── Search ────────────────────────────────────────────────────
class SearchGateway:
    """Google Custom Search wrapper; returns results with government domains first."""

    endpoint = "https://www.googleapis.com/customsearch/v1"

    def __init__(
        self,
        api_key: str | None,
        engine_id: str | None,
        *,
        client: httpx.AsyncClient | None = None,
        timeout: float = 30,
    ):
        self.api_key = api_key
        self.engine_id = engine_id
        self.timeout = timeout
        self._client = client

    async def search(self, query: str, limit: int = MAX_RESULTS_PER_QUERY) -> list[SearchResult]:
        if not self.api_key or not self.engine_id:
            log.info("Search credentials not set — skipping search for %r", query)
            return []

        params = {"key": self.api_key, "cx": self.engine_id, "q": query, "num": str(min(limit, MAX_RESULTS_PER_QUERY))}
        if self._client is not None:
            resp = await self._get(self._client, params)
        else:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                resp = await self._get(client, params)

        if resp.status_code == 429 or resp.status_code >= 500:
            raise TransientUpstream(f"Search {resp.status_code}: {resp.text[:300]}", status_code=resp.status_code)
        if resp.status_code >= 400:
            raise UpstreamError(f"Search {resp.status_code}: {resp.text[:300]}", status_code=resp.status_code)

        items = json_object(resp, "Search").get("items") or []
        if not isinstance(items, list) or not all(isinstance(item, dict) for item in items):
            raise InvalidResponse(f"Search returned malformed items for {query!r}")
        results = [
            SearchResult(title=item.get("title") or "", url=item.get("link") or "", snippet=item.get("snippet"))
            for item in items
        ]
        log.info("Search %r → %d results", query, len(results))
        return gov_first(results)

    async def _get(self, client: httpx.AsyncClient, params: dict[str, str]) -> httpx.Response:
        try:
            return await client.get(self.endpoint, params=params)
        except httpx.TransportError as exc:
            raise UpstreamError(f"Search request failed: {exc}") from exc

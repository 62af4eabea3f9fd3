"""Extraction and search clients against ``httpx.MockTransport``."""
import json

import httpx
import pytest

from visaplan.errors import InvalidResponse, TransientUpstream, UpstreamError
from visaplan.schemas import SearchResult
from visaplan.web_ingest import (
    SearchGateway,
    SourceFetcher,
    gov_first,
    html_to_markdown,
    is_government_url,
    is_http_url,
    parse_retry_after,
)

_PAGE = {"data": {"url": "https://www.gov.uk/graduate-visa", "title": "Graduate visa", "markdown": "## Fees\n\nText"}}


def _scripted(responses: list[httpx.Response], calls: list[httpx.Request]):
    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        src = responses[min(len(calls), len(responses)) - 1]
        return httpx.Response(src.status_code, headers=src.headers, content=src.content)

    return handler


def _fetcher(handler, sleeps: list[float], **kwargs) -> SourceFetcher:
    async def fake_sleep(delay: float) -> None:
        sleeps.append(delay)

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return SourceFetcher("fc-key", "https://extract.test", client=client, sleep=fake_sleep, **kwargs)


# ════════════════════════════════════════════════════════════════
# Helpers
# ════════════════════════════════════════════════════════════════
class TestHelpers:
    def test_parse_retry_after(self):
        assert parse_retry_after("Rate limit exceeded. Please retry after 3s") == 3.0
        assert parse_retry_after("retry after 2.5 s") == 2.5

    def test_parse_retry_after_default(self):
        assert parse_retry_after("Too many requests", 1.5) == 1.5
        assert parse_retry_after(None, 4.0) == 4.0
        assert parse_retry_after("retry after 0s", 1.5) == 1.5

    def test_is_http_url(self):
        assert is_http_url("https://www.gov.uk/x")
        assert not is_http_url("undefined")
        assert not is_http_url("ftp://example.com")
        assert not is_http_url(None)

    def test_government_domains(self):
        assert is_government_url("https://immi.homeaffairs.gov.au/visas")
        assert is_government_url("https://www.uscis.gov/h-1b")
        assert not is_government_url("https://www.make-it-in-germany.com/en")

    def test_gov_first_keeps_relative_order(self):
        results = [
            SearchResult(title="a", url="https://blog.example.com/a"),
            SearchResult(title="b", url="https://www.gov.uk/b"),
            SearchResult(title="c", url="https://forum.example.com/c"),
            SearchResult(title="d", url="https://www.uscis.gov/d"),
        ]
        assert [r.title for r in gov_first(results)] == ["b", "d", "a", "c"]

    def test_html_to_markdown(self):
        html = (
            "<html><head><title>Skilled worker visa</title></head><body><article>"
            "<h2>Eligibility</h2>"
            "<p>You must have a confirmed job offer from an approved employer before you apply for this visa. "
            "The job must be at the required skill level and pay at least the general salary threshold.</p>"
            "<p>You must also prove your knowledge of English and have enough personal savings.</p>"
            "</article></body></html>"
        )
        title, markdown = html_to_markdown(html)
        assert title
        assert "confirmed job offer" in markdown


# ════════════════════════════════════════════════════════════════
# SourceFetcher
# ════════════════════════════════════════════════════════════════
class TestSourceFetcher:
    @pytest.mark.asyncio
    async def test_success(self):
        calls, sleeps = [], []
        fetcher = _fetcher(_scripted([httpx.Response(200, json=_PAGE)], calls), sleeps)
        doc = await fetcher.fetch("https://www.gov.uk/graduate-visa")
        assert doc is not None
        assert doc.title == "Graduate visa"
        assert doc.markdown.startswith("## Fees")
        body = json.loads(calls[0].content)
        assert body["url"] == "https://www.gov.uk/graduate-visa"
        assert calls[0].headers["Authorization"] == "Bearer fc-key"
        assert sleeps == []

    @pytest.mark.asyncio
    async def test_rate_limit_honours_retry_after(self):
        calls, sleeps = [], []
        responses = [
            httpx.Response(429, text="Rate limit exceeded. Please retry after 3s"),
            httpx.Response(200, json=_PAGE),
        ]
        fetcher = _fetcher(_scripted(responses, calls), sleeps)
        doc = await fetcher.fetch("https://www.gov.uk/graduate-visa")
        assert doc is not None
        assert sleeps == [3.0]
        assert len(calls) == 2

    @pytest.mark.asyncio
    async def test_server_errors_back_off_linearly(self):
        calls, sleeps = [], []
        responses = [httpx.Response(503)] * 3 + [httpx.Response(200, json=_PAGE)]
        fetcher = _fetcher(_scripted(responses, calls), sleeps)
        doc = await fetcher.fetch("https://www.gov.uk/graduate-visa")
        assert doc is not None
        assert sleeps == pytest.approx([2.25, 4.5, 6.75])

    @pytest.mark.asyncio
    async def test_gives_up_after_four_attempts(self):
        calls, sleeps = [], []
        fetcher = _fetcher(_scripted([httpx.Response(429, text="slow down")], calls), sleeps)
        with pytest.raises(TransientUpstream) as info:
            await fetcher.fetch("https://www.gov.uk/graduate-visa")
        assert len(calls) == 4
        assert len(sleeps) == 3
        assert info.value.status_code == 429

    @pytest.mark.asyncio
    async def test_client_error_fails_immediately(self):
        calls, sleeps = [], []
        fetcher = _fetcher(_scripted([httpx.Response(402, text="Payment required")], calls), sleeps)
        with pytest.raises(UpstreamError):
            await fetcher.fetch("https://www.gov.uk/graduate-visa")
        assert len(calls) == 1
        assert sleeps == []

    @pytest.mark.asyncio
    async def test_non_json_body(self):
        calls, sleeps = [], []
        fetcher = _fetcher(_scripted([httpx.Response(200, text="<html>oops</html>")], calls), sleeps)
        with pytest.raises(InvalidResponse):
            await fetcher.fetch("https://www.gov.uk/graduate-visa")

    @pytest.mark.asyncio
    async def test_dropped_connection_is_retried(self):
        calls, sleeps = [], []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            if len(calls) == 1:
                raise httpx.ConnectError("connection reset", request=request)
            return httpx.Response(200, json=_PAGE)

        doc = await _fetcher(handler, sleeps).fetch("https://www.gov.uk/graduate-visa")
        assert doc is not None and doc.title == "Graduate visa"
        assert len(calls) == 2
        assert sleeps == [1.5 * 1 * 1.5]

    @pytest.mark.asyncio
    async def test_dropped_connection_gives_up_after_cap(self):
        calls, sleeps = [], []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            raise httpx.ConnectError("connection reset", request=request)

        with pytest.raises(UpstreamError):
            await _fetcher(handler, sleeps).fetch("https://www.gov.uk/graduate-visa")
        assert len(calls) == 4
        assert len(sleeps) == 3

    @pytest.mark.asyncio
    async def test_list_body_is_invalid(self):
        calls, sleeps = [], []
        fetcher = _fetcher(_scripted([httpx.Response(200, json=[1, 2])], calls), sleeps)
        with pytest.raises(InvalidResponse):
            await fetcher.fetch("https://www.gov.uk/graduate-visa")

    @pytest.mark.asyncio
    async def test_no_data_returns_none(self):
        calls, sleeps = [], []
        fetcher = _fetcher(_scripted([httpx.Response(200, json={"success": False})], calls), sleeps)
        assert await fetcher.fetch("https://www.gov.uk/graduate-visa") is None

    @pytest.mark.asyncio
    async def test_missing_key_skips_request(self):
        calls: list[httpx.Request] = []
        client = httpx.AsyncClient(transport=httpx.MockTransport(_scripted([httpx.Response(200, json=_PAGE)], calls)))
        fetcher = SourceFetcher(None, client=client)
        assert fetcher.enabled is False
        assert await fetcher.fetch("https://www.gov.uk/graduate-visa") is None
        assert calls == []


# ════════════════════════════════════════════════════════════════
# SearchGateway
# ════════════════════════════════════════════════════════════════
class TestSearchGateway:
    @staticmethod
    def _gateway(handler, *, key="g-key", cx="engine") -> SearchGateway:
        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        return SearchGateway(key, cx, client=client)

    @pytest.mark.asyncio
    async def test_government_results_first(self):
        calls: list[httpx.Request] = []
        items = {
            "items": [
                {"title": "Blog", "link": "https://blog.example.com/visa", "snippet": "tips"},
                {"title": "GOV.UK", "link": "https://www.gov.uk/graduate-visa", "snippet": "official"},
            ]
        }
        gateway = self._gateway(_scripted([httpx.Response(200, json=items)], calls))
        results = await gateway.search("graduate visa uk", 5)
        assert [r.title for r in results] == ["GOV.UK", "Blog"]
        assert calls[0].url.params["q"] == "graduate visa uk"
        assert calls[0].url.params["num"] == "5"

    @pytest.mark.asyncio
    async def test_no_credentials_returns_empty(self):
        calls: list[httpx.Request] = []
        gateway = self._gateway(_scripted([httpx.Response(200, json={})], calls), key=None)
        assert await gateway.search("anything") == []
        assert calls == []

    @pytest.mark.asyncio
    async def test_server_error_is_transient(self):
        gateway = self._gateway(_scripted([httpx.Response(500)], []))
        with pytest.raises(TransientUpstream):
            await gateway.search("anything")

    @pytest.mark.asyncio
    async def test_client_error(self):
        gateway = self._gateway(_scripted([httpx.Response(403, text="forbidden")], []))
        with pytest.raises(UpstreamError):
            await gateway.search("anything")

    @pytest.mark.asyncio
    async def test_empty_items(self):
        gateway = self._gateway(_scripted([httpx.Response(200, json={})], []))
        assert await gateway.search("anything") == []

    @pytest.mark.asyncio
    async def test_html_body_is_invalid_response(self):
        gateway = self._gateway(_scripted([httpx.Response(200, text="<html>captcha</html>")], []))
        with pytest.raises(InvalidResponse):
            await gateway.search("anything")

    @pytest.mark.asyncio
    async def test_list_body_is_invalid_response(self):
        gateway = self._gateway(_scripted([httpx.Response(200, json=["a"])], []))
        with pytest.raises(InvalidResponse):
            await gateway.search("anything")

    @pytest.mark.asyncio
    async def test_malformed_items_are_invalid_response(self):
        gateway = self._gateway(_scripted([httpx.Response(200, json={"items": "nope"})], []))
        with pytest.raises(InvalidResponse):
            await gateway.search("anything")

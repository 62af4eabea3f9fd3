"""Markdown → evidence chunks.

Extracted pages are split on level 2–4 headings, oversized sections are
re-packed by paragraph (then line, then word), short fragments are dropped, and every
surviving chunk is categorised and mined for fees, forms, processing times
and office hours.
"""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from urllib.parse import urlparse

from visaplan.scenarios import ScenarioDefinition
from visaplan.schemas import ChunkCategory, EvidenceChunk, ExtractedDocument

log = logging.getLogger("visaplan.chunking")

MAX_SECTION_CHARS = 1800
MIN_SECTION_CHARS = 250
DEFAULT_HEADING = "Overview"

_HEADING = re.compile(r"^#{2,4}\s+(.*)")
_PARAGRAPH_BREAK = re.compile(r"\n{2,}")


@dataclass(frozen=True)
class Section:
    heading: str
    body: str


# ── Splitting ─────────────────────────────────────────────────
def split_sections(markdown: str) -> list[Section]:
    sections: list[Section] = []
    heading = DEFAULT_HEADING
    buffer: list[str] = []

    for raw in markdown.splitlines():
        line = raw.rstrip()
        m = _HEADING.match(line)
        if m:
            if buffer:
                sections.append(Section(heading, "\n".join(buffer).strip()))
            heading = m.group(1).strip()
            buffer = []
            continue
        buffer.append(line)

    if buffer:
        sections.append(Section(heading, "\n".join(buffer).strip()))

    if not sections:
        return [Section(DEFAULT_HEADING, markdown)]
    return sections


def _pack(parts: list[str], max_chars: int, sep: str) -> list[str]:
    packed: list[str] = []
    current: list[str] = []
    for part in parts:
        if current and len(sep.join([*current, part])) > max_chars:
            packed.append(sep.join(current))
            current = [part]
        else:
            current.append(part)
    if current:
        packed.append(sep.join(current))
    return packed


def _fit(paragraph: str, max_chars: int) -> list[str]:
    """Break one paragraph on line breaks, then on spaces, then with a hard cut."""
    if len(paragraph) <= max_chars:
        return [paragraph]
    lines: list[str] = []
    for line in paragraph.splitlines():
        line = line.strip()
        while len(line) > max_chars:
            cut = line.rfind(" ", 0, max_chars + 1)
            if cut <= 0:
                cut = max_chars
            lines.append(line[:cut].rstrip())
            line = line[cut:].lstrip()
        if line:
            lines.append(line)
    return _pack(lines, max_chars, "\n")


def chunk_section(section: Section, *, max_chars: int = MAX_SECTION_CHARS) -> list[Section]:
    if len(section.body) <= max_chars:
        return [section]

    pieces = [
        piece
        for p in _PARAGRAPH_BREAK.split(section.body)
        if p.strip()
        for piece in _fit(p.strip(), max_chars)
    ]
    return [Section(section.heading, body) for body in _pack(pieces, max_chars, "\n\n")]


def chunk_markdown(
    markdown: str,
    *,
    max_chars: int = MAX_SECTION_CHARS,
    min_chars: int = MIN_SECTION_CHARS,
) -> list[Section]:
    """Split markdown into titled chunks of at most ``max_chars``.

    Chunks under ``min_chars`` are dropped unless the document produced a
    single chunk, which is kept as-is (short pages still yield one
    "Overview" chunk).
    """
    chunks = [c for s in split_sections(markdown) for c in chunk_section(s, max_chars=max_chars)]
    if len(chunks) <= 1:
        return chunks
    return [c for c in chunks if len(c.body) >= min_chars]


# ── Categorisation ────────────────────────────────────────────
@dataclass(frozen=True)
class CategoryRule:
    """``title`` is matched against the heading, ``text`` against heading + body."""

    category: ChunkCategory
    title: re.Pattern[str] | None = None
    text: re.Pattern[str] | None = None

    def matches(self, title: str, text: str) -> bool:
        if self.title is not None and self.title.search(title):
            return True
        return self.text is not None and bool(self.text.search(text))


def _rx(pattern: str) -> re.Pattern[str]:
    return re.compile(pattern, re.IGNORECASE)


CATEGORY_RULES: tuple[CategoryRule, ...] = (
    CategoryRule(
        "tribunal_process",
        title=_rx(r"\b(aat|tribunal|migration & refugee division|mrd|review)\b"),
        text=_rx(r"\b(aat|tribunal|mrd|review|hearing|lodg(e|e?ment)|sfic|statement of facts)\b"),
    ),
    CategoryRule("deadlines", text=_rx(r"\b(deadline|time limit|28\s*days?|no extensions)\b")),
    CategoryRule(
        "evidence",
        text=_rx(
            r"\b(evidence|bundle|exhibit|financial statements|bas|p&l|payroll|"
            r"org(ani[sz]ational)? chart|anzsco|labour market testing|lmt|position description)\b"
        ),
    ),
    CategoryRule("case_law", text=_rx(r"\b(case|precedent|decision|aata|distinguish|ratio)\b")),
    CategoryRule("legal_arguments", text=_rx(r"\b(submission|legal argument|contentions|sfic|issues)\b")),
    CategoryRule("fees", title=_rx(r"fee"), text=_rx(r"application fee|cost")),
    CategoryRule("processing_times", title=_rx(r"processing time"), text=_rx(r"processing time|how long")),
    CategoryRule("requirements", title=_rx(r"requirement"), text=_rx(r"eligibility|documents required")),
    CategoryRule("application_process", title=_rx(r"application"), text=_rx(r"how to apply|application process")),
)


def categorize(title: str, body: str, *, rules: tuple[CategoryRule, ...] = CATEGORY_RULES) -> ChunkCategory:
    text = f"{title}\n{body}"
    for rule in rules:
        if rule.matches(title, text):
            return rule.category
    return "general"


# ── Field extraction ──────────────────────────────────────────
_FORM = re.compile(r"\b[Ff]orm\s+([A-Z0-9][A-Z0-9-]*)")
_FEE = re.compile(
    r"[$€£]\d+(?:,\d{3})*(?:\.\d{2})?(?:\s*(?:USD|AUD|EUR|GBP|application fee|processing fee|biometric fee))?",
    re.IGNORECASE,
)
_PROCESSING_TIME = re.compile(
    r"(?:processing time|takes?|within)\s+(?:is\s+|of\s+)?(?:approximately\s+)?"
    r"\d+(?:\s*[-–]\s*\d+)?\s*(?:business days?|days?|weeks?|months?)",
    re.IGNORECASE,
)
_WEEKDAY = re.compile(r"\b(monday|tuesday|wednesday|thursday|friday|saturday|sunday|mon|tue|wed|thu|fri|sat|sun)\b", re.IGNORECASE)
_CLOCK = re.compile(r"\b\d{1,2}(?::\d{2})?\s?(?:am|pm|a\.m\.|p\.m\.|hrs|h)(?!\w)|\b\d{1,2}:\d{2}\b", re.IGNORECASE)


def extract_form_numbers(content: str) -> list[str]:
    seen: list[str] = []
    for number in _FORM.findall(content):
        form = f"Form {number}"
        if form not in seen:
            seen.append(form)
    return seen


def extract_fees(content: str, *, limit: int = 5) -> str:
    return ", ".join(m.group(0).strip() for m in list(_FEE.finditer(content))[:limit])


def extract_processing_time(content: str) -> str:
    m = _PROCESSING_TIME.search(content)
    return m.group(0) if m else ""


def extract_office_hours(content: str, *, limit: int = 3) -> str:
    lines = [line.strip() for line in content.splitlines() if line.strip()]
    hits = [line for line in lines if _WEEKDAY.search(line) and _CLOCK.search(line)]
    return " | ".join(hits[:limit])


def official_website(url: str) -> str:
    parsed = urlparse(url)
    if not parsed.scheme or not parsed.netloc:
        return url
    return f"{parsed.scheme}://{parsed.netloc}"


# ── Document → chunks ─────────────────────────────────────────
def build_chunks(
    doc: ExtractedDocument,
    *,
    scenario: ScenarioDefinition | None = None,
    fallback_url: str | None = None,
    id_prefix: str = "chunk",
) -> list[EvidenceChunk]:
    if not doc.markdown:
        return []

    url = doc.url if doc.url and doc.url.startswith("http") else (fallback_url or doc.url)
    doc_title = doc.title or url
    stamp = datetime.now(timezone.utc).isoformat()

    chunks: list[EvidenceChunk] = []
    for index, section in enumerate(chunk_markdown(doc.markdown), start=1):
        if not section.body:
            continue
        title = f"{doc_title} - {section.heading}" if section.heading != DEFAULT_HEADING else doc_title
        chunks.append(
            EvidenceChunk(
                id=f"{id_prefix}-{index}",
                title=title,
                heading=section.heading,
                content=section.body,
                url=url,
                category=categorize(f"{doc_title} {section.heading}", section.body),
                form_numbers=extract_form_numbers(section.body),
                fees=extract_fees(section.body),
                processing_time=extract_processing_time(section.body),
                office_hours=extract_office_hours(section.body),
                official_website=official_website(url),
                scenario_id=scenario.id if scenario else None,
                country_from=scenario.country_from if scenario else None,
                country_to=scenario.country_to if scenario else None,
                visa_type=scenario.visa_type if scenario else None,
                origin="live",
                last_updated=stamp,
            )
        )

    log.debug("Chunked %s → %d chunks", url, len(chunks))
    return chunks

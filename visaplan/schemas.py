from __future__ import annotations

import re
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

ChunkCategory = Literal[
    "tribunal_process",
    "deadlines",
    "evidence",
    "case_law",
    "legal_arguments",
    "fees",
    "processing_times",
    "requirements",
    "application_process",
    "general",
]

_GOV_HINT = re.compile(r"\.gov", re.IGNORECASE)
_EXCERPT_CHARS = 200


# ── Service payloads ──────────────────────────────────────────
class SearchResult(BaseModel):
    title: str = ""
    url: str
    snippet: str | None = None


class ExtractedDocument(BaseModel):
    url: str
    title: str | None = None
    markdown: str | None = None
    html: str | None = None


# ── Evidence ──────────────────────────────────────────────────
class EvidenceSource(BaseModel):
    """Evidence as it is exposed in a finished plan (no full body)."""

    id: str
    title: str
    url: str
    type: Literal["official", "lawyer-verified", "guide"] = "guide"
    category: str | None = None
    excerpt: str | None = None
    fees: str | None = None
    processing_time: str | None = None
    form_numbers: list[str] = Field(default_factory=list)
    official_website: str | None = None
    office_hours: str | None = None
    scenario_id: str | None = None
    country_to: str | None = None


class EvidenceChunk(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    title: str
    heading: str = "Overview"
    content: str
    url: str
    category: ChunkCategory = "general"
    form_numbers: list[str] = Field(default_factory=list)
    fees: str = ""
    processing_time: str = ""
    office_hours: str = ""
    official_website: str | None = None
    scenario_id: str | None = None
    country_from: str | None = None
    country_to: str | None = None
    visa_type: str | None = None
    origin: Literal["curated", "live"] = "live"
    certainty: float | None = None
    last_updated: str | None = None

    @property
    def excerpt(self) -> str:
        if len(self.content) <= _EXCERPT_CHARS:
            return self.content
        return self.content[:_EXCERPT_CHARS] + "..."

    def to_source(self) -> EvidenceSource:
        official = self.origin == "curated" or bool(_GOV_HINT.search(self.url))
        return EvidenceSource(
            id=self.id,
            title=self.title,
            url=self.url,
            type="official" if official else "guide",
            category=self.category,
            excerpt=self.excerpt,
            fees=self.fees or None,
            processing_time=self.processing_time or None,
            form_numbers=list(self.form_numbers),
            official_website=self.official_website,
            office_hours=self.office_hours or None,
            scenario_id=self.scenario_id,
            country_to=self.country_to,
        )


# ── Intake ────────────────────────────────────────────────────
class QuestionOption(BaseModel):
    value: str
    label: str


class IntakeQuestion(BaseModel):
    id: str
    type: Literal["text", "radio", "date", "select"] = "text"
    question: str
    placeholder: str | None = None
    options: list[QuestionOption] | None = None
    helper_text: str | None = None
    required: bool = False


# ── Plan ──────────────────────────────────────────────────────
class Step(BaseModel):
    id: str
    name: str
    status: str = "pending"
    description: str | None = None
    priority: str | None = None
    deadline: str | None = None
    estimated_time: str | None = None
    confidence_score: float | None = None
    instructions: list[str] = Field(default_factory=list)
    document_required: bool | None = None
    required_documents: list[str] = Field(default_factory=list)
    official_website: str | None = None
    form_number: str | None = None
    fee: str | None = None
    processing_time: str | None = None
    office_address: str | None = None
    evidence_ids: list[str] | None = None


class SuccessRate(BaseModel):
    successful: int
    total: int


class Workstream(BaseModel):
    id: str
    title: str
    icon: str = "FileText"
    progress: float = 0
    success_rate: SuccessRate | None = None
    steps: list[Step] = Field(min_length=2, max_length=5)


class KeyMetric(BaseModel):
    label: str
    value: str


class PlanSummary(BaseModel):
    headline: str
    overview: list[str] = Field(min_length=1)
    key_metrics: list[KeyMetric] = Field(default_factory=list)


class ChecklistItem(BaseModel):
    id: str
    label: str
    status: str = "pending"
    notes: str | None = None
    related_step_id: str | None = None
    source_id: str | None = None


class TimelineItem(BaseModel):
    id: str
    title: str
    due_date: str
    description: str | None = None
    source_id: str | None = None


class HumanReview(BaseModel):
    required: bool = False
    message: str = ""
    missing_facts: list[str] = Field(default_factory=list)


class UserContext(BaseModel):
    visa_type: str = ""
    deadline: str = ""
    current_status: str = ""
    location: str = ""
    initial_prompt: str = ""


class PlanDraft(BaseModel):
    """Structured output requested from the generation service."""

    summary: PlanSummary
    workstreams: list[Workstream] = Field(min_length=2, max_length=4)
    checklist: list[ChecklistItem] = Field(default_factory=list)
    timeline: list[TimelineItem] = Field(default_factory=list)
    human_review: HumanReview | None = None


class Plan(BaseModel):
    session_id: str
    user_context: UserContext = Field(default_factory=UserContext)
    summary: PlanSummary
    workstreams: list[Workstream] = Field(default_factory=list)
    checklist: list[ChecklistItem] = Field(default_factory=list)
    timeline: list[TimelineItem] = Field(default_factory=list)
    evidence: list[EvidenceSource] = Field(default_factory=list)
    human_review: HumanReview | None = None

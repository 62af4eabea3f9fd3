"""Static template plans that can seed an intake session."""
from __future__ import annotations

from dataclasses import dataclass

from visaplan.errors import NotFound
from visaplan.schemas import (
    ChecklistItem,
    EvidenceSource,
    Plan,
    PlanSummary,
    Step,
    TimelineItem,
    UserContext,
    Workstream,
)

_USCIS = EvidenceSource(
    id="template-1",
    title="H-1B Specialty Occupations",
    url="https://www.uscis.gov/working-in-the-united-states/h-1b-specialty-occupations",
    type="official",
    category="requirements",
    official_website="https://www.uscis.gov",
)
_DOL = EvidenceSource(
    id="template-2",
    title="Labor Condition Application (LCA) — Form ETA-9035",
    url="https://flag.dol.gov/programs/lca",
    type="official",
    category="application_process",
    form_numbers=["Form ETA-9035"],
    official_website="https://flag.dol.gov",
)

H1B_PLAN = Plan(
    session_id="template-h1b-document-kit",
    user_context=UserContext(
        visa_type="h1b-work",
        current_status="student-visa",
        location="us",
        initial_prompt="I am an F-1 OPT graduate changing to an H-1B. What documents do I need?",
    ),
    summary=PlanSummary(
        headline="H-1B change of status document kit",
        overview=[
            "Your employer registers you in the H-1B lottery, files the LCA and then the I-129 petition.",
            "You supply identity, education and status documents; keep OPT evidence until the petition is approved.",
        ],
    ),
    workstreams=[
        Workstream(
            id="ws-employer",
            title="Employer filings",
            icon="Briefcase",
            steps=[
                Step(id="s-1", name="Confirm lottery registration", evidence_ids=["template-1"]),
                Step(id="s-2", name="Certified LCA (Form ETA-9035)", form_number="Form ETA-9035", evidence_ids=["template-2"]),
                Step(id="s-3", name="Form I-129 petition filing", form_number="Form I-129", evidence_ids=["template-1"]),
            ],
        ),
        Workstream(
            id="ws-documents",
            title="Your documents",
            icon="FileText",
            steps=[
                Step(
                    id="s-4",
                    name="Education evidence",
                    document_required=True,
                    required_documents=["Degree certificate", "Transcripts", "Credential evaluation (foreign degrees)"],
                ),
                Step(
                    id="s-5",
                    name="Status evidence",
                    document_required=True,
                    required_documents=["Passport", "Form I-94", "EAD card", "All Forms I-20"],
                ),
            ],
        ),
    ],
    checklist=[
        ChecklistItem(id="c-1", label="Passport valid for at least 6 months", related_step_id="s-5"),
        ChecklistItem(id="c-2", label="Degree and transcripts scanned", related_step_id="s-4"),
    ],
    timeline=[
        TimelineItem(id="t-1", title="Registration window", due_date="March", source_id="template-1"),
        TimelineItem(id="t-2", title="Earliest petition start date", due_date="October 1", source_id="template-1"),
    ],
    evidence=[_USCIS, _DOL],
)


@dataclass(frozen=True)
class TemplateDefinition:
    id: str
    title: str
    description: str
    icon: str
    suggested_prompt: str
    plan: Plan

    def summary(self) -> dict[str, str]:
        return {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "icon": self.icon,
            "suggested_prompt": self.suggested_prompt,
        }


TEMPLATES: tuple[TemplateDefinition, ...] = (
    TemplateDefinition(
        id="h1b-document-kit",
        title="What documents do I need for my H-1B visa application?",
        description="Step-by-step intake and evidence checklist for cap-subject H-1B filings.",
        icon="Clock",
        suggested_prompt="I am an F-1 OPT graduate changing to an H-1B. What documents do I need?",
        plan=H1B_PLAN,
    ),
)


def list_templates() -> list[dict[str, str]]:
    return [t.summary() for t in TEMPLATES]


def get_template_plan(template_id: str) -> Plan:
    """Deep copy of the template's plan; unknown ids raise ``NotFound``."""
    for t in TEMPLATES:
        if t.id == template_id:
            return t.plan.model_copy(deep=True)
    raise NotFound(f"Unknown template: {template_id!r}")

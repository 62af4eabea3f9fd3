"""Deterministic repair of a synthesized plan.

Steps without evidence get up to three ids picked by keyword → category
hints, empty deadlines get scenario hints, and every reference is resolved
against the evidence list so a finished plan never points at a missing id.
"""
from __future__ import annotations

import logging
import re

from visaplan.scenarios import ScenarioDefinition
from visaplan.schemas import ChecklistItem, ChunkCategory, EvidenceChunk, PlanDraft, TimelineItem, Workstream

log = logging.getLogger("visaplan.enrichment")

MAX_ATTACHED = 3

# Step topic → chunk categories worth attaching. Topics are finer than the
# chunk categories, so a chunk whose title names the topic ranks next.
STEP_CATEGORY_HINTS: tuple[tuple[re.Pattern[str], tuple[ChunkCategory, ...]], ...] = (
    (re.compile(r"embassy|vfs|appointment|visa application", re.I), ("application_process", "requirements")),
    (re.compile(r"anmeldung|registration|resident address", re.I), ("application_process", "deadlines")),
    (re.compile(r"recognition|anerkennung|qualification|nursing", re.I), ("requirements", "evidence")),
    (re.compile(r"health|insurance|krankenkasse|gkv", re.I), ("requirements",)),
)

DEADLINE_HINTS: dict[str, tuple[tuple[re.Pattern[str], str], ...]] = {
    "ph-nurse-berlin-skilled-worker": (
        (re.compile(r"anmeldung|register", re.I), "Within 14 days of moving into your Berlin address (Anmeldung)."),
        (re.compile(r"residence permit|aufenthalt", re.I),
         "Apply at least 8 weeks before your visa expires (LEA appointment lead times vary)."),
        (re.compile(r"embassy|vfs|appointment", re.I),
         "Book as soon as your contract is signed; aim within 3-7 days due to queues."),
    ),
}


def _step_topics(step_name: str) -> list[re.Pattern[str]]:
    return [pattern for pattern, _ in STEP_CATEGORY_HINTS if pattern.search(step_name)]


def category_hints(step_name: str) -> list[str]:
    wanted: list[str] = []
    for pattern, categories in STEP_CATEGORY_HINTS:
        if pattern.search(step_name):
            wanted.extend(c for c in categories if c not in wanted)
    return wanted


def deadline_hint(step_name: str, scenario_id: str | None) -> str | None:
    for pattern, text in DEADLINE_HINTS.get(scenario_id or "", ()):
        if pattern.search(step_name):
            return text
    return None


def _pool(evidence: list[EvidenceChunk], scenario: ScenarioDefinition | None) -> list[EvidenceChunk]:
    if scenario is None:
        return list(evidence)
    destination = scenario.country_to.lower()
    return [
        ev for ev in evidence
        if ev.scenario_id == scenario.id or (ev.country_to or "").lower() == destination
    ]


def pick_evidence(
    step_name: str, evidence: list[EvidenceChunk], scenario: ScenarioDefinition | None, *, limit: int = MAX_ATTACHED
) -> list[str]:
    name = step_name.lower()
    wanted = category_hints(step_name)
    topics = _step_topics(step_name)
    # sorted() is stable: ties keep evidence order.
    ranked = sorted(
        _pool(evidence, scenario),
        key=lambda ev: (
            ev.category not in wanted,
            not any(t.search(ev.title) for t in topics),
            name not in ev.title.lower(),
        ),
    )
    return [ev.id for ev in ranked[:limit]]


def enrich_workstreams(
    workstreams: list[Workstream], evidence: list[EvidenceChunk], scenario: ScenarioDefinition | None
) -> list[Workstream]:
    known = {ev.id for ev in evidence}
    scenario_id = scenario.id if scenario else None
    attached = dropped = 0
    out: list[Workstream] = []

    for ws in workstreams:
        steps = []
        for step in ws.steps:
            updates: dict = {}
            resolved: list[str] = []
            for ev_id in step.evidence_ids or []:
                if ev_id not in known:
                    dropped += 1
                elif ev_id not in resolved:
                    resolved.append(ev_id)
            if not resolved:
                resolved = pick_evidence(step.name, evidence, scenario)
                attached += bool(resolved)
            updates["evidence_ids"] = resolved

            if not (step.deadline or "").strip():
                hint = deadline_hint(step.name, scenario_id)
                if hint:
                    updates["deadline"] = hint
            steps.append(step.model_copy(update=updates))
        out.append(ws.model_copy(update={"steps": steps}))

    log.info("Enriched plan — evidence attached to %d steps, %d dangling ids dropped", attached, dropped)
    return out


def resolve_source_refs(items: list[ChecklistItem] | list[TimelineItem], evidence: list[EvidenceChunk]) -> list:
    known = {ev.id for ev in evidence}
    return [
        item if item.source_id is None or item.source_id in known else item.model_copy(update={"source_id": None})
        for item in items
    ]


def enrich_plan(draft: PlanDraft, evidence: list[EvidenceChunk], scenario: ScenarioDefinition | None) -> PlanDraft:
    return draft.model_copy(
        update={
            "workstreams": enrich_workstreams(draft.workstreams, evidence, scenario),
            "checklist": resolve_source_refs(draft.checklist, evidence),
            "timeline": resolve_source_refs(draft.timeline, evidence),
        }
    )

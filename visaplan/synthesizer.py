"""Schema-constrained plan synthesis.

Builds the instruction set (base rules + scenario context + the scenario's
directive list), sends fact pack and evidence to the generation service and
validates the structured result against ``PlanDraft``. Content correctness is
the generator's job; this layer only enforces structure and never retries.
"""
from __future__ import annotations

import logging
from typing import Any, Mapping

from pydantic import ValidationError

from visaplan.errors import InvalidResponse
from visaplan.llm import LLMConfig, call_llm_json
from visaplan.prompts import BASE_PLAN_INSTRUCTIONS, SCENARIO_CONTEXT_TEMPLATE, SCENARIO_DIRECTIVES
from visaplan.scenarios import ScenarioDefinition
from visaplan.schemas import EvidenceChunk, PlanDraft
from visaplan.sessions import IntakeSession

log = logging.getLogger("visaplan.synthesizer")

PLAN_SCHEMA_NAME = "agent_plan"


def _evidence_payload(chunk: EvidenceChunk) -> dict[str, Any]:
    return {
        "id": chunk.id,
        "title": chunk.title,
        "url": chunk.url,
        "category": chunk.category,
        "excerpt": chunk.excerpt,
        "content": chunk.content,
        "fees": chunk.fees or None,
        "processing_time": chunk.processing_time or None,
        "form_numbers": chunk.form_numbers,
        "office_hours": chunk.office_hours or None,
    }


class PlanSynthesizer:
    def __init__(self, llm: LLMConfig, *, directives: Mapping[str, tuple[str, ...]] = SCENARIO_DIRECTIVES):
        self.llm = llm
        self.directives = directives
        self.schema = PlanDraft.model_json_schema()

    def instructions(self, scenario: ScenarioDefinition | None) -> str:
        parts = [BASE_PLAN_INSTRUCTIONS.strip()]
        if scenario:
            focus = f"- Focus areas: {'; '.join(scenario.intake_focus)}\n" if scenario.intake_focus else ""
            parts.append(SCENARIO_CONTEXT_TEMPLATE.format(label=scenario.label, summary=scenario.summary, focus=focus))
            extra = self.directives.get(scenario.id)
            if extra:
                parts.append("\n".join(extra))
        return "\n\n".join(parts)

    def payload(
        self, session: IntakeSession, evidence: list[EvidenceChunk], scenario: ScenarioDefinition | None
    ) -> dict[str, Any]:
        return {
            "session_id": session.id,
            "fact_pack": {"prompt": session.prompt, "answers": dict(session.answers)},
            "evidence": [_evidence_payload(c) for c in evidence],
            "scenario": (
                {"id": scenario.id, "label": scenario.label, "summary": scenario.summary, "focus": list(scenario.intake_focus)}
                if scenario
                else None
            ),
        }

    async def synthesize(
        self, session: IntakeSession, evidence: list[EvidenceChunk], scenario: ScenarioDefinition | None
    ) -> PlanDraft:
        raw = await call_llm_json(
            prompt=self.instructions(scenario),
            payload=self.payload(session, evidence, scenario),
            cfg=self.llm,
            schema=self.schema,
            schema_name=PLAN_SCHEMA_NAME,
        )
        if raw.get("_stub"):
            raise InvalidResponse("Stub provider cannot synthesize a plan")

        raw.pop("_usage", None)
        try:
            draft = PlanDraft.model_validate(raw)
        except ValidationError as exc:
            log.error("Plan output failed schema validation: %s", exc.errors()[:5])
            raise InvalidResponse(f"Plan output does not match schema: {exc.error_count()} errors") from exc

        log.info(
            "Synthesized plan — %d workstreams, %d steps",
            len(draft.workstreams), sum(len(w.steps) for w in draft.workstreams),
        )
        return draft

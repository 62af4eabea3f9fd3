"""Intake orchestrator: session start, evidence → synthesis → enrichment, fallback.

Production features:
- Validation before any network activity
- Template sessions short-circuit the pipeline
- Idempotent re-submission of identical answers
- Per-stage timing and structured logging
- Conservative fallback plan instead of raw exceptions
"""
from __future__ import annotations

import logging
import time
from typing import Mapping

import httpx

from visaplan.config import Settings
from visaplan.enrichment import enrich_plan
from visaplan.errors import PlannerError, ValidationFailure
from visaplan.evidence import EvidenceAssembler
from visaplan.llm import LLMConfig
from visaplan.questions import generate_intake_questions
from visaplan.scenarios import detect_scenario, find_scenario
from visaplan.schemas import HumanReview, Plan, PlanSummary, UserContext
from visaplan.sessions import InMemorySessionStore, IntakeSession, SessionStatus, SessionStore, init_session
from visaplan.synthesizer import PlanSynthesizer
from visaplan.templates import get_template_plan
from visaplan.vector_store import InMemoryRetriever, VectorRetriever, WeaviateRetriever
from visaplan.web_ingest import SearchGateway, SourceFetcher

log = logging.getLogger("visaplan.orchestrator")

FALLBACK_HEADLINE = "Manual review required"
FALLBACK_OVERVIEW = (
    "We could not automatically locate authoritative sources for this scenario. "
    "Please verify details with a human expert before proceeding."
)
FALLBACK_REVIEW_MESSAGE = (
    "Automatic retrieval failed. Please collect relevant government links manually and re-run the intake."
)

# Answer keys that map onto the plan's user context.
_CONTEXT_KEYS = {
    "visaType": "visa_type",
    "deadline": "deadline",
    "currentStatus": "current_status",
    "location": "location",
}


def user_context(prompt: str, answers: Mapping[str, str]) -> UserContext:
    fields = {attr: answers.get(key) or "" for key, attr in _CONTEXT_KEYS.items()}
    return UserContext(initial_prompt=answers.get("initialPrompt") or prompt, **fields)


def _clean_answers(answers: Mapping[str, object] | None) -> dict[str, str]:
    return {str(k): str(v).strip() for k, v in (answers or {}).items() if v is not None}


def _ms(t0: float) -> int:
    return round((time.perf_counter() - t0) * 1000)


class Orchestrator:
    def __init__(
        self,
        *,
        store: SessionStore,
        assembler: EvidenceAssembler,
        synthesizer: PlanSynthesizer,
        settings: Settings | None = None,
        llm: LLMConfig | None = None,
    ):
        self.store = store
        self.assembler = assembler
        self.synthesizer = synthesizer
        self.settings = settings or Settings()
        self.llm = llm

    @classmethod
    def from_settings(
        cls,
        settings: Settings | None = None,
        *,
        store: SessionStore | None = None,
        retriever: VectorRetriever | None = None,
    ) -> "Orchestrator":
        """Wire every collaborator from environment-derived settings."""
        settings = settings or Settings.from_env()
        llm = LLMConfig(
            provider=settings.llm_provider,
            base_url=settings.llm_base_url,
            api_key=settings.llm_api_key,
            model=settings.llm_model,
        )
        if retriever is None and settings.weaviate_url:
            retriever = WeaviateRetriever(
                settings.weaviate_url, settings.weaviate_api_key, vectorizer_key=settings.llm_api_key
            )
        elif retriever is None and settings.curated_snapshot:
            retriever = InMemoryRetriever.load(settings.curated_snapshot)
        assembler = EvidenceAssembler(
            retriever=retriever,
            search=SearchGateway(settings.google_search_api_key, settings.google_search_engine_id),
            fetcher=SourceFetcher(settings.firecrawl_api_key, settings.firecrawl_base_url),
            llm=llm,
            max_sources=settings.max_live_sources,
            max_evidence=settings.max_evidence,
        )
        return cls(
            store=store or InMemorySessionStore(),
            assembler=assembler,
            synthesizer=PlanSynthesizer(llm),
            settings=settings,
            llm=llm,
        )

    # ── Start ─────────────────────────────────────────────────
    async def start_session(self, prompt: str | None, template_id: str | None = None) -> IntakeSession:
        prompt = (prompt or "").strip()
        if not prompt and not template_id:
            raise ValidationFailure("Prompt is required")

        template_plan = get_template_plan(template_id) if template_id else None
        defaults = template_plan.user_context if template_plan else None
        if not prompt and template_plan:
            prompt = template_plan.user_context.initial_prompt or template_plan.summary.headline

        t0 = time.perf_counter()
        scenario = detect_scenario(prompt)
        questions = await generate_intake_questions(prompt, scenario, defaults, self.llm)

        prefilled: dict[str, str] = {}
        if defaults:
            for key, attr in _CONTEXT_KEYS.items():
                value = getattr(defaults, attr)
                if value:
                    prefilled[key] = value

        session = self.store.create(
            init_session(
                prompt,
                questions,
                scenario_id=scenario.id if scenario else None,
                template_id=template_id,
                template_plan=template_plan,
                answers=prefilled,
            )
        )
        log.info(
            "Started session %s — scenario=%s template=%s questions=%d (%dms)",
            session.id, session.scenario_id, template_id, len(questions), _ms(t0),
        )
        return session

    # ── Complete ──────────────────────────────────────────────
    async def complete_session(
        self, session_id: str | None, answers: Mapping[str, object] | None
    ) -> tuple[SessionStatus, Plan]:
        if not session_id:
            raise ValidationFailure("Session id is required")

        session = self.store.get(session_id)
        merged = {**session.answers, **_clean_answers(answers)}

        if session.status.terminal and session.plan is not None and merged == session.answers:
            log.info("Session %s already %s — returning stored plan", session_id, session.status.value)
            return session.status, session.plan

        if session.template_plan is not None:
            return self._complete_from_template(session, merged)

        # Answers can sharpen detection; a miss keeps the scenario found at start.
        scenario = detect_scenario(session.prompt, merged) or find_scenario(session.scenario_id)
        if scenario:
            merged["scenarioId"] = scenario.id
        status = session.status if session.status.terminal else SessionStatus.PROCESSING
        session = self.store.update(
            session_id, answers=merged, scenario_id=scenario.id if scenario else None, status=status
        )

        try:
            plan = await self.build_plan(session)
        except (PlannerError, httpx.HTTPError) as exc:
            log.error("Plan build failed for %s: %s", session_id, exc)
            status, plan = SessionStatus.NEEDS_HUMAN, self.fallback_plan(session, merged)
        except Exception as exc:
            log.exception("Unexpected failure building plan for %s: %s", session_id, exc)
            status, plan = SessionStatus.ERROR, self.fallback_plan(session, merged)
        else:
            review = plan.human_review
            wants_review = bool(review and review.required)
            if wants_review and not self.settings.honor_human_review:
                log.info("Generator requested human review for %s — suppressed by configuration", session_id)
            status = (
                SessionStatus.NEEDS_HUMAN
                if wants_review and self.settings.honor_human_review
                else SessionStatus.READY
            )

        self.store.update(session_id, status=status, plan=plan)
        return status, plan

    def _complete_from_template(self, session: IntakeSession, merged: dict[str, str]) -> tuple[SessionStatus, Plan]:
        plan = session.template_plan.model_copy(
            update={"session_id": session.id, "user_context": user_context(session.prompt, merged)},
            deep=True,
        )
        review = plan.human_review
        status = SessionStatus.NEEDS_HUMAN if review and review.required else SessionStatus.READY
        self.store.update(session.id, answers=merged, status=status, plan=plan)
        log.info("Session %s completed from template %s → %s", session.id, session.template_id, status.value)
        return status, plan

    # ── Pipeline ──────────────────────────────────────────────
    async def build_plan(self, session: IntakeSession) -> Plan:
        scenario = find_scenario(session.scenario_id)
        timings: dict[str, int] = {}
        t_start = time.perf_counter()

        t0 = time.perf_counter()
        evidence = await self.assembler.assemble(session.prompt, session.answers, scenario)
        timings["evidence_ms"] = _ms(t0)

        t0 = time.perf_counter()
        draft = await self.synthesizer.synthesize(session, evidence, scenario)
        timings["synthesis_ms"] = _ms(t0)

        t0 = time.perf_counter()
        draft = enrich_plan(draft, evidence, scenario)
        timings["enrichment_ms"] = _ms(t0)

        timings["total_ms"] = _ms(t_start)
        log.info("Plan built for %s — %s", session.id, timings)

        return Plan(
            session_id=session.id,
            user_context=user_context(session.prompt, session.answers),
            summary=draft.summary,
            workstreams=draft.workstreams,
            checklist=draft.checklist,
            timeline=draft.timeline,
            evidence=[chunk.to_source() for chunk in evidence],
            human_review=draft.human_review,
        )

    def fallback_plan(self, session: IntakeSession, answers: Mapping[str, str]) -> Plan:
        return Plan(
            session_id=session.id,
            user_context=user_context(session.prompt, answers),
            summary=PlanSummary(headline=FALLBACK_HEADLINE, overview=[FALLBACK_OVERVIEW]),
            human_review=HumanReview(required=True, message=FALLBACK_REVIEW_MESSAGE),
        )

import pytest

from visaplan.errors import NotFound, TransientUpstream
from visaplan.llm import LLMConfig
from visaplan.questions import MAX_FOLLOWUPS, base_questions, generate_intake_questions
from visaplan.scenarios import get_scenario
from visaplan.schemas import UserContext
from visaplan.templates import TEMPLATES, get_template_plan, list_templates


# ════════════════════════════════════════════════════════════════
# Intake questions
# ════════════════════════════════════════════════════════════════
class TestBaseQuestions:
    def test_open_prompt_gets_all_four(self):
        ids = [q.id for q in base_questions("I want to move abroad")]
        assert ids == ["visaType", "deadline", "currentStatus", "location"]

    def test_visa_named_in_prompt_skips_visa_type(self):
        ids = [q.id for q in base_questions("What documents do I need for my H-1B?")]
        assert "visaType" not in ids

    def test_scenario_skips_visa_type(self):
        ids = [q.id for q in base_questions("anything", get_scenario("us-graduate-visa-uk"))]
        assert "visaType" not in ids

    def test_copies_are_independent(self):
        first = base_questions("I want to move abroad")
        first[0].question = "changed"
        assert base_questions("I want to move abroad")[0].question != "changed"


class TestGenerateQuestions:
    @pytest.mark.asyncio
    async def test_scenario_questions_come_first(self):
        questions = await generate_intake_questions("x", get_scenario("brazil-to-berlin-residence"))
        ids = [q.id for q in questions]
        assert ids[:3] == ["berlinEmploymentContract", "grossSalaryEur", "degreeRecognitionStatus"]
        assert "deadline" in ids

    @pytest.mark.asyncio
    async def test_template_visa_type_added_as_option(self):
        questions = await generate_intake_questions("I want to move", None, UserContext(visa_type="o1-talent"))
        visa = next(q for q in questions if q.id == "visaType")
        assert visa.options[0].value == "o1-talent"

    @pytest.mark.asyncio
    async def test_followups_capped_and_deduplicated(self, monkeypatch):
        async def fake_llm(**kwargs):
            return {
                "questions": [
                    {"id": "deadline", "question": "When exactly?"},
                    {"id": "family", "question": "Are you bringing family?", "required": True},
                    {"question": "Budget?"},
                    {"id": "extra", "question": "One too many"},
                    {"id": "blank"},
                ]
            }

        monkeypatch.setattr("visaplan.questions.call_llm_json", fake_llm)
        questions = await generate_intake_questions("I want to move", llm=LLMConfig(provider="stub"))
        extra = questions[4:]
        assert len(extra) == MAX_FOLLOWUPS
        assert [q.id for q in extra] == ["followup-1", "family", "followup-3"]
        assert extra[1].required is True
        assert len({q.id for q in questions}) == len(questions)

    @pytest.mark.asyncio
    async def test_generation_failure_returns_base_set(self, monkeypatch):
        async def failing(**kwargs):
            raise TransientUpstream("503")

        monkeypatch.setattr("visaplan.questions.call_llm_json", failing)
        questions = await generate_intake_questions("I want to move", llm=LLMConfig(provider="openai_compatible"))
        assert [q.id for q in questions] == ["visaType", "deadline", "currentStatus", "location"]


# ════════════════════════════════════════════════════════════════
# Templates
# ════════════════════════════════════════════════════════════════
class TestTemplates:
    def test_list(self):
        listed = list_templates()
        assert [t["id"] for t in listed] == ["h1b-document-kit"]
        assert set(listed[0]) == {"id", "title", "description", "icon", "suggested_prompt"}

    def test_plan_is_deep_copy(self):
        plan = get_template_plan("h1b-document-kit")
        plan.workstreams[0].steps[0].name = "mutated"
        assert get_template_plan("h1b-document-kit").workstreams[0].steps[0].name != "mutated"

    def test_unknown_template(self):
        with pytest.raises(NotFound):
            get_template_plan("missing")

    def test_template_references_resolve(self):
        for template in TEMPLATES:
            known = {e.id for e in template.plan.evidence}
            for ws in template.plan.workstreams:
                assert 2 <= len(ws.steps) <= 5
                for step in ws.steps:
                    assert set(step.evidence_ids or []) <= known

"""Intake question generation: base set, scenario set, generated follow-ups."""
from __future__ import annotations

import logging

from visaplan.errors import PlannerError
from visaplan.llm import LLMConfig, call_llm_json
from visaplan.prompts import QUESTIONS_PROMPT, SCENARIO_QUESTIONS_PROMPT
from visaplan.scenarios import ScenarioDefinition, contains_token, normalize_text
from visaplan.schemas import IntakeQuestion, QuestionOption, UserContext

log = logging.getLogger("visaplan.questions")

MAX_FOLLOWUPS = 3


def _options(*pairs: tuple[str, str]) -> list[QuestionOption]:
    return [QuestionOption(value=v, label=label) for v, label in pairs]


STATUS_OPTIONS = _options(
    ("citizen-abroad", "Living in my home country"),
    ("student-visa", "On a student visa"),
    ("work-visa", "On a work visa"),
    ("visitor", "Visitor / tourist"),
    ("permanent-resident", "Permanent resident"),
    ("other", "Other"),
)

COUNTRY_OPTIONS = _options(
    ("us", "United States"),
    ("uk", "United Kingdom"),
    ("de", "Germany"),
    ("au", "Australia"),
    ("ca", "Canada"),
    ("ph", "Philippines"),
    ("br", "Brazil"),
    ("in", "India"),
    ("other", "Other"),
)

BASE_QUESTIONS: tuple[IntakeQuestion, ...] = (
    IntakeQuestion(
        id="visaType",
        type="radio",
        question="What type of visa are you applying for?",
        options=_options(
            ("h1b-work", "H-1B Work Visa"),
            ("f1-student", "F-1 Student Visa"),
            ("green-card", "Green Card"),
            ("b2-tourist", "B-2 Tourist Visa"),
            ("other", "Other"),
        ),
        required=True,
    ),
    IntakeQuestion(
        id="deadline", type="date", question="When do you need to complete your application?",
        placeholder="Select date", required=True,
    ),
    IntakeQuestion(
        id="currentStatus", type="select", question="What is your current immigration status?",
        placeholder="Select your immigration status", options=STATUS_OPTIONS, required=True,
    ),
    IntakeQuestion(
        id="location", type="select", question="Where are you currently located?",
        placeholder="Select your country", options=COUNTRY_OPTIONS, required=True,
    ),
)

SCENARIO_QUESTIONS: dict[str, tuple[IntakeQuestion, ...]] = {
    "usa-to-australia-skilled-worker": (
        IntakeQuestion(
            id="australiaSponsorStatus", type="radio",
            question="Do you already have an Australian employer willing to sponsor your visa?",
            options=_options(
                ("confirmed-sponsor", "Yes, sponsorship nomination is in progress or approved"),
                ("in-discussions", "I am interviewing / negotiating with employers"),
                ("no-sponsor", "No, I still need to secure a sponsor"),
            ),
            required=True,
        ),
        IntakeQuestion(
            id="anzscoOccupation", type="text",
            question="What occupation will you work in? Include your ANZSCO code if you know it.",
            required=True,
        ),
        IntakeQuestion(
            id="skillsAssessmentStatus", type="radio",
            question="Have you completed the required skills assessment or Australian licensing for that occupation?",
            options=_options(
                ("assessment-complete", "Yes, assessment/licensing is complete"),
                ("assessment-in-progress", "Assessment is scheduled or in progress"),
                ("assessment-not-started", "Not started yet"),
                ("assessment-not-required", "Not required for my occupation"),
            ),
        ),
    ),
    "brazil-to-berlin-residence": (
        IntakeQuestion(
            id="berlinEmploymentContract", type="radio",
            question="Do you already have a signed employment contract with a German employer?",
            options=_options(
                ("contract-signed", "Yes, contract is signed"),
                ("offer-letter", "I have an offer letter but contract not signed"),
                ("no-offer", "No, I am still searching"),
            ),
            required=True,
        ),
        IntakeQuestion(
            id="grossSalaryEur", type="text",
            question="What is your gross annual salary offer in euros (before taxes)?",
            placeholder="e.g. 58,000", required=True,
        ),
        IntakeQuestion(
            id="degreeRecognitionStatus", type="radio",
            question="Has your university degree been recognised by German authorities (Anabin or ZAB)?",
            options=_options(
                ("recognised", "Yes, fully recognised"),
                ("in-progress", "Recognition is in progress"),
                ("not-recognised", "Not yet recognised"),
                ("not-applicable", "My role does not require recognition"),
            ),
        ),
    ),
    "us-graduate-visa-uk": (
        IntakeQuestion(
            id="courseCompletionNotified", type="radio",
            question="Has your university reported to UKVI that you successfully completed your course?",
            options=_options(("reported", "Yes"), ("pending", "Not yet, but will be soon"), ("unsure", "Unsure")),
            required=True,
        ),
        IntakeQuestion(
            id="brpExpiryDate", type="date", question="When does your current Student visa or BRP expire?",
            required=True,
        ),
        IntakeQuestion(
            id="graduateDependants", type="radio",
            question="Are you planning to include dependants in your Graduate visa application?",
            options=_options(
                ("no-dependants", "No"),
                ("partner", "Yes, my partner"),
                ("partner-and-children", "Yes, partner and/or children"),
            ),
        ),
    ),
}

# Prompts that already name a visa or destination skip the visa-type question.
_VISA_MENTIONS = ("h1b", "h 1b", "f1", "f 1", "green card", "tourist visa", "germany", "uk", "canada")


def base_questions(prompt: str, scenario: ScenarioDefinition | None = None) -> list[IntakeQuestion]:
    questions = [q.model_copy(deep=True) for q in BASE_QUESTIONS]
    if scenario:
        return [q for q in questions if q.id != "visaType"]
    text = normalize_text(prompt)
    if any(contains_token(text, m) for m in _VISA_MENTIONS):
        return [q for q in questions if q.id != "visaType"]
    return questions


async def generate_intake_questions(
    prompt: str,
    scenario: ScenarioDefinition | None = None,
    defaults: UserContext | None = None,
    llm: LLMConfig | None = None,
) -> list[IntakeQuestion]:
    questions = [q.model_copy(deep=True) for q in SCENARIO_QUESTIONS.get(scenario.id, ())] if scenario else []
    questions += base_questions(prompt, scenario)

    if defaults and defaults.visa_type:
        for q in questions:
            if q.id == "visaType" and not any(o.value == defaults.visa_type for o in q.options or []):
                q.options = [QuestionOption(value=defaults.visa_type, label=defaults.visa_type), *(q.options or [])]

    if llm is None:
        return questions

    if scenario:
        focus = "; ".join(scenario.intake_focus) or "key eligibility, timing, and document requirements"
        instruction = SCENARIO_QUESTIONS_PROMPT.format(label=scenario.label, focus=focus)
    else:
        instruction = QUESTIONS_PROMPT

    try:
        out = await call_llm_json(
            prompt=instruction,
            payload={
                "prompt": prompt,
                "defaults": defaults.model_dump() if defaults else None,
                "scenario": (
                    {"id": scenario.id, "summary": scenario.summary, "focus": list(scenario.intake_focus)}
                    if scenario else None
                ),
            },
            cfg=llm,
            schema_name="dynamic_questions",
        )
    except PlannerError as exc:
        log.warning("Dynamic question generation failed: %s", exc)
        return questions

    existing = {q.id for q in questions}
    for index, item in enumerate((out.get("questions") or [])[:MAX_FOLLOWUPS], start=1):
        if not isinstance(item, dict) or not item.get("question"):
            continue
        qid = str(item.get("id") or f"followup-{index}")
        if qid in existing:
            qid = f"followup-{index}"
        existing.add(qid)
        questions.append(
            IntakeQuestion(id=qid, type="text", question=str(item["question"]), required=bool(item.get("required", False)))
        )
    return questions

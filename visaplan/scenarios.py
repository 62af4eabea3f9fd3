"""Scenario catalog and matcher.

A scenario is a curated origin → destination pathway. ``detect_scenario``
scores a prompt (plus intake answers) against every entry and returns the
best one, or ``None`` when nothing clears the threshold.
"""
from __future__ import annotations

import logging
import re
import unicodedata
from dataclasses import dataclass
from typing import Mapping

from visaplan.errors import NotFound

log = logging.getLogger("visaplan.scenarios")

MATCH_THRESHOLD = 4
_SIGNAL_WEIGHT = 2


@dataclass(frozen=True)
class ScenarioDefinition:
    id: str
    label: str
    country_from: str
    country_to: str
    visa_type: str
    keywords: tuple[str, ...]
    summary: str
    search_queries: tuple[str, ...] = ()
    official_sites: tuple[str, ...] = ()
    from_aliases: tuple[str, ...] = ()
    to_aliases: tuple[str, ...] = ()
    intake_focus: tuple[str, ...] = ()


# ── Catalog ───────────────────────────────────────────────────
SCENARIOS: tuple[ScenarioDefinition, ...] = (
    ScenarioDefinition(
        id="ph-nurse-berlin-skilled-worker",
        label="Philippines nurse relocating to Berlin (Skilled Worker)",
        country_from="Philippines",
        country_to="Germany",
        from_aliases=("philippines", "filipino", "ph"),
        to_aliases=("germany", "deutschland", "berlin"),
        visa_type="germany_skilled_worker_nursing",
        keywords=(
            "nurse", "skilled worker", "healthcare professional", "berlin",
            "recognition", "anerkennung", "residence permit", "appointment",
            "embassy manila", "blocked account", "sperrkonto",
        ),
        summary=(
            "End-to-end, deadline-first pathway for a Filipino nurse moving to Berlin for employment: "
            "embassy application, recognition (Anerkennung), work visa/residence permit, "
            "registration (Anmeldung), health insurance."
        ),
        search_queries=(
            "site:manila.diplo.de national visa work skilled worker nursing",
            "site:vfsglobal.com Germany visa Philippines work",
            "site:berlin.de/einwanderung skilled worker residence permit Berlin",
            "site:make-it-in-germany.com nursing recognition Germany",
            "site:anerkennung-in-deutschland.de nurse recognition",
            "site:berlin.de anmeldung residence registration Berlin",
            "site:gov.de health insurance mandatory Germany employment",
        ),
        official_sites=(
            "https://manila.diplo.de/ph-en/service/05-VisaEinreise/-/2316388",
            "https://visa.vfsglobal.com/phl/en/deu",
            "https://www.berlin.de/einwanderung/en/residence/working/skilled-workers/",
            "https://www.make-it-in-germany.com/en/visa-residence/qualifications/recognition",
            "https://www.anerkennung-in-deutschland.de/en/profession/finder/profession/3112",
            "https://service.berlin.de/dienstleistung/120686/",
            "https://www.krankenkassen.de/gesetzliche-krankenkassen/",
        ),
        intake_focus=(
            "Employment contract details and start date",
            "Recognition status (Anerkennung) and German level",
            "Accommodation for Anmeldung",
            "Health insurance arrangements",
        ),
    ),
    ScenarioDefinition(
        id="au-482-nomination-refusal-aat-appeal",
        label="Employer Nomination Refusal (482) + AAT Appeal",
        country_from="Any",
        country_to="Australia",
        from_aliases=("any",),
        to_aliases=("australia", "aat", "tribunal", "mrd"),
        visa_type="temporary_skill_shortage_482",
        keywords=(
            "482", "subclass 482", "temporary skill shortage", "nomination refusal",
            "genuine position", "aat", "tribunal", "mrd", "appeal", "review",
            "anzsco", "labour market testing", "sfic",
        ),
        summary=(
            "Appeal a 482 nomination refusal on 'genuine position' grounds at the AAT MRD with dual "
            "lodgement, strict deadlines, evidence bundle and legal submissions distinguished from precedent."
        ),
        search_queries=(
            'site:aat.gov.au "Migration & Refugee Division" nomination refusal genuine position',
            "site:aat.gov.au migration time limits 28 days",
            "site:immi.homeaffairs.gov.au nominating a position genuine position 482",
            "site:legislation.gov.au Migration Regulations 1994 subclass 482 nomination",
            "site:austlii.edu.au AAT genuine position 482",
            "site:aat.gov.au Statement of Facts Issues and Contentions",
        ),
        official_sites=(
            "https://www.aat.gov.au/review-tribunals/migration-and-refugee-division",
            "https://www.aat.gov.au/apply-for-a-review/time-limits/migration",
            "https://immi.homeaffairs.gov.au/visas/employing-and-sponsoring-someone/sponsor/nominating-a-position",
            "https://www.legislation.gov.au/Series/F1994B00103",
        ),
        intake_focus=(
            "Refusal date for time limit",
            "Business size, turnover, staff count",
            "ANZSCO code and duties mapping",
            "Evidence available (BAS, payroll, org chart, LMT)",
        ),
    ),
    ScenarioDefinition(
        id="usa-to-australia-skilled-worker",
        label="U.S. Citizen moving to Australia for skilled work",
        country_from="USA",
        country_to="Australia",
        from_aliases=("usa", "us", "united states", "american"),
        to_aliases=("australia", "aus", "australian"),
        visa_type="temporary_skill_shortage_482",
        keywords=(
            "temporary skill shortage", "tss 482", "subclass 482", "skilled independent 189",
            "skillselect", "immi home affairs", "employer sponsored visa", "move from us to australia",
        ),
        summary="Employer-sponsored and independent skilled migration pathways for U.S. nationals relocating to Australia.",
        search_queries=(
            'site:immi.homeaffairs.gov.au "Temporary Skill Shortage" 482 requirements',
            "site:immi.homeaffairs.gov.au employer sponsored visa checklist",
            "site:immi.homeaffairs.gov.au skilled independent visa applicant USA",
            "site:immi.homeaffairs.gov.au TSS visa fees and processing time",
        ),
        official_sites=(
            "https://immi.homeaffairs.gov.au/visas/getting-a-visa/visa-listing/temporary-skill-shortage-482",
            "https://immi.homeaffairs.gov.au/visas/getting-a-visa/visa-listing/skilled-independent-189",
            "https://immi.homeaffairs.gov.au/visas/working-in-australia/skillselect",
            "https://immi.homeaffairs.gov.au/visas/working-in-australia/employer-sponsored-visas",
        ),
        intake_focus=(
            "Sponsoring employer and nominated occupation",
            "Skills assessment or licensing requirements",
            "Private health insurance planning",
            "Timeline for relocation and job start",
        ),
    ),
    ScenarioDefinition(
        id="brazil-to-berlin-residence",
        label="Brazilian professional relocating to Berlin",
        country_from="Brazil",
        country_to="Germany",
        from_aliases=("brazil", "brasil", "brazilian"),
        to_aliases=("germany", "deutschland", "berlin"),
        visa_type="germany_eu_blue_card",
        keywords=(
            "eu blue card", "berlin auslanderbehorde", "berlin immigration office",
            "skilled worker visa", "make it in germany", "recognition of qualifications",
            "berlin residence permit",
        ),
        summary="EU Blue Card and Berlin Auslanderbehorde residence permit process for Brazilian professionals.",
        search_queries=(
            "site:make-it-in-germany.com EU Blue Card salary requirements",
            "site:auswaertiges-amt.de skilled worker visa brazil",
            "site:berlin.de/dienstleistung/ Berlin residence permit EU Blue Card",
            "site:bundesagentur.de recognition foreign qualifications germany",
        ),
        official_sites=(
            "https://www.make-it-in-germany.com/en/visa-residence/types/blue-card",
            "https://www.auswaertiges-amt.de/en/visa-service/visabestimmungen-node",
            "https://service.berlin.de/dienstleistung/324659/en/",
            "https://www.berlin.de/einwanderung/en/service/dienstleistungen/service.871433.php/dienstleistung/329437/en/",
        ),
        intake_focus=(
            "German job offer details and gross salary",
            "University degree recognition status",
            "Address registration plans in Berlin",
            "German health insurance arrangements",
        ),
    ),
    ScenarioDefinition(
        id="us-graduate-visa-uk",
        label="U.S. student applying for UK Graduate visa",
        country_from="USA",
        country_to="United Kingdom",
        from_aliases=("usa", "us", "united states", "american"),
        to_aliases=("united kingdom", "uk", "british", "england"),
        visa_type="uk_graduate_route",
        keywords=(
            "graduate visa", "graduate route", "post study work", "ukvi graduate visa",
            "brp expiration", "switch from student visa", "international student graduate visa",
        ),
        summary="UK Graduate visa (post-study work) process for recent graduates educated in the United Kingdom.",
        search_queries=(
            "site:gov.uk graduate visa apply",
            "site:gov.uk graduate visa eligibility requirements",
            "site:gov.uk graduate visa fees biometrics",
            "site:gov.uk graduate visa supporting documents",
        ),
        official_sites=(
            "https://www.gov.uk/graduate-visa",
            "https://www.gov.uk/graduate-visa/eligibility",
            "https://www.gov.uk/graduate-visa/how-to-apply",
            "https://www.gov.uk/skilled-worker-visa",
        ),
        intake_focus=(
            "Degree completion confirmation from UK sponsor",
            "Current BRP or visa expiry date",
            "Budget for application and IHS fees",
            "Dependants planning to apply",
        ),
    ),
)

_INDEX: dict[str, ScenarioDefinition] = {s.id: s for s in SCENARIOS}


def find_scenario(scenario_id: str | None) -> ScenarioDefinition | None:
    if not scenario_id:
        return None
    return _INDEX.get(scenario_id)


def get_scenario(scenario_id: str) -> ScenarioDefinition:
    scenario = find_scenario(scenario_id)
    if scenario is None:
        raise NotFound(f"Unknown scenario id: {scenario_id!r}")
    return scenario


# ── Matching ──────────────────────────────────────────────────
def normalize_text(value: str) -> str:
    """Lowercase, strip diacritics and punctuation, collapse whitespace."""
    value = unicodedata.normalize("NFKD", value.lower())
    value = "".join(ch for ch in value if not unicodedata.combining(ch))
    value = re.sub(r"[^a-z0-9\s]", " ", value)
    return re.sub(r"\s+", " ", value).strip()


def contains_token(haystack: str, token: str) -> bool:
    needle = normalize_text(token)
    if not needle:
        return False
    return f" {needle} " in f" {haystack} "


def _search_text(prompt: str, answers: Mapping[str, str | None] | None) -> str:
    pieces = [prompt]
    if answers:
        pieces.extend(v for v in answers.values() if v)
    return normalize_text(" ".join(pieces))


def score_scenario(scenario: ScenarioDefinition, haystack: str) -> int:
    score = 0
    if any(contains_token(haystack, t) for t in (scenario.country_from, *scenario.from_aliases)):
        score += _SIGNAL_WEIGHT
    if any(contains_token(haystack, t) for t in (scenario.country_to, *scenario.to_aliases)):
        score += _SIGNAL_WEIGHT
    score += _SIGNAL_WEIGHT * sum(1 for kw in scenario.keywords if contains_token(haystack, kw))
    return score


def detect_scenario(
    prompt: str,
    answers: Mapping[str, str | None] | None = None,
    *,
    catalog: tuple[ScenarioDefinition, ...] = SCENARIOS,
) -> ScenarioDefinition | None:
    haystack = _search_text(prompt, answers)
    if not haystack:
        return None

    best: ScenarioDefinition | None = None
    best_score = 0
    for scenario in catalog:
        score = score_scenario(scenario, haystack)
        if score > best_score and score >= MATCH_THRESHOLD:
            best, best_score = scenario, score

    if best:
        log.info("Scenario detected → %s (score=%d)", best.id, best_score)
    return best

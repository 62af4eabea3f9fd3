"""Visa plan builder — scenario detection, tiered evidence, structured plan synthesis."""

from visaplan.config import Settings
from visaplan.errors import (
    ConfigurationMissing,
    EvidenceUnavailable,
    InvalidResponse,
    InvalidTransition,
    NotFound,
    PlannerError,
    TransientUpstream,
    UpstreamError,
    ValidationFailure,
)
from visaplan.orchestrator import Orchestrator
from visaplan.scenarios import SCENARIOS, ScenarioDefinition, detect_scenario
from visaplan.schemas import EvidenceChunk, Plan
from visaplan.sessions import InMemorySessionStore, SessionStatus

__all__ = [
    "Settings",
    "ConfigurationMissing",
    "EvidenceUnavailable",
    "InvalidResponse",
    "InvalidTransition",
    "NotFound",
    "PlannerError",
    "TransientUpstream",
    "UpstreamError",
    "ValidationFailure",
    "Orchestrator",
    "SCENARIOS",
    "ScenarioDefinition",
    "detect_scenario",
    "EvidenceChunk",
    "Plan",
    "InMemorySessionStore",
    "SessionStatus",
]

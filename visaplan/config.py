"""Environment-driven settings.

Entry points (``backend/main.py``, ``python -m visaplan.populate``) load
``.env`` with python-dotenv before calling :meth:`Settings.from_env`.
"""
from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Mapping

_TRUTHY = {"1", "true", "yes", "on"}

_DEFAULT_MODELS = {
    "grok": "grok-3-mini-fast",
    "openai_compatible": "gpt-4o",
    "stub": "stub",
}


def _flag(value: str | None) -> bool:
    return (value or "").strip().lower() in _TRUTHY


def _int(value: str | None, default: int) -> int:
    try:
        return int(value) if value else default
    except ValueError:
        return default


@dataclass(frozen=True)
class Settings:
    llm_provider: str = "openai_compatible"
    llm_model: str = "gpt-4o"
    llm_api_key: str | None = None
    llm_base_url: str | None = None

    firecrawl_api_key: str | None = None
    firecrawl_base_url: str = "https://api.firecrawl.dev"

    google_search_api_key: str | None = None
    google_search_engine_id: str | None = None

    weaviate_url: str | None = None
    weaviate_api_key: str | None = None
    # JSON-lines chunk file served in process when no WEAVIATE_URL is set
    curated_snapshot: str | None = None

    # Surface the generator's "needs human review" signal instead of forcing ready.
    honor_human_review: bool = False
    max_live_sources: int = 5
    max_evidence: int = 40

    @classmethod
    def from_env(cls, env: Mapping[str, str] | None = None) -> "Settings":
        env = os.environ if env is None else env
        provider = env.get("LLM_PROVIDER") or "openai_compatible"
        return cls(
            llm_provider=provider,
            llm_model=env.get("LLM_MODEL") or _DEFAULT_MODELS.get(provider, "gpt-4o"),
            llm_api_key=env.get("LLM_API_KEY") or env.get("OPENAI_API_KEY") or env.get("GROK_API_KEY"),
            llm_base_url=env.get("LLM_BASE_URL"),
            firecrawl_api_key=env.get("FIRECRAWL_API_KEY"),
            firecrawl_base_url=env.get("FIRECRAWL_BASE_URL") or "https://api.firecrawl.dev",
            google_search_api_key=env.get("GOOGLE_SEARCH_API_KEY"),
            google_search_engine_id=env.get("GOOGLE_SEARCH_ENGINE_ID"),
            weaviate_url=env.get("WEAVIATE_URL"),
            weaviate_api_key=env.get("WEAVIATE_API_KEY"),
            curated_snapshot=env.get("CURATED_SNAPSHOT"),
            honor_human_review=_flag(env.get("HONOR_HUMAN_REVIEW")),
            max_live_sources=_int(env.get("MAX_LIVE_SOURCES"), 5),
            max_evidence=_int(env.get("MAX_EVIDENCE"), 40),
        )

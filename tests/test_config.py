from visaplan.config import Settings


class TestSettingsFromEnv:
    def test_defaults_on_empty_env(self):
        s = Settings.from_env({})
        assert s.llm_provider == "openai_compatible"
        assert s.llm_model == "gpt-4o"
        assert s.llm_api_key is None
        assert s.honor_human_review is False
        assert (s.max_live_sources, s.max_evidence) == (5, 40)

    def test_provider_picks_default_model(self):
        assert Settings.from_env({"LLM_PROVIDER": "grok"}).llm_model == "grok-3-mini-fast"

    def test_openai_key_used_when_llm_key_absent(self):
        assert Settings.from_env({"OPENAI_API_KEY": "sk-x"}).llm_api_key == "sk-x"

    def test_flags_and_ints(self):
        s = Settings.from_env({"HONOR_HUMAN_REVIEW": "Yes", "MAX_LIVE_SOURCES": "2", "MAX_EVIDENCE": "many"})
        assert s.honor_human_review is True
        assert s.max_live_sources == 2
        assert s.max_evidence == 40

    def test_curated_snapshot_path(self):
        assert Settings.from_env({}).curated_snapshot is None
        assert Settings.from_env({"CURATED_SNAPSHOT": "data/curated.jsonl"}).curated_snapshot == "data/curated.jsonl"

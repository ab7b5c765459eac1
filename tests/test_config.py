"""Tests for chatagent/config.py.

Tests verify:
- Defaults when nothing is set
- Malformed values raise ConfigError naming the variable
- Cross-field validation (tags, template placeholders, lock mode)
"""

import pytest

from chatagent.config import DEFAULT_VERIFIER_USER_PROMPT, LOCK_MODE_QUEUE, load_settings
from chatagent.errors import ConfigError

_ENV_KEYS = (
    "DATA_DIR",
    "DOC_STORE_PATH",
    "FRONTEND_PORT",
    "AGENT_SYSTEM_PROMPT",
    "AGENT_MAX_HISTORY",
    "AGENT_MAX_REPLAN",
    "AGENT_PLAN_SUFFIX",
    "AGENT_SEARCH_PLAN_SUFFIX",
    "AGENT_VERIFIER_USER_PROMPT",
    "AGENT_LOCK_MODE",
    "AGENT_LOCK_WAIT_TIMEOUT",
    "AGENT_PERSIST_TRUNCATED",
    "LLM_ENDPOINT",
    "LLM_API_KEY",
    "LLM_MODEL",
    "LLM_TEMPERATURE",
    "LLM_TOP_P",
    "LLM_MAX_TOKENS",
    "LLM_PLAN_MAX_TOKENS",
    "LLM_VERIFY_MAX_TOKENS",
    "LLM_PROMPT_MAX_TOKEN",
    "LLM_TOKENIZER",
    "SEARCH_ENDPOINT",
    "SEARCH_SERP_API_KEY",
    "SEARCH_RESULT_LIMIT",
    "PROVIDER_MAX_RETRIES",
    "PROVIDER_BACKOFF_BASE",
    "PROVIDER_BACKOFF_MAX",
    "PROVIDER_CALL_TIMEOUT",
    "STORE_CALL_TIMEOUT",
)


@pytest.fixture
def env(monkeypatch, tmp_path):
    for key in _ENV_KEYS:
        monkeypatch.delenv(key, raising=False)
    monkeypatch.setenv("DATA_DIR", str(tmp_path))
    return monkeypatch


class TestDefaults:
    def test_defaults(self, env, tmp_path):
        settings = load_settings()
        assert settings.doc_store_path == tmp_path / "chat_agent.db"
        assert settings.agent_max_history == 20
        assert settings.agent_max_replan == 1
        assert settings.agent_plan_suffix == "<plan>"
        assert settings.agent_search_plan_suffix == "<search_plan>"
        assert settings.agent_lock_mode == LOCK_MODE_QUEUE
        assert settings.agent_persist_truncated is False
        assert settings.agent_verifier_user_prompt == DEFAULT_VERIFIER_USER_PROMPT
        assert settings.llm_top_p is None
        assert settings.provider_max_retries == 2
        assert settings.frontend_origin == "http://localhost:5173"

    def test_overrides(self, env):
        env.setenv("AGENT_MAX_HISTORY", "4")
        env.setenv("AGENT_LOCK_MODE", "REJECT")
        env.setenv("AGENT_PERSIST_TRUNCATED", "yes")
        env.setenv("LLM_TOP_P", "0.9")
        env.setenv("DOC_STORE_PATH", "/tmp/other.db")
        settings = load_settings()
        assert settings.agent_max_history == 4
        assert settings.agent_lock_mode == "reject"
        assert settings.agent_persist_truncated is True
        assert settings.llm_top_p == 0.9
        assert str(settings.doc_store_path) == "/tmp/other.db"

    def test_escaped_newlines_in_template(self, env):
        env.setenv("AGENT_VERIFIER_USER_PROMPT", "Q: {question}\\nE: {search_result}\\nA: {answer}")
        settings = load_settings()
        assert settings.agent_verifier_user_prompt == "Q: {question}\nE: {search_result}\nA: {answer}"


class TestInvalid:
    @pytest.mark.parametrize(
        "key,value",
        [
            ("AGENT_MAX_HISTORY", "twenty"),
            ("LLM_TEMPERATURE", "hot"),
            ("LLM_TOP_P", "high"),
            ("AGENT_PERSIST_TRUNCATED", "maybe"),
        ],
    )
    def test_malformed_values(self, env, key, value):
        env.setenv(key, value)
        with pytest.raises(ConfigError) as exc_info:
            load_settings()
        assert key in str(exc_info.value)

    def test_history_must_be_positive(self, env):
        env.setenv("AGENT_MAX_HISTORY", "0")
        with pytest.raises(ConfigError):
            load_settings()

    def test_negative_replan(self, env):
        env.setenv("AGENT_MAX_REPLAN", "-1")
        with pytest.raises(ConfigError):
            load_settings()

    def test_tags_must_differ(self, env):
        env.setenv("AGENT_PLAN_SUFFIX", "<x>")
        env.setenv("AGENT_SEARCH_PLAN_SUFFIX", "<x>")
        with pytest.raises(ConfigError):
            load_settings()

    def test_template_requires_search_result(self, env):
        env.setenv("AGENT_VERIFIER_USER_PROMPT", "Q: {question}\nA: {answer}")
        with pytest.raises(ConfigError) as exc_info:
            load_settings()
        assert "{search_result}" in str(exc_info.value)

    def test_unknown_lock_mode(self, env):
        env.setenv("AGENT_LOCK_MODE", "parallel")
        with pytest.raises(ConfigError):
            load_settings()

    def test_timeouts_must_be_positive(self, env):
        env.setenv("PROVIDER_CALL_TIMEOUT", "0")
        with pytest.raises(ConfigError):
            load_settings()

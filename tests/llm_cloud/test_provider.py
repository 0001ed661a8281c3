"""
Tests for `learnflow/llm_cloud/provider.py` using pytest.

Provider validation only reads environment variables, so `monkeypatch` sets and clears them
per test. `get_client` is exercised far enough to check provider routing; the `AsyncOpenAI`
constructor does not perform any network I/O.
"""

import pytest

from learnflow.llm_cloud.provider import get_client, require_any_env, validate_env_for_provider


@pytest.fixture
def clean_env(monkeypatch):
    for name in ("LLM_API_KEY", "NEBIUS_API_KEY", "OPENAI_API_KEY"):
        monkeypatch.delenv(name, raising=False)
    return monkeypatch


def test_require_any_env_returns_first_present(clean_env):
    clean_env.setenv("NEBIUS_API_KEY", "nebius-key")
    assert require_any_env(["LLM_API_KEY", "NEBIUS_API_KEY"]) == ("NEBIUS_API_KEY", "nebius-key")


def test_require_any_env_raises_when_missing(clean_env):
    with pytest.raises(RuntimeError, match="LLM_API_KEY, NEBIUS_API_KEY"):
        require_any_env(["LLM_API_KEY", "NEBIUS_API_KEY"])


def test_unsupported_provider_is_rejected(clean_env):
    with pytest.raises(ValueError, match="Unsupported LLM provider"):
        validate_env_for_provider({"llm": {"provider": "carrier-pigeon"}})


def test_openai_provider_requires_openai_key(clean_env):
    clean_env.setenv("NEBIUS_API_KEY", "nebius-key")
    with pytest.raises(RuntimeError):
        validate_env_for_provider({"llm": {"provider": "openai"}})


def test_get_client_routes_to_configured_base_url(clean_env):
    clean_env.setenv("LLM_API_KEY", "llm-key")
    client = get_client({"llm": {"provider": "nebius", "base_url": "https://llm.example.test/v1/", "timeout": 5}})

    assert str(client.base_url) == "https://llm.example.test/v1/"
    assert client.api_key == "llm-key"
    assert client.max_retries == 0

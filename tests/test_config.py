"""Tests for config/config_loader.py."""

from pathlib import Path

import pytest
import yaml

from config.config_loader import ConfigError, SamplingConfig, load_config, resolve_api_key


@pytest.fixture
def minimal_settings(tmp_path: Path) -> Path:
    """Write a minimal valid settings.yaml to a temp path."""
    settings = {
        "defaults": {"experts": 4, "max_rounds": 2, "output_dir": "./out"},
        "generation": {
            "model": "gpt-test",
            "model_env": "TEST_GEN_MODEL",
            "fallback_model": "gpt-fallback",
            "api_key_env": "TEST_OPENAI_KEY",
            "sampling": {"expert": {"temperature": 0.5, "max_tokens": 100}},
        },
        "search": {
            "model": "sonar-test",
            "model_env": "TEST_SEARCH_MODEL",
            "api_key_env": "TEST_PPLX_KEY",
            "base_url": "https://api.perplexity.ai",
        },
        "prompts": {
            "persona_system": "ps",
            "persona": "{count} {question}",
            "expert_system": "{role}",
            "expert_research_shared": "shared",
            "expert_research_independent": "independent",
            "contrarian_system": "{agent_id} {synthesis_context}",
            "orchestrator_system": "orch",
            "consensus_system": "cs",
            "consensus": "{synthesis_json}",
            "shared_research_query": "{question}",
        },
    }
    path = tmp_path / "settings.yaml"
    path.write_text(yaml.dump(settings), encoding="utf-8")
    return path


def test_load_minimal_settings(minimal_settings: Path, monkeypatch):
    monkeypatch.delenv("TEST_GEN_MODEL", raising=False)
    config = load_config(minimal_settings)
    assert config.defaults.experts == 4
    assert config.defaults.max_rounds == 2
    assert config.defaults.output_dir == Path("./out")
    assert config.defaults.round_pause_sec == 1.0
    assert config.generation.model == "gpt-test"
    assert config.generation.max_attempts == 5
    assert config.search.timeout_sec == 30
    assert config.search.max_attempts == 3
    assert config.search.context_size == "medium"


def test_sampling_for_known_and_unknown_agent(minimal_settings: Path):
    config = load_config(minimal_settings)
    assert config.generation.sampling_for("expert") == SamplingConfig(temperature=0.5, max_tokens=100)
    assert config.generation.sampling_for("nobody") == SamplingConfig(temperature=0.7, max_tokens=2000)


def test_model_env_overrides_models(minimal_settings: Path, monkeypatch):
    monkeypatch.setenv("TEST_GEN_MODEL", "gpt-override")
    monkeypatch.setenv("TEST_SEARCH_MODEL", "sonar-override")
    config = load_config(minimal_settings)
    assert config.generation.model == "gpt-override"
    assert config.search.model == "sonar-override"
    assert config.generation.fallback_model == "gpt-fallback"


def test_blank_model_env_is_ignored(minimal_settings: Path, monkeypatch):
    monkeypatch.setenv("TEST_GEN_MODEL", "   ")
    assert load_config(minimal_settings).generation.model == "gpt-test"


def test_missing_settings_file_raises(tmp_path: Path):
    with pytest.raises(FileNotFoundError):
        load_config(tmp_path / "nope.yaml")


def test_shipped_settings_load(monkeypatch):
    monkeypatch.delenv("OPENAI_MODEL", raising=False)
    config = load_config()
    assert config.generation.model == "gpt-4o"
    assert config.search.timeout_sec == 30
    assert config.generation.sampling_for("orchestrator").temperature == 0.3
    assert config.generation.sampling_for("contrarian_draft").max_tokens == 600


def test_shipped_prompt_templates_render(monkeypatch):
    config = load_config()
    prompts = config.prompts
    assert "5" in prompts.persona.format(count=5, question="Q?")
    rendered = prompts.expert_system.format(
        role="Economist", agent_id="abc", expertise_areas="labor", perspective="p",
        bias_instructions="b", research_guidance="g",
    )
    assert '"agent_id": "abc"' in rendered
    assert "ctx" in prompts.contrarian_system.format(agent_id="abc", synthesis_context="ctx")
    consensus = prompts.consensus.format(synthesis_json='{"round_number": 2}')
    assert '{"round_number": 2}' in consensus
    assert '"final_position"' in consensus


def test_resolve_api_key(monkeypatch):
    monkeypatch.setenv("TEST_KEY_PRESENT", "sk-123")
    assert resolve_api_key("TEST_KEY_PRESENT") == "sk-123"


def test_resolve_api_key_missing_raises(monkeypatch):
    monkeypatch.setenv("TEST_KEY_BLANK", "  ")
    with pytest.raises(ConfigError, match="TEST_KEY_BLANK"):
        resolve_api_key("TEST_KEY_BLANK")

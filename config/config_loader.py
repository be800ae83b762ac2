"""Load settings.yaml into typed dataclasses. Resolves API keys from the environment."""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path

import yaml

logger = logging.getLogger(__name__)

_SETTINGS_PATH = Path(__file__).parent / "settings.yaml"


class ConfigError(Exception):
    """Raised when required configuration or credentials are missing."""


@dataclass
class SamplingConfig:
    temperature: float
    max_tokens: int


@dataclass
class GenerationConfig:
    model: str
    fallback_model: str
    api_key_env: str
    max_attempts: int
    base_url: str | None = None
    sampling: dict[str, SamplingConfig] = field(default_factory=dict)

    def sampling_for(self, agent_type: str) -> SamplingConfig:
        """Return sampling parameters for an agent type, with a neutral default."""
        return self.sampling.get(agent_type, SamplingConfig(temperature=0.7, max_tokens=2000))


@dataclass
class SearchConfig:
    model: str
    api_key_env: str
    base_url: str
    timeout_sec: float
    max_attempts: int
    backoff_base_sec: float
    context_size: str = "medium"


@dataclass
class PromptsConfig:
    persona_system: str
    persona: str
    expert_system: str
    expert_research_shared: str
    expert_research_independent: str
    contrarian_system: str
    orchestrator_system: str
    consensus_system: str
    consensus: str
    shared_research_query: str


@dataclass
class DefaultsConfig:
    experts: int
    max_rounds: int
    output_dir: Path
    round_pause_sec: float = 1.0


@dataclass
class AppConfig:
    defaults: DefaultsConfig
    generation: GenerationConfig
    search: SearchConfig
    prompts: PromptsConfig


def resolve_api_key(env_name: str) -> str:
    """Return the API key stored in ``env_name``.

    Raises:
        ConfigError: If the variable is unset or blank.
    """
    api_key = os.environ.get(env_name, "").strip()
    if not api_key:
        raise ConfigError(f"Missing API key: set {env_name} in your environment or .env file")
    return api_key


def load_config(settings_path: Path = _SETTINGS_PATH) -> AppConfig:
    """Load configuration from settings.yaml.

    ``OPENAI_MODEL`` / ``PERPLEXITY_MODEL`` (or whatever ``model_env`` names)
    override the configured model identifiers when set.

    Raises FileNotFoundError if settings file missing.
    """
    if not settings_path.exists():
        raise FileNotFoundError(f"Settings file not found: {settings_path}")

    with settings_path.open("r", encoding="utf-8") as f:
        raw = yaml.safe_load(f)

    defaults_raw = raw["defaults"]
    defaults = DefaultsConfig(
        experts=int(defaults_raw["experts"]),
        max_rounds=int(defaults_raw["max_rounds"]),
        output_dir=Path(defaults_raw["output_dir"]),
        round_pause_sec=float(defaults_raw.get("round_pause_sec", 1.0)),
    )

    gen_raw = raw["generation"]
    sampling = {
        agent_type: SamplingConfig(
            temperature=float(values["temperature"]),
            max_tokens=int(values["max_tokens"]),
        )
        for agent_type, values in gen_raw.get("sampling", {}).items()
    }
    generation = GenerationConfig(
        model=_model_override(gen_raw),
        fallback_model=str(gen_raw["fallback_model"]),
        api_key_env=str(gen_raw["api_key_env"]),
        max_attempts=int(gen_raw.get("max_attempts", 5)),
        base_url=gen_raw.get("base_url"),
        sampling=sampling,
    )

    search_raw = raw["search"]
    search = SearchConfig(
        model=_model_override(search_raw),
        api_key_env=str(search_raw["api_key_env"]),
        base_url=str(search_raw["base_url"]),
        timeout_sec=float(search_raw.get("timeout_sec", 30)),
        max_attempts=int(search_raw.get("max_attempts", 3)),
        backoff_base_sec=float(search_raw.get("backoff_base_sec", 1.0)),
        context_size=str(search_raw.get("context_size", "medium")),
    )

    prompts_raw = raw["prompts"]
    prompts = PromptsConfig(
        persona_system=prompts_raw["persona_system"],
        persona=prompts_raw["persona"],
        expert_system=prompts_raw["expert_system"],
        expert_research_shared=prompts_raw["expert_research_shared"],
        expert_research_independent=prompts_raw["expert_research_independent"],
        contrarian_system=prompts_raw["contrarian_system"],
        orchestrator_system=prompts_raw["orchestrator_system"],
        consensus_system=prompts_raw["consensus_system"],
        consensus=prompts_raw["consensus"],
        shared_research_query=prompts_raw["shared_research_query"],
    )

    logger.debug("Loaded settings from %s (generation model %s, search model %s)",
                 settings_path, generation.model, search.model)

    return AppConfig(
        defaults=defaults,
        generation=generation,
        search=search,
        prompts=prompts,
    )


def _model_override(section: dict) -> str:
    env_name = section.get("model_env")
    if env_name:
        override = os.environ.get(env_name, "").strip()
        if override:
            logger.info("Model overridden by %s: %s", env_name, override)
            return override
    return str(section["model"])

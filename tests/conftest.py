"""Shared pytest fixtures and test doubles."""

import json
import re
from dataclasses import replace
from pathlib import Path
from types import SimpleNamespace
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest
from openai.types.chat import ChatCompletion

from config.config_loader import AppConfig, GenerationConfig, PromptsConfig, SamplingConfig, SearchConfig, load_config
from delphi.models import (
    Citation,
    DelphiPrompt,
    ExpertCluster,
    ExpertResponse,
    RoundSynthesis,
    SearchResponse,
    SearchResult,
)
from delphi.providers.generation import StructuredGenerationClient


def chat_completion(
    content: str | None = None,
    tool_calls: list[dict] | None = None,
    model: str = "gpt-4o",
    no_choices: bool = False,
    **extra: Any,
) -> ChatCompletion:
    """Build a real SDK ChatCompletion. Extra keys (e.g. ``citations``) are kept."""
    message: dict[str, Any] = {"role": "assistant", "content": content}
    if tool_calls:
        message["tool_calls"] = tool_calls
    choices = [] if no_choices else [
        {
            "index": 0,
            "finish_reason": "tool_calls" if tool_calls else "stop",
            "message": message,
        }
    ]
    return ChatCompletion.model_validate({
        "id": "chatcmpl-test",
        "object": "chat.completion",
        "created": 0,
        "model": model,
        "choices": choices,
        **extra,
    })


def tool_call(name: str, arguments: dict | str, call_id: str = "call_1") -> dict:
    if not isinstance(arguments, str):
        arguments = json.dumps(arguments)
    return {"id": call_id, "type": "function", "function": {"name": name, "arguments": arguments}}


def fake_openai(*responses: Any) -> MagicMock:
    """An AsyncOpenAI stand-in whose ``chat.completions.create`` yields ``responses`` in order."""
    client = MagicMock()
    client.chat.completions.create = AsyncMock(side_effect=list(responses))
    return client


def expert_payload(
    position: str = "Remote work will remain the dominant mode for knowledge workers.",
    confidence: float = 8,
    urls: tuple[str, ...] = ("https://example.org/remote-work-study",),
    agent_id: str = "model-chosen-id",
) -> dict:
    return {
        "position": position,
        "reasoning": "Survey data across several years shows sustained preference and measurable productivity gains.",
        "confidence": confidence,
        "sources": [{"title": f"Source {i + 1}", "url": url} for i, url in enumerate(urls)],
        "expertise_area": "whatever the model said",
        "agent_id": agent_id,
    }


def contrarian_payload(**overrides: Any) -> dict:
    payload = {
        "critique": "The panel leans on self-reported surveys and ignores selection effects in who stays remote.",
        "alternative_framework": "Treat work location as a portfolio decision made per task type.",
        "blind_spots": ["Selection bias", "Junior staff development"],
        "counter_evidence": [
            {"title": "Return to office study", "url": "https://example.org/rto", "summary": "Mixed results."}
        ],
        "agent_id": "model-chosen-id",
    }
    payload.update(overrides)
    return payload


def make_expert_response(
    agent_id: str,
    position: str = "Remote work will remain the dominant mode for knowledge workers.",
    confidence: float = 8.0,
    urls: tuple[str, ...] = ("https://example.org/a",),
    role: str = "Labor Economist",
) -> ExpertResponse:
    return ExpertResponse(
        position=position,
        reasoning="Long-run survey evidence and productivity data support this position over several years.",
        confidence=confidence,
        sources=[Citation(title=f"Source for {url}", url=url) for url in urls],
        expertise_area=role,
        agent_id=agent_id,
    )


def make_cluster(theme: str, expert_ids: list[str], confidence_range: tuple[float, float]) -> ExpertCluster:
    return ExpertCluster(
        theme=theme,
        positions=[f"{theme} position"],
        expert_ids=list(expert_ids),
        confidence_range=confidence_range,
    )


def make_synthesis(
    round_number: int = 1,
    clusters: list[ExpertCluster] | None = None,
    consensus_areas: list[str] | None = None,
    divergence_areas: list[str] | None = None,
    average_confidence: float = 8.0,
    participation_count: int = 5,
) -> RoundSynthesis:
    return RoundSynthesis(
        round_number=round_number,
        clusters=clusters or [],
        consensus_areas=consensus_areas or [],
        divergence_areas=divergence_areas or [],
        average_confidence=average_confidence,
        participation_count=participation_count,
        key_insights=["Hybrid arrangements are common"],
    )


def search_response(content: str = "Background findings on the question.") -> SearchResponse:
    citation = Citation(title="Background report", url="https://example.org/background")
    return SearchResponse(
        content=content,
        citations=[citation],
        search_results=[SearchResult(title="Background report", url=citation.url, summary="Summary")],
    )


class ScriptedOpenAI:
    """Answers every agent type of a Delphi run, keyed off the request's prompts.

    ``expert_positions`` maps a round number to the position each expert takes
    (default: the same position every round). ``clustering`` is ``"single"``
    (one cluster with every expert, consensus only) or ``"split"`` (one
    cluster per expert, divergence only). Roles listed in ``failing_roles``
    always answer with text that is not JSON.
    """

    def __init__(
        self,
        prompts: PromptsConfig,
        expert_count: int = 3,
        expert_positions: dict[int, str] | None = None,
        clustering: str = "single",
        failing_roles: tuple[str, ...] = (),
        confidence: float = 8,
    ) -> None:
        self._prompts = prompts
        self._expert_count = expert_count
        self._positions = expert_positions or {}
        self._clustering = clustering
        self._failing_roles = failing_roles
        self._confidence = confidence
        self._expert_calls: dict[str, int] = {}
        self.requests: list[dict[str, Any]] = []
        self.chat = SimpleNamespace(completions=SimpleNamespace(create=self.create))

    def personas(self) -> list[dict]:
        return [
            {
                "name": f"Expert {i + 1}",
                "role": f"Role {i + 1}",
                "domain_expertise": f"Domain {i + 1}",
                "perspective": "Pragmatic",
                "work_background": "Industry",
                "education_history": "PhD",
                "justification": "Relevant experience.",
                "description": "Long description.",
            }
            for i in range(self._expert_count)
        ]

    async def create(self, **request: Any) -> ChatCompletion:
        self.requests.append(request)
        messages = request["messages"]
        system = messages[0]["content"]
        user = messages[1]["content"] if len(messages) > 1 else ""

        if system == self._prompts.persona_system:
            return chat_completion(json.dumps(self.personas()))
        if system == self._prompts.orchestrator_system:
            return chat_completion(json.dumps(self._synthesis(user)))
        if system == self._prompts.consensus_system:
            return chat_completion(json.dumps({
                "final_position": "Hybrid work is here to stay",
                "support_level": "3 of 3 experts support this position",
                "confidence_level": 8,
                "key_evidence": [{"title": "Study", "url": "https://example.org/study"}],
            }))
        if "contrarian analyst" in system:
            if "Do not cite sources yet" in user:
                return chat_completion("Draft critique: the panel over-weights surveys.")
            agent_id = re.search(r"Agent ID: (\S+)", system).group(1)
            return chat_completion(json.dumps(contrarian_payload(agent_id=agent_id)))

        role = re.match(r"You are (.+?), a panelist", system).group(1)
        agent_id = re.search(r"Agent ID: (\S+)", system).group(1)
        if role in self._failing_roles:
            return chat_completion("I would rather not answer in JSON.")
        round_number = self._expert_calls.get(agent_id, 0) + 1
        self._expert_calls[agent_id] = round_number
        position = self._positions.get(round_number, "Remote work will remain the dominant mode for knowledge workers.")
        return chat_completion(json.dumps(expert_payload(position=position, confidence=self._confidence)))

    def _synthesis(self, user: str) -> dict:
        ids = re.findall(r"\*\*Agent ID:\*\* (\S+)", user)
        if self._clustering == "split":
            clusters = [
                {"theme": f"View {i + 1}", "positions": ["p"], "expert_ids": [agent_id]}
                for i, agent_id in enumerate(ids)
            ]
            return {
                "clusters": clusters,
                "consensus_areas": [],
                "divergence_areas": ["Timeline", "Scope", "Measurement"],
                "key_insights": ["Experts disagree"],
            }
        return {
            "clusters": [{"theme": "Hybrid dominance", "positions": ["Hybrid wins"], "expert_ids": ids}],
            "consensus_areas": ["Hybrid is common", "Tools matured"],
            "divergence_areas": [],
            "key_insights": ["Broad agreement"],
        }


@pytest.fixture
def app_config(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> AppConfig:
    monkeypatch.delenv("OPENAI_MODEL", raising=False)
    monkeypatch.delenv("PERPLEXITY_MODEL", raising=False)
    config = load_config()
    config.defaults = replace(config.defaults, output_dir=tmp_path / "output", round_pause_sec=0.0)
    return config


@pytest.fixture
def prompts(app_config: AppConfig) -> PromptsConfig:
    return app_config.prompts


@pytest.fixture
def generation_config(app_config: AppConfig) -> GenerationConfig:
    return app_config.generation


@pytest.fixture
def search_config() -> SearchConfig:
    return SearchConfig(
        model="sonar-test",
        api_key_env="TEST_PERPLEXITY_KEY",
        base_url="https://api.perplexity.ai",
        timeout_sec=1.0,
        max_attempts=3,
        backoff_base_sec=0.0,
        context_size="medium",
    )


@pytest.fixture
def sampling() -> SamplingConfig:
    return SamplingConfig(temperature=0.7, max_tokens=2000)


@pytest.fixture
def sample_prompt() -> DelphiPrompt:
    return DelphiPrompt(
        question="Will remote work remain dominant for knowledge workers by 2030?",
        context="Post-pandemic labor market",
        constraints=["Focus on OECD countries"],
    )


@pytest.fixture
def mock_search() -> MagicMock:
    search = MagicMock()
    search.name.return_value = "perplexity"
    search.search = AsyncMock(return_value=search_response())
    search.search_academic = AsyncMock(return_value=search_response("Academic findings"))
    search.search_recent = AsyncMock(return_value=search_response("Recent findings"))
    return search


def generation_client(config: GenerationConfig, sdk: Any, request_log=None) -> StructuredGenerationClient:
    return StructuredGenerationClient(config, client=sdk, request_log=request_log)

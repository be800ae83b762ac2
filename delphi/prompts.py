"""Render the prompt templates from settings.yaml.

Each variant is an explicit parameter of a render function, so template
variants can be exercised in isolation.
"""

from config.config_loader import PromptsConfig
from delphi.models import AgentConfig


def render_persona_prompt(prompts: PromptsConfig, question: str, count: int) -> str:
    return prompts.persona.format(count=count, question=question)


def render_expert_system_prompt(
    prompts: PromptsConfig,
    config: AgentConfig,
    agent_id: str,
    shared_research_available: bool = False,
) -> str:
    """Render the expert system prompt.

    ``shared_research_available`` selects the research guidance paragraph:
    build on the round's shared research, or search independently.
    """
    guidance = (
        prompts.expert_research_shared
        if shared_research_available
        else prompts.expert_research_independent
    )
    return prompts.expert_system.format(
        role=config.role,
        expertise_areas=", ".join(config.expertise_areas),
        perspective=config.perspective,
        bias_instructions=config.bias_instructions or "None stated.",
        agent_id=agent_id,
        research_guidance=guidance,
    )


def render_contrarian_system_prompt(prompts: PromptsConfig, agent_id: str, synthesis_context: str) -> str:
    return prompts.contrarian_system.format(agent_id=agent_id, synthesis_context=synthesis_context)


def render_consensus_prompt(prompts: PromptsConfig, synthesis_json: str) -> str:
    return prompts.consensus.format(synthesis_json=synthesis_json)


def render_shared_research_query(prompts: PromptsConfig, question: str) -> str:
    return prompts.shared_research_query.format(question=question)

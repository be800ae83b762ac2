"""Expert panelist: one persona, one structured answer per round."""

import json
import logging
import uuid
from dataclasses import asdict, replace

from config.config_loader import PromptsConfig, SamplingConfig
from delphi.models import AgentConfig, DelphiPrompt, ExpertResponse, PersonaSpec, SearchResponse
from delphi.parsing import extract_json_object
from delphi.prompts import render_expert_system_prompt
from delphi.providers.generation import StructuredGenerationClient, ToolCall
from delphi.providers.search import SearchClient
from delphi.request_log import RequestTag
from delphi.schemas import validate_expert_response

logger = logging.getLogger(__name__)

SEARCH_TOOL_NAME = "search_information"

SEARCH_TOOL = {
    "type": "function",
    "function": {
        "name": SEARCH_TOOL_NAME,
        "description": "Search for current, authoritative information to support your analysis",
        "parameters": {
            "type": "object",
            "properties": {
                "query": {
                    "type": "string",
                    "description": "Search query to find relevant information",
                },
                "searchType": {
                    "type": "string",
                    "enum": ["web", "academic", "recent"],
                    "description": "Type of search to perform",
                },
            },
            "required": ["query"],
        },
    },
}


class ExpertAgentError(Exception):
    """Raised when an expert cannot produce a valid response for a round."""

    def __init__(self, role: str, message: str) -> None:
        self.role = role
        super().__init__(f"[{role}] {message}")


def agent_config_from_persona(persona: PersonaSpec) -> AgentConfig:
    return AgentConfig(
        role=persona.role,
        expertise_areas=[persona.domain_expertise] if persona.domain_expertise else [],
        perspective=persona.perspective,
        bias_instructions=f"{persona.justification}\n{persona.description}".strip(),
    )


def build_expert_user_message(
    prompt: DelphiPrompt,
    config: AgentConfig,
    synthesis_context: str | None = None,
    shared_research: str | None = None,
) -> str:
    parts = [f"Question: {prompt.question}"]
    if prompt.context:
        parts.append(f"Context: {prompt.context}")
    if prompt.constraints:
        parts.append(f"Constraints: {', '.join(prompt.constraints)}")
    if shared_research:
        parts.append(f"Shared Background Research:\n{shared_research}")
    if synthesis_context:
        parts.append(f"Previous Round Synthesis:\n{synthesis_context}")
        parts.append(
            "Please refine or update your position based on this synthesis "
            "rather than restating your previous answer."
        )
    areas = ", ".join(config.expertise_areas) or "your field"
    parts.append(f"Please provide your expert analysis as a {config.role} with expertise in {areas}.")
    return "\n\n".join(parts)


def _tool_payload(result: SearchResponse) -> str:
    return json.dumps({
        "content": result.content,
        "citations": [asdict(c) for c in result.citations],
        "search_results": [asdict(r) for r in result.search_results],
    })


class ExpertAgent:
    def __init__(
        self,
        client: StructuredGenerationClient,
        search: SearchClient,
        config: AgentConfig,
        prompts: PromptsConfig,
        sampling: SamplingConfig,
        agent_id: str | None = None,
    ) -> None:
        self._client = client
        self._search = search
        self._config = config
        self._prompts = prompts
        self._sampling = sampling
        self.agent_id = agent_id or str(uuid.uuid4())

    @property
    def role(self) -> str:
        return self._config.role

    @property
    def config(self) -> AgentConfig:
        return replace(self._config, expertise_areas=list(self._config.expertise_areas))

    async def _run_search(self, call: ToolCall) -> str:
        try:
            args = call.parsed_arguments()
            query = str(args["query"])
            search_type = args.get("searchType", "web")
            logger.info("[%s] Searching (%s): %s", self.role, search_type, query)
            if search_type == "academic":
                result = await self._search.search_academic(query)
            elif search_type == "recent":
                result = await self._search.search_recent(query)
            else:
                result = await self._search.search(query, context_size="medium")
        except Exception as exc:
            logger.warning("[%s] Search failed for tool call %s: %s", self.role, call.id, exc)
            return json.dumps({"error": "Search failed", "message": str(exc)})
        return _tool_payload(result)

    async def _tool_messages(self, tool_calls: list[ToolCall]) -> list[dict]:
        messages = []
        for call in tool_calls:
            if call.name == SEARCH_TOOL_NAME:
                content = await self._run_search(call)
            else:
                content = json.dumps({"error": f"Unknown tool: {call.name}"})
            messages.append({"role": "tool", "tool_call_id": call.id, "content": content})
        return messages

    async def respond(
        self,
        prompt: DelphiPrompt,
        synthesis_context: str | None = None,
        round_number: int = 1,
        shared_research: str | None = None,
    ) -> ExpertResponse:
        """Produce this expert's validated response for one round.

        Args:
            prompt: The run's question, context and constraints.
            synthesis_context: Rendered digest of the previous round, if any.
            round_number: The Delphi round (1-indexed).
            shared_research: Background research shared by all experts this round.

        Raises:
            ExpertAgentError: On any generation, parsing or validation failure.
        """
        try:
            return await self._respond(prompt, synthesis_context, round_number, shared_research)
        except ExpertAgentError:
            raise
        except Exception as exc:
            raise ExpertAgentError(self.role, f"Expert agent failed: {exc}") from exc

    async def _respond(
        self,
        prompt: DelphiPrompt,
        synthesis_context: str | None,
        round_number: int,
        shared_research: str | None,
    ) -> ExpertResponse:
        system_prompt = render_expert_system_prompt(
            self._prompts, self._config, self.agent_id,
            shared_research_available=shared_research is not None,
        )
        user_message = build_expert_user_message(prompt, self._config, synthesis_context, shared_research)
        messages = [
            {"role": "system", "content": system_prompt},
            {"role": "user", "content": user_message},
        ]
        tag = RequestTag(agent_type="expert", agent_id=self.agent_id, role=self.role, round_number=round_number)

        result = await self._client.complete(
            self._client.build_request(messages, self._sampling, tools=[SEARCH_TOOL]), tag=tag
        )

        if result.tool_calls:
            tool_messages = await self._tool_messages(result.tool_calls)
            follow_up = messages + [result.assistant_message()] + tool_messages
            result = await self._client.complete(self._client.build_request(follow_up, self._sampling), tag=tag)

        if not result.content.strip():
            raise ExpertAgentError(self.role, "No response content received")

        data = extract_json_object(result.content)
        # Identity is owned by the agent, never by the generated text.
        data["agent_id"] = self.agent_id
        data["expertise_area"] = self._config.role

        validation = validate_expert_response(data)
        if not validation.ok:
            raise ExpertAgentError(self.role, f"Invalid response: {'; '.join(validation.errors)}")

        logger.info("[%s] Round %d response with confidence %s/10", self.role, round_number, validation.value.confidence)
        return validation.value

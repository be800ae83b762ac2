"""Contrarian critic: challenges the dominant clusters of a round."""

import json
import logging
import random
import uuid
from dataclasses import asdict

from config.config_loader import PromptsConfig, SamplingConfig
from delphi.citations import sanitize_counter_evidence
from delphi.models import ContrarianResponse, RoundSynthesis
from delphi.parsing import extract_json_object
from delphi.prompts import render_contrarian_system_prompt
from delphi.providers.generation import StructuredGenerationClient, ToolCall
from delphi.providers.search import SearchClient
from delphi.request_log import RequestTag
from delphi.schemas import validate_contrarian_response

logger = logging.getLogger(__name__)

COUNTER_EVIDENCE_TOOL_NAME = "search_counter_evidence"

FOCUS_PREFIXES = {
    "failures": ["failures of", "problems with", "when fails", "unsuccessful"],
    "risks": ["risks of", "dangers of", "downsides of", "negative effects"],
    "alternatives": ["alternatives to", "instead of", "different approach"],
    "criticisms": ["criticism of", "critique of", "arguments against"],
    "contradictions": ["contradicts", "disputes", "challenges", "refutes"],
}

CONTRARIAN_TERMS = ["criticism", "problems", "limitations", "failures", "controversy"]

COUNTER_EVIDENCE_TOOL = {
    "type": "function",
    "function": {
        "name": COUNTER_EVIDENCE_TOOL_NAME,
        "description": "Search for information that challenges or contradicts the emerging consensus",
        "parameters": {
            "type": "object",
            "properties": {
                "query": {
                    "type": "string",
                    "description": "Search query to find counter-evidence or alternative perspectives",
                },
                "focus": {
                    "type": "string",
                    "enum": list(FOCUS_PREFIXES),
                    "description": "What type of counter-evidence to focus on",
                },
            },
            "required": ["query"],
        },
    },
}

_CHALLENGE_INSTRUCTION = (
    "Challenge the emerging consensus in this synthesis. Focus on the dominant viewpoints "
    "and identify their weaknesses, blind spots, and alternative interpretations. Be "
    "constructively critical and provide counter-evidence where possible."
)


class ContrarianAgentError(Exception):
    """Raised when a contrarian critique fails. Fatal to the run."""


def enhance_query_for_counter_evidence(
    query: str, focus: str | None = None, rng: random.Random | None = None
) -> str:
    """Bias a search query toward counter-evidence.

    A known ``focus`` prepends one of its prefixes; otherwise a generic
    contrarian term is appended.
    """
    rng = rng or random
    prefixes = FOCUS_PREFIXES.get(focus) if focus else None
    if prefixes:
        return f"{rng.choice(prefixes)} {query}"
    return f"{query} {rng.choice(CONTRARIAN_TERMS)}"


def _bullets(items: list[str]) -> str:
    return "\n".join(f"- {item}" for item in items)


def format_synthesis_context(synthesis: RoundSynthesis, dominant_clusters: list[str]) -> str:
    context = (
        f"## Round {synthesis.round_number} Synthesis\n\n"
        f"**Consensus Areas:**\n{_bullets(synthesis.consensus_areas)}\n\n"
        f"**Divergence Areas:**\n{_bullets(synthesis.divergence_areas)}\n\n"
        f"**Dominant Clusters:**\n{_bullets(dominant_clusters)}\n\n"
        f"**Average Confidence:** {synthesis.average_confidence:.1f}/10\n\n"
        f"**Key Insights:**\n{_bullets(synthesis.key_insights)}\n\n"
    )
    if synthesis.clusters:
        context += "**Expert Clusters:**\n"
        for index, cluster in enumerate(synthesis.clusters, start=1):
            low, high = cluster.confidence_range
            context += (
                f"{index}. **{cluster.theme}** ({len(cluster.expert_ids)} experts, "
                f"confidence: {low}-{high})\n"
                f"   Positions: {'; '.join(cluster.positions)}\n\n"
            )
    return context


class ContrarianAgent:
    def __init__(
        self,
        client: StructuredGenerationClient,
        search: SearchClient,
        prompts: PromptsConfig,
        draft_sampling: SamplingConfig,
        sampling: SamplingConfig,
        agent_id: str | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self._client = client
        self._search = search
        self._prompts = prompts
        self._draft_sampling = draft_sampling
        self._sampling = sampling
        self._rng = rng or random.Random()
        self.agent_id = agent_id or str(uuid.uuid4())

    async def _run_search(self, call: ToolCall) -> str:
        try:
            args = call.parsed_arguments()
            focus = args.get("focus")
            query = enhance_query_for_counter_evidence(str(args["query"]), focus, self._rng)
            logger.info("[Contrarian %s] Searching for counter-evidence: %s", self.agent_id[:8], query)
            result = await self._search.search(query, context_size="low")
        except Exception as exc:
            logger.warning("[Contrarian %s] Counter-evidence search failed: %s", self.agent_id[:8], exc)
            return json.dumps({"error": "Search failed", "message": str(exc)})
        return json.dumps({
            "content": result.content,
            "citations": [asdict(c) for c in result.citations],
            "search_results": [asdict(r) for r in result.search_results],
            "focus": focus,
        })

    async def _tool_messages(self, tool_calls: list[ToolCall]) -> list[dict]:
        messages = []
        for call in tool_calls:
            if call.name == COUNTER_EVIDENCE_TOOL_NAME:
                content = await self._run_search(call)
            else:
                content = json.dumps({"error": f"Unknown tool: {call.name}"})
            messages.append({"role": "tool", "tool_call_id": call.id, "content": content})
        return messages

    async def respond(
        self,
        synthesis: RoundSynthesis,
        dominant_clusters: list[str],
        round_number: int | None = None,
    ) -> ContrarianResponse:
        """Critique ``synthesis``, targeting ``dominant_clusters``.

        Raises:
            ContrarianAgentError: On any generation, parsing or validation failure.
        """
        try:
            return await self._respond(synthesis, dominant_clusters, round_number or synthesis.round_number)
        except ContrarianAgentError:
            raise
        except Exception as exc:
            raise ContrarianAgentError(f"Contrarian agent failed: {exc}") from exc

    async def _respond(
        self, synthesis: RoundSynthesis, dominant_clusters: list[str], round_number: int
    ) -> ContrarianResponse:
        system_prompt = render_contrarian_system_prompt(
            self._prompts, self.agent_id, format_synthesis_context(synthesis, dominant_clusters)
        )
        tag = RequestTag(agent_type="contrarian", agent_id=self.agent_id, round_number=round_number)

        # Draft first, with no tools, so searching is a deliberate second step.
        draft = await self._client.complete(
            self._client.build_request(
                [
                    {"role": "system", "content": system_prompt},
                    {
                        "role": "user",
                        "content": _CHALLENGE_INSTRUCTION
                        + "\n\nFirst, summarize your critique and alternative framework. "
                        "Do not cite sources yet.",
                    },
                ],
                self._draft_sampling,
            ),
            tag=tag,
        )

        final_prompt = (
            f"{_CHALLENGE_INSTRUCTION}\n\nYour critique/alternative:\n{draft.content}\n\n"
            f"If you need to cite counter-evidence or require web/academic/recent research, "
            f"use the {COUNTER_EVIDENCE_TOOL_NAME} tool."
        )
        messages = [
            {"role": "system", "content": system_prompt},
            {"role": "user", "content": final_prompt},
        ]
        result = await self._client.complete(
            self._client.build_request(messages, self._sampling, tools=[COUNTER_EVIDENCE_TOOL]), tag=tag
        )

        if result.tool_calls:
            tool_messages = await self._tool_messages(result.tool_calls)
            follow_up = messages + [result.assistant_message()] + tool_messages
            result = await self._client.complete(self._client.build_request(follow_up, self._sampling), tag=tag)

        if not result.content.strip():
            raise ContrarianAgentError("No response content received")

        data = extract_json_object(result.content)
        if isinstance(data.get("counter_evidence"), list):
            data["counter_evidence"] = sanitize_counter_evidence(data["counter_evidence"])
        data["agent_id"] = self.agent_id

        validation = validate_contrarian_response(data)
        if not validation.ok:
            raise ContrarianAgentError(f"Invalid contrarian response: {'; '.join(validation.errors)}")

        logger.info(
            "[Contrarian %s] Critique with %d blind spots identified",
            self.agent_id[:8], len(validation.value.blind_spots),
        )
        return validation.value

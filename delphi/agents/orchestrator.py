"""Round synthesis: cluster expert positions and summarize the panel."""

import json
import logging
from dataclasses import asdict
from typing import Any

from config.config_loader import PromptsConfig, SamplingConfig
from delphi.citations import sanitize_citations
from delphi.models import (
    Citation,
    ConsensusSummary,
    ContrarianResponse,
    ExpertCluster,
    ExpertResponse,
    RoundSynthesis,
)
from delphi.parsing import JSONExtractionError, extract_json_object
from delphi.prompts import render_consensus_prompt
from delphi.providers.base import GenerationError
from delphi.providers.generation import StructuredGenerationClient
from delphi.request_log import RequestTag
from delphi.schemas import validate_consensus_summary

logger = logging.getLogger(__name__)

MAX_SUPPORTING_SOURCES = 10
MAX_DOMINANT_CLUSTERS = 3
REASONING_PREVIEW_CHARS = 300
CONTRARIAN_PREVIEW_CHARS = 200

FALLBACK_POSITION = "Multiple expert perspectives were synthesized"


class OrchestratorError(Exception):
    """Raised when a round cannot be synthesized. Fatal to the run."""


def _truncate(text: str, limit: int) -> str:
    return text[:limit] + ("..." if len(text) > limit else "")


def _string_list(value: Any) -> list[str]:
    if not isinstance(value, list):
        return []
    return [item for item in value if isinstance(item, str)]


def build_synthesis_prompt(
    round_number: int,
    expert_responses: list[ExpertResponse],
    contrarian_responses: list[ContrarianResponse],
) -> str:
    lines = [
        f"## Round {round_number} Expert Responses Analysis",
        "",
        f"Please synthesize the following {len(expert_responses)} expert responses:",
        "",
    ]
    for index, response in enumerate(expert_responses, start=1):
        lines += [
            f"### Expert {index} ({response.expertise_area})",
            f"**Agent ID:** {response.agent_id}",
            f"**Position:** {response.position}",
            f"**Confidence:** {response.confidence}/10",
            f"**Key Reasoning:** {_truncate(response.reasoning, REASONING_PREVIEW_CHARS)}",
            f"**Sources:** {len(response.sources)} citations",
            "",
        ]

    if contrarian_responses:
        lines += ["## Contrarian Challenges:", ""]
        for index, response in enumerate(contrarian_responses, start=1):
            lines += [
                f"### Contrarian {index}",
                f"**Critique:** {_truncate(response.critique, CONTRARIAN_PREVIEW_CHARS)}",
                f"**Alternative Framework:** "
                f"{_truncate(response.alternative_framework, CONTRARIAN_PREVIEW_CHARS)}",
                f"**Blind Spots:** {', '.join(response.blind_spots)}",
                "",
            ]

    lines += [
        "Analyze these responses and identify:",
        "1. **Clusters** of similar expert positions",
        "2. **Consensus areas** where experts generally agree",
        "3. **Divergence areas** where experts disagree",
        "4. **Key insights** that emerged from this round",
        "",
        "Provide your analysis as valid JSON following the specified structure.",
    ]
    return "\n".join(lines)


def process_clusters(raw_clusters: Any, expert_responses: list[ExpertResponse]) -> list[ExpertCluster]:
    """Validate generated clusters against the round's actual experts.

    A cluster is dropped entirely when it lacks a theme or an id list, or
    when any of its ids does not belong to an expert who answered this round.
    """
    if not isinstance(raw_clusters, list):
        return []
    by_id = {response.agent_id: response for response in expert_responses}
    clusters: list[ExpertCluster] = []

    for raw in raw_clusters:
        if not isinstance(raw, dict):
            logger.warning("Skipping malformed cluster: %r", raw)
            continue
        theme = raw.get("theme")
        expert_ids = raw.get("expert_ids")
        if (
            not isinstance(theme, str)
            or not theme.strip()
            or not isinstance(expert_ids, list)
            or not expert_ids
            or not all(isinstance(i, str) for i in expert_ids)
        ):
            logger.warning("Skipping cluster without theme or expert ids: %r", raw)
            continue

        unknown = [i for i in expert_ids if i not in by_id]
        if unknown:
            logger.warning("Dropping cluster %r: unknown expert ids %s", theme, unknown)
            continue

        members = [by_id[i] for i in dict.fromkeys(expert_ids)]
        confidences = [m.confidence for m in members]

        sources: list[Citation] = []
        seen_urls: set[str] = set()
        for member in members:
            for source in member.sources:
                if source.url in seen_urls:
                    continue
                seen_urls.add(source.url)
                sources.append(
                    Citation(
                        title=source.title,
                        url=source.url,
                        date=source.date,
                        relevance=source.relevance or "Supporting evidence",
                    )
                )

        clusters.append(
            ExpertCluster(
                theme=theme,
                positions=_string_list(raw.get("positions")) or [m.position for m in members],
                expert_ids=[m.agent_id for m in members],
                confidence_range=(min(confidences), max(confidences)),
                supporting_sources=sources[:MAX_SUPPORTING_SOURCES],
            )
        )
    return clusters


def _cluster_midpoint(cluster: ExpertCluster) -> float:
    low, high = cluster.confidence_range
    return (low + high) / 2


def identify_dominant_clusters(synthesis: RoundSynthesis) -> list[str]:
    """Themes of the top clusters, by size then mean confidence (both descending)."""
    ranked = sorted(
        synthesis.clusters,
        key=lambda c: (len(c.expert_ids), _cluster_midpoint(c)),
        reverse=True,
    )
    return [cluster.theme for cluster in ranked[:MAX_DOMINANT_CLUSTERS]]


def format_synthesis_for_review(synthesis: RoundSynthesis) -> str:
    """Render the digest that next-round experts receive."""
    lines = [
        f"## Round {synthesis.round_number} Synthesis",
        "",
        f"**Participation:** {synthesis.participation_count} experts",
        f"**Average Confidence:** {synthesis.average_confidence:.1f}/10",
        "",
    ]
    if synthesis.consensus_areas:
        lines += ["### Areas of Consensus", *(f"- {a}" for a in synthesis.consensus_areas), ""]
    if synthesis.divergence_areas:
        lines += ["### Areas of Divergence", *(f"- {a}" for a in synthesis.divergence_areas), ""]
    if synthesis.clusters:
        lines += ["### Expert Position Clusters", ""]
        for index, cluster in enumerate(synthesis.clusters, start=1):
            low, high = cluster.confidence_range
            lines += [
                f"**Cluster {index}: {cluster.theme}**",
                f"- Experts: {len(cluster.expert_ids)}",
                f"- Confidence Range: {low}-{high}/10",
                f"- Key Positions: {'; '.join(cluster.positions[:2])}",
                "",
            ]
    if synthesis.key_insights:
        lines += ["### Key Insights", *(f"- {i}" for i in synthesis.key_insights), ""]
    return "\n".join(lines)


def fallback_consensus(synthesis: RoundSynthesis) -> ConsensusSummary:
    return ConsensusSummary(
        final_position=FALLBACK_POSITION,
        support_level=f"{synthesis.participation_count} experts participated",
        confidence_level=synthesis.average_confidence,
        key_evidence=[],
    )


class OrchestratorAgent:
    def __init__(
        self,
        client: StructuredGenerationClient,
        prompts: PromptsConfig,
        sampling: SamplingConfig,
        consensus_sampling: SamplingConfig,
    ) -> None:
        self._client = client
        self._prompts = prompts
        self._sampling = sampling
        self._consensus_sampling = consensus_sampling

    async def synthesize_round(
        self,
        round_number: int,
        expert_responses: list[ExpertResponse],
        contrarian_responses: list[ContrarianResponse] | None = None,
    ) -> RoundSynthesis:
        """Cluster one round's expert responses into a ``RoundSynthesis``.

        An empty round is synthesized locally (no clusters, average confidence
        0.0) without calling the generation service.

        Raises:
            OrchestratorError: If generation fails or its output is not a JSON object.
        """
        contrarian_responses = contrarian_responses or []
        if not expert_responses:
            logger.warning("Round %d has no expert responses; synthesizing an empty round", round_number)
            return RoundSynthesis(
                round_number=round_number,
                clusters=[],
                consensus_areas=[],
                divergence_areas=[],
                average_confidence=0.0,
                participation_count=0,
                key_insights=[],
            )

        logger.info("Synthesizing round %d with %d expert responses", round_number, len(expert_responses))
        average_confidence = sum(r.confidence for r in expert_responses) / len(expert_responses)

        request = self._client.build_request(
            [
                {"role": "system", "content": self._prompts.orchestrator_system},
                {
                    "role": "user",
                    "content": build_synthesis_prompt(round_number, expert_responses, contrarian_responses),
                },
            ],
            self._sampling,
        )
        try:
            result = await self._client.complete(
                request, tag=RequestTag(agent_type="orchestrator", round_number=round_number)
            )
            data = extract_json_object(result.content)
        except (GenerationError, JSONExtractionError) as exc:
            raise OrchestratorError(f"Failed to synthesize round {round_number}: {exc}") from exc

        synthesis = RoundSynthesis(
            round_number=round_number,
            clusters=process_clusters(data.get("clusters"), expert_responses),
            consensus_areas=_string_list(data.get("consensus_areas")),
            divergence_areas=_string_list(data.get("divergence_areas")),
            average_confidence=average_confidence,
            participation_count=len(expert_responses),
            key_insights=_string_list(data.get("key_insights")),
        )
        logger.info(
            "Round %d synthesis: %d clusters, %d consensus areas",
            round_number, len(synthesis.clusters), len(synthesis.consensus_areas),
        )
        return synthesis

    async def summarize_consensus(self, synthesis: RoundSynthesis) -> ConsensusSummary:
        """Summarize the final synthesis, falling back to a fixed summary on any failure."""
        request = self._client.build_request(
            [
                {"role": "system", "content": self._prompts.consensus_system},
                {
                    "role": "user",
                    "content": render_consensus_prompt(
                        self._prompts, json.dumps(asdict(synthesis), indent=2)
                    ),
                },
            ],
            self._consensus_sampling,
        )
        try:
            result = await self._client.complete(request, tag=RequestTag(agent_type="consensus"))
            data = extract_json_object(result.content)
        except (GenerationError, JSONExtractionError) as exc:
            logger.warning("Consensus summary unavailable, using fallback: %s", exc)
            return fallback_consensus(synthesis)

        validation = validate_consensus_summary(data)
        if not validation.ok:
            logger.warning("Consensus summary malformed, using fallback: %s", "; ".join(validation.errors))
            return fallback_consensus(synthesis)

        summary = validation.value
        summary.key_evidence = sanitize_citations(data.get("key_evidence"))
        return summary

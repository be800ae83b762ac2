"""Delphi process: personas, bounded round loop, early exit, final report."""

import asyncio
import logging
import math
import random
from collections.abc import Awaitable, Callable, Iterable
from datetime import datetime
from typing import TypeVar

from config.config_loader import AppConfig
from delphi.agents.contrarian import ContrarianAgent, ContrarianAgentError
from delphi.agents.expert import ExpertAgent, ExpertAgentError, agent_config_from_persona
from delphi.agents.orchestrator import (
    OrchestratorAgent,
    OrchestratorError,
    format_synthesis_for_review,
    identify_dominant_clusters,
)
from delphi.agents.persona import PersonaGenerationError, PersonaGenerator
from delphi.convergence import ConvergenceError, ConvergenceTracker
from delphi.models import (
    ContrarianResponse,
    DelphiPrompt,
    DelphiReport,
    DissentingView,
    ExpertResponse,
    FailedExpert,
    RoundResult,
    RoundSynthesis,
)
from delphi.prompts import render_shared_research_query
from delphi.providers.base import SearchError
from delphi.providers.generation import StructuredGenerationClient
from delphi.providers.search import SearchClient
from delphi.request_log import AgentRequestLog, use_request_log

logger = logging.getLogger(__name__)

T = TypeVar("T")

MAX_CONTRARIANS = 2


class DelphiProcessError(Exception):
    """Raised when a run aborts. No report is produced."""


async def gather_or_cancel(coros: Iterable[Awaitable[T]]) -> list[T]:
    """Await ``coros`` concurrently. If one raises, cancel the rest before re-raising."""
    tasks = [asyncio.ensure_future(c) for c in coros]
    try:
        return list(await asyncio.gather(*tasks))
    except Exception:
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        raise


def contrarian_count(expert_count: int) -> int:
    return min(MAX_CONTRARIANS, math.ceil(expert_count / 3))


def identify_dissenting_views(
    synthesis: RoundSynthesis, responses: list[ExpertResponse]
) -> list[DissentingView]:
    """Responses whose expert is outside the largest cluster.

    Ties for the largest cluster go to the first one listed. With no clusters
    at all there is no consensus to dissent from, so the result is empty.
    """
    if not synthesis.clusters:
        return []
    largest = max(synthesis.clusters, key=lambda c: len(c.expert_ids))
    members = set(largest.expert_ids)
    return [
        DissentingView(
            position=response.position,
            expert_ids=[response.agent_id],
            reasoning=response.reasoning,
            sources=list(response.sources),
        )
        for response in responses
        if response.agent_id not in members
    ]


def format_shared_research(content: str, citations: list) -> str:
    text = content.strip()
    if citations:
        sources = "\n".join(f"- {c.title}: {c.url}" for c in citations)
        text += f"\n\nSources:\n{sources}"
    return text


class DelphiProcess:
    """Runs one or more independent Delphi studies against shared service clients.

    Each ``run`` builds its own agents and tracker. Concurrent runs share the
    clients, so each should pass its own ``request_log`` to ``run``.
    """

    def __init__(
        self,
        config: AppConfig,
        client: StructuredGenerationClient,
        search: SearchClient,
        rng: random.Random | None = None,
    ) -> None:
        self._config = config
        self._client = client
        self._search = search
        self._rng = rng or random.Random()
        generation = config.generation
        self._persona_generator = PersonaGenerator(
            client, config.prompts, generation.sampling_for("persona")
        )
        self._orchestrator = OrchestratorAgent(
            client,
            config.prompts,
            generation.sampling_for("orchestrator"),
            generation.sampling_for("consensus"),
        )

    def _build_experts(self, personas) -> list[ExpertAgent]:
        sampling = self._config.generation.sampling_for("expert")
        return [
            ExpertAgent(self._client, self._search, agent_config_from_persona(p), self._config.prompts, sampling)
            for p in personas
        ]

    def _build_contrarians(self, count: int) -> list[ContrarianAgent]:
        generation = self._config.generation
        return [
            ContrarianAgent(
                self._client,
                self._search,
                self._config.prompts,
                generation.sampling_for("contrarian_draft"),
                generation.sampling_for("contrarian"),
                rng=random.Random(self._rng.random()),
            )
            for _ in range(count)
        ]

    async def _shared_research(self, prompt: DelphiPrompt, round_number: int) -> str | None:
        query = render_shared_research_query(self._config.prompts, prompt.question)
        try:
            result = await self._search.search(query)
        except SearchError as exc:
            logger.warning("Round %d shared research unavailable: %s", round_number, exc)
            return None
        if not result.content.strip():
            return None
        return format_shared_research(result.content, result.citations)

    async def _expert_turn(
        self,
        expert: ExpertAgent,
        prompt: DelphiPrompt,
        synthesis_context: str | None,
        round_number: int,
        shared_research: str | None,
        failed: list[FailedExpert],
    ) -> ExpertResponse | None:
        """Run one expert. Never raises ExpertAgentError; failures are recorded."""
        try:
            return await expert.respond(prompt, synthesis_context, round_number, shared_research)
        except ExpertAgentError as exc:
            logger.error("Expert %s failed in round %d: %s", expert.role, round_number, exc)
            failed.append(FailedExpert(role=expert.role, error=str(exc), round_number=round_number))
            return None

    async def _gather_experts(
        self,
        experts: list[ExpertAgent],
        prompt: DelphiPrompt,
        previous: RoundResult | None,
        round_number: int,
        failed: list[FailedExpert],
    ) -> list[ExpertResponse]:
        synthesis_context = format_synthesis_for_review(previous.synthesis) if previous else None
        shared_research = await self._shared_research(prompt, round_number)

        logger.info("Round %d: gathering %d expert responses", round_number, len(experts))
        results = await gather_or_cancel(
            self._expert_turn(e, prompt, synthesis_context, round_number, shared_research, failed)
            for e in experts
        )
        responses = [r for r in results if r is not None]
        logger.info("Round %d: %d/%d experts responded", round_number, len(responses), len(experts))
        return responses

    async def _challenge(
        self,
        contrarians: list[ContrarianAgent],
        synthesis: RoundSynthesis,
        round_number: int,
    ) -> list[ContrarianResponse]:
        dominant = identify_dominant_clusters(synthesis)
        if not dominant:
            logger.warning("Round %d: no dominant clusters to challenge", round_number)
            return []
        logger.info("Round %d: %d contrarians challenging %s", round_number, len(contrarians), dominant)
        return await gather_or_cancel(c.respond(synthesis, dominant, round_number) for c in contrarians)

    async def run(
        self,
        prompt: DelphiPrompt,
        expert_count: int | None = None,
        max_rounds: int | None = None,
        on_round_complete: Callable[[RoundResult], None] | None = None,
        request_log: AgentRequestLog | None = None,
    ) -> DelphiReport:
        """Run a full Delphi study and assemble its report.

        Args:
            prompt: The question, context and constraints.
            expert_count: Panel size. Defaults to the configured value.
            max_rounds: Round cap. Defaults to the configured value.
            on_round_complete: Optional callback invoked after each round.
            request_log: Log receiving this run's generation calls. Overrides any
                log attached to the shared client, so concurrent runs stay apart.

        Returns:
            The final DelphiReport. Nothing is written to disk here.

        Raises:
            DelphiProcessError: If persona generation, synthesis or a contrarian fails.
        """
        expert_count = expert_count or self._config.defaults.experts
        max_rounds = max_rounds or self._config.defaults.max_rounds
        if expert_count < 1 or max_rounds < 1:
            raise DelphiProcessError("expert_count and max_rounds must be positive")

        try:
            with use_request_log(request_log):
                return await self._run(prompt, expert_count, max_rounds, on_round_complete)
        except (PersonaGenerationError, OrchestratorError, ContrarianAgentError, ConvergenceError) as exc:
            logger.error("Delphi process failed: %s", exc)
            raise DelphiProcessError(f"Delphi process failed: {exc}") from exc

    async def _run(
        self,
        prompt: DelphiPrompt,
        expert_count: int,
        max_rounds: int,
        on_round_complete: Callable[[RoundResult], None] | None,
    ) -> DelphiReport:
        logger.info("Starting Delphi process: %d experts, max %d rounds", expert_count, max_rounds)
        personas = await self._persona_generator.generate(prompt.question, expert_count)
        experts = self._build_experts(personas)
        contrarians = self._build_contrarians(contrarian_count(expert_count))

        tracker = ConvergenceTracker()
        failed: list[FailedExpert] = []
        rounds: list[RoundResult] = []

        for round_number in range(1, max_rounds + 1):
            previous = rounds[-1] if rounds else None
            responses = await self._gather_experts(experts, prompt, previous, round_number, failed)
            synthesis = await self._orchestrator.synthesize_round(
                round_number, responses, previous.contrarian_responses if previous else []
            )
            tracker.add_round(synthesis, responses)

            stop = False
            if round_number >= 2:
                if tracker.has_converged():
                    logger.info("Convergence reached after round %d", round_number)
                    stop = True
                elif tracker.has_stable_divergence():
                    logger.info("Stable divergence detected after round %d", round_number)
                    stop = True

            contrarian_responses = [] if stop else await self._challenge(contrarians, synthesis, round_number)
            result = RoundResult(
                round_number=round_number,
                expert_responses=responses,
                synthesis=synthesis,
                contrarian_responses=contrarian_responses,
            )
            rounds.append(result)
            if on_round_complete:
                on_round_complete(result)

            if stop:
                break
            if round_number < max_rounds:
                await asyncio.sleep(self._config.defaults.round_pause_sec)
        else:
            logger.info("Round cap of %d reached", max_rounds)

        return await self._assemble_report(prompt, rounds, tracker, failed)

    async def _assemble_report(
        self,
        prompt: DelphiPrompt,
        rounds: list[RoundResult],
        tracker: ConvergenceTracker,
        failed: list[FailedExpert],
    ) -> DelphiReport:
        final = rounds[-1]
        metrics = tracker.calculate_metrics()
        consensus = await self._orchestrator.summarize_consensus(final.synthesis)
        return DelphiReport(
            prompt=prompt,
            consensus_summary=consensus,
            expert_positions=list(final.expert_responses),
            contrarian_observations=[c for r in rounds for c in r.contrarian_responses],
            dissenting_views=identify_dissenting_views(final.synthesis, final.expert_responses),
            convergence_analysis=metrics,
            round_history=tracker.round_history(),
            generated_at=datetime.now(),
            failed_experts=list(failed),
        )

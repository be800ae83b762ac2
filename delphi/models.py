"""Dataclasses for the Delphi consensus pipeline. Serialization helpers only, no I/O."""

from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class TerminationReason(str, Enum):
    CONSENSUS_REACHED = "consensus_reached"
    MAX_ROUNDS = "max_rounds"
    DIVERGENCE_STABLE = "divergence_stable"


@dataclass
class DelphiPrompt:
    question: str
    context: str | None = None
    constraints: list[str] = field(default_factory=list)


@dataclass
class Citation:
    title: str
    url: str
    date: str | None = None
    relevance: str | None = None


@dataclass
class SearchResult:
    title: str
    url: str
    summary: str
    date: str | None = None
    relevance_score: float | None = None


@dataclass
class SearchResponse:
    content: str
    citations: list[Citation] = field(default_factory=list)
    search_results: list[SearchResult] = field(default_factory=list)


@dataclass
class PersonaSpec:
    name: str
    role: str
    domain_expertise: str
    perspective: str
    work_background: str
    education_history: str
    justification: str
    description: str


@dataclass
class AgentConfig:
    role: str
    expertise_areas: list[str]
    perspective: str
    bias_instructions: str = ""


@dataclass
class ExpertResponse:
    position: str
    reasoning: str
    confidence: float      # 1-10 inclusive
    sources: list[Citation]
    expertise_area: str
    agent_id: str          # stable across rounds for the same expert


@dataclass
class CounterEvidence:
    title: str
    url: str
    summary: str


@dataclass
class ContrarianResponse:
    critique: str
    alternative_framework: str
    blind_spots: list[str]
    agent_id: str
    counter_evidence: list[CounterEvidence] | None = None


@dataclass
class ExpertCluster:
    theme: str
    positions: list[str]
    expert_ids: list[str]
    confidence_range: tuple[float, float]
    supporting_sources: list[Citation] = field(default_factory=list)


@dataclass
class RoundSynthesis:
    round_number: int
    clusters: list[ExpertCluster]
    consensus_areas: list[str]
    divergence_areas: list[str]
    average_confidence: float
    participation_count: int
    key_insights: list[str]


@dataclass
class ConvergenceMetrics:
    position_stability: float
    confidence_spread: float
    consensus_clarity: float
    citation_overlap: float
    rounds_completed: int
    termination_reason: TerminationReason


@dataclass
class ConsensusSummary:
    final_position: str
    support_level: str     # e.g. "4 of 5 experts support"
    confidence_level: float
    key_evidence: list[Citation] = field(default_factory=list)


@dataclass
class DissentingView:
    position: str
    expert_ids: list[str]
    reasoning: str
    sources: list[Citation]


@dataclass
class FailedExpert:
    role: str
    error: str
    round_number: int


@dataclass
class RoundResult:
    round_number: int
    expert_responses: list[ExpertResponse]
    synthesis: RoundSynthesis
    contrarian_responses: list[ContrarianResponse] = field(default_factory=list)


@dataclass
class DelphiReport:
    prompt: DelphiPrompt
    consensus_summary: ConsensusSummary
    expert_positions: list[ExpertResponse]          # final round only
    contrarian_observations: list[ContrarianResponse]  # all rounds
    dissenting_views: list[DissentingView]
    convergence_analysis: ConvergenceMetrics
    round_history: list[RoundSynthesis]
    generated_at: datetime
    failed_experts: list[FailedExpert] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        """Return a JSON-ready dict; ``generated_at`` becomes an ISO-8601 string."""
        data = asdict(self)
        data["generated_at"] = self.generated_at.isoformat()
        data["convergence_analysis"]["termination_reason"] = self.convergence_analysis.termination_reason.value
        for rnd in data["round_history"]:
            for cluster in rnd["clusters"]:
                cluster["confidence_range"] = list(cluster["confidence_range"])
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "DelphiReport":
        prompt_raw = data["prompt"]
        summary_raw = data["consensus_summary"]
        metrics_raw = data["convergence_analysis"]
        return cls(
            prompt=DelphiPrompt(
                question=prompt_raw["question"],
                context=prompt_raw.get("context"),
                constraints=list(prompt_raw.get("constraints") or []),
            ),
            consensus_summary=ConsensusSummary(
                final_position=summary_raw["final_position"],
                support_level=summary_raw["support_level"],
                confidence_level=summary_raw["confidence_level"],
                key_evidence=[citation_from_dict(c) for c in summary_raw.get("key_evidence", [])],
            ),
            expert_positions=[expert_response_from_dict(r) for r in data["expert_positions"]],
            contrarian_observations=[contrarian_response_from_dict(r) for r in data["contrarian_observations"]],
            dissenting_views=[
                DissentingView(
                    position=d["position"],
                    expert_ids=list(d["expert_ids"]),
                    reasoning=d["reasoning"],
                    sources=[citation_from_dict(c) for c in d["sources"]],
                )
                for d in data["dissenting_views"]
            ],
            convergence_analysis=ConvergenceMetrics(
                position_stability=metrics_raw["position_stability"],
                confidence_spread=metrics_raw["confidence_spread"],
                consensus_clarity=metrics_raw["consensus_clarity"],
                citation_overlap=metrics_raw["citation_overlap"],
                rounds_completed=metrics_raw["rounds_completed"],
                termination_reason=TerminationReason(metrics_raw["termination_reason"]),
            ),
            round_history=[round_synthesis_from_dict(r) for r in data["round_history"]],
            generated_at=datetime.fromisoformat(data["generated_at"]),
            failed_experts=[FailedExpert(**f) for f in data.get("failed_experts", [])],
        )


def citation_from_dict(data: dict[str, Any]) -> Citation:
    return Citation(
        title=data["title"],
        url=data["url"],
        date=data.get("date"),
        relevance=data.get("relevance"),
    )


def expert_response_from_dict(data: dict[str, Any]) -> ExpertResponse:
    return ExpertResponse(
        position=data["position"],
        reasoning=data["reasoning"],
        confidence=data["confidence"],
        sources=[citation_from_dict(c) for c in data["sources"]],
        expertise_area=data["expertise_area"],
        agent_id=data["agent_id"],
    )


def contrarian_response_from_dict(data: dict[str, Any]) -> ContrarianResponse:
    evidence = data.get("counter_evidence")
    return ContrarianResponse(
        critique=data["critique"],
        alternative_framework=data["alternative_framework"],
        blind_spots=list(data["blind_spots"]),
        agent_id=data["agent_id"],
        counter_evidence=None if evidence is None else [CounterEvidence(**e) for e in evidence],
    )


def round_synthesis_from_dict(data: dict[str, Any]) -> RoundSynthesis:
    return RoundSynthesis(
        round_number=data["round_number"],
        clusters=[
            ExpertCluster(
                theme=c["theme"],
                positions=list(c["positions"]),
                expert_ids=list(c["expert_ids"]),
                confidence_range=(c["confidence_range"][0], c["confidence_range"][1]),
                supporting_sources=[citation_from_dict(s) for s in c.get("supporting_sources", [])],
            )
            for c in data["clusters"]
        ],
        consensus_areas=list(data["consensus_areas"]),
        divergence_areas=list(data["divergence_areas"]),
        average_confidence=data["average_confidence"],
        participation_count=data["participation_count"],
        key_insights=list(data["key_insights"]),
    )

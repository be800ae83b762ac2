"""Convergence metrics and the early-exit decisions of the round loop.

Every metric is recomputed from the full history on each call; the tracker
keeps no incremental state beyond the recorded rounds and responses.
"""

import logging
import math
from itertools import combinations

from delphi.models import ConvergenceMetrics, ExpertResponse, RoundSynthesis, TerminationReason

logger = logging.getLogger(__name__)

SIMILARITY_THRESHOLD = 0.70
MIN_WORD_LENGTH = 4

CLARITY_WEIGHT_AREAS = 0.4
CLARITY_WEIGHT_DOMINANCE = 0.3
CLARITY_WEIGHT_CONFIDENCE = 0.3


class ConvergenceError(Exception):
    """Raised when metrics are requested before any round was recorded."""


def _position_words(position: str) -> set[str]:
    return {word for word in position.lower().split() if len(word) >= MIN_WORD_LENGTH}


def position_similarity(previous: str, latest: str) -> float:
    """Share of significant words two positions have in common."""
    latest_words = _position_words(latest)
    previous_words = _position_words(previous)
    if not latest_words and not previous_words:
        return 1.0 if latest.strip().lower() == previous.strip().lower() else 0.0
    overlap = latest_words & previous_words
    return len(overlap) / max(len(latest_words), len(previous_words))


class ConvergenceTracker:
    def __init__(self) -> None:
        self._rounds: list[RoundSynthesis] = []
        self._expert_histories: dict[str, list[ExpertResponse]] = {}

    def add_round(self, synthesis: RoundSynthesis, expert_responses: list[ExpertResponse]) -> None:
        self._rounds.append(synthesis)
        for response in expert_responses:
            self._expert_histories.setdefault(response.agent_id, []).append(response)

    @property
    def rounds_recorded(self) -> int:
        return len(self._rounds)

    def round_history(self) -> list[RoundSynthesis]:
        return list(self._rounds)

    def expert_evolution(self, agent_id: str) -> list[ExpertResponse]:
        return list(self._expert_histories.get(agent_id, []))

    def _latest(self) -> RoundSynthesis:
        if not self._rounds:
            raise ConvergenceError("No rounds to analyze")
        return self._rounds[-1]

    def position_stability(self) -> float:
        if len(self._rounds) < 2:
            return 1.0
        eligible = 0
        stable = 0
        for history in self._expert_histories.values():
            if len(history) < 2:
                continue
            eligible += 1
            if position_similarity(history[-2].position, history[-1].position) > SIMILARITY_THRESHOLD:
                stable += 1
        return stable / eligible if eligible else 1.0

    def confidence_spread(self) -> float:
        """Population standard deviation of the latest round's cluster midpoints."""
        midpoints = [(low + high) / 2 for low, high in (c.confidence_range for c in self._latest().clusters)]
        if not midpoints:
            return 0.0
        mean = sum(midpoints) / len(midpoints)
        return math.sqrt(sum((m - mean) ** 2 for m in midpoints) / len(midpoints))

    def consensus_clarity(self) -> float:
        latest = self._latest()
        consensus = len(latest.consensus_areas)
        areas_ratio = consensus / max(1, consensus + len(latest.divergence_areas))
        largest = max((len(c.expert_ids) for c in latest.clusters), default=0)
        dominance_ratio = largest / max(1, latest.participation_count)
        confidence_ratio = latest.average_confidence / 10
        return (
            CLARITY_WEIGHT_AREAS * areas_ratio
            + CLARITY_WEIGHT_DOMINANCE * dominance_ratio
            + CLARITY_WEIGHT_CONFIDENCE * confidence_ratio
        )

    def citation_overlap(self) -> float:
        """Fraction of expert pairs whose latest responses share at least one URL."""
        self._latest()
        url_sets = [
            {source.url for source in history[-1].sources}
            for history in self._expert_histories.values()
            if history
        ]
        if len(url_sets) < 2:
            return 1.0
        pairs = list(combinations(url_sets, 2))
        overlapping = sum(1 for first, second in pairs if first & second)
        return overlapping / len(pairs)

    def calculate_metrics(self) -> ConvergenceMetrics:
        """Compute all metrics from the recorded history.

        Raises:
            ConvergenceError: If no round has been recorded.
        """
        self._latest()
        stability = self.position_stability()
        spread = self.confidence_spread()
        clarity = self.consensus_clarity()

        if clarity > 0.8 and stability > 0.8 and spread < 1.5:
            reason = TerminationReason.CONSENSUS_REACHED
        elif stability > 0.9 and clarity < 0.5:
            reason = TerminationReason.DIVERGENCE_STABLE
        else:
            reason = TerminationReason.MAX_ROUNDS

        return ConvergenceMetrics(
            position_stability=stability,
            confidence_spread=spread,
            consensus_clarity=clarity,
            citation_overlap=self.citation_overlap(),
            rounds_completed=len(self._rounds),
            termination_reason=reason,
        )

    # The early-exit thresholds below are tuned separately from the labels
    # assigned in calculate_metrics, so the two may disagree.

    def has_converged(self) -> bool:
        if len(self._rounds) < 2:
            return False
        metrics = self.calculate_metrics()
        converged = (
            metrics.position_stability > 0.8
            and metrics.consensus_clarity > 0.75
            and metrics.confidence_spread < 2.0
        )
        if converged:
            logger.info(
                "Convergence detected: stability=%.2f clarity=%.2f spread=%.2f",
                metrics.position_stability, metrics.consensus_clarity, metrics.confidence_spread,
            )
        return converged

    def has_stable_divergence(self) -> bool:
        if len(self._rounds) < 2:
            return False
        metrics = self.calculate_metrics()
        diverged = metrics.position_stability > 0.9 and metrics.consensus_clarity < 0.4
        if diverged:
            logger.info(
                "Stable divergence detected: stability=%.2f clarity=%.2f",
                metrics.position_stability, metrics.consensus_clarity,
            )
        return diverged

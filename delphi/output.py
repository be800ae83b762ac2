"""Rich console output and report files (Markdown, JSON, agent log)."""

import json
import logging
import re
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

from rich.console import Console
from rich.markdown import Markdown
from rich.panel import Panel
from rich.rule import Rule
from rich.table import Table
from rich.text import Text

from delphi.models import DelphiReport, RoundResult
from delphi.request_log import AgentRequestLog

logger = logging.getLogger(__name__)

console = Console(legacy_windows=False)

_SLUG_MAX_LEN = 50


def _slug(text: str, max_len: int = _SLUG_MAX_LEN) -> str:
    """Lowercase, keep only ASCII letters, digits and spaces, hyphenate spaces."""
    slug = re.sub(r"[^a-z0-9\s]", "", text.lower())
    slug = re.sub(r"\s+", "-", slug)
    return slug[:max_len]


def report_basename(question: str, timestamp: datetime) -> str:
    stamp = re.sub(r"[:.]", "-", timestamp.isoformat()[:19])
    return f"delphi-report-{stamp}-{_slug(question)}"


@dataclass
class ReportPaths:
    markdown: Path
    json: Path
    agent_log: Path | None = None


def _percent(value: float) -> str:
    return f"{value * 100:.1f}%"


def render_markdown(report: DelphiReport) -> str:
    summary = report.consensus_summary
    metrics = report.convergence_analysis
    lines: list[str] = [
        "# Delphi Consensus Report",
        "",
        f"**Generated:** {report.generated_at.isoformat()}",
        "",
        f"**Question:** {report.prompt.question}",
        "",
    ]
    if report.prompt.context:
        lines += [f"**Context:** {report.prompt.context}", ""]
    if report.prompt.constraints:
        lines += ["**Constraints:**", *(f"- {c}" for c in report.prompt.constraints), ""]

    lines += [
        "## Consensus Summary",
        "",
        f"**Final Position:** {summary.final_position}",
        "",
        f"**Support Level:** {summary.support_level}",
        "",
        f"**Confidence Level:** {summary.confidence_level:.1f}/10",
        "",
    ]
    if summary.key_evidence:
        lines += ["**Key Evidence:**", *(f"- [{c.title}]({c.url})" for c in summary.key_evidence), ""]

    lines += [
        "## Convergence Analysis",
        "",
        f"- **Rounds Completed:** {metrics.rounds_completed}",
        f"- **Position Stability:** {_percent(metrics.position_stability)}",
        f"- **Consensus Clarity:** {_percent(metrics.consensus_clarity)}",
        f"- **Confidence Spread:** {metrics.confidence_spread:.2f}",
        f"- **Citation Overlap:** {_percent(metrics.citation_overlap)}",
        f"- **Termination Reason:** {metrics.termination_reason.value.replace('_', ' ')}",
        "",
        "## Expert Positions",
        "",
    ]
    for index, expert in enumerate(report.expert_positions, start=1):
        lines += [
            f"### Expert {index}: {expert.expertise_area}",
            "",
            f"**Position:** {expert.position}",
            "",
            f"**Confidence:** {expert.confidence}/10",
            "",
            f"**Reasoning:** {expert.reasoning}",
            "",
            "**Sources:**",
        ]
        for source in expert.sources:
            entry = f"- [{source.title}]({source.url})"
            if source.relevance:
                entry += f" - {source.relevance}"
            lines.append(entry)
        lines.append("")

    if report.contrarian_observations:
        lines += ["## Contrarian Observations", ""]
        for index, contrarian in enumerate(report.contrarian_observations, start=1):
            lines += [
                f"### Contrarian Challenge {index}",
                "",
                f"**Critique:** {contrarian.critique}",
                "",
                f"**Alternative Framework:** {contrarian.alternative_framework}",
                "",
                "**Blind Spots Identified:**",
                *(f"- {spot}" for spot in contrarian.blind_spots),
                "",
            ]
            if contrarian.counter_evidence:
                lines += [
                    "**Counter-Evidence:**",
                    *(f"- [{e.title}]({e.url}): {e.summary}" for e in contrarian.counter_evidence),
                    "",
                ]

    if report.dissenting_views:
        lines += ["## Dissenting Views", ""]
        for index, dissent in enumerate(report.dissenting_views, start=1):
            lines += [
                f"### Dissenting Position {index}",
                "",
                f"**Position:** {dissent.position}",
                "",
                f"**Reasoning:** {dissent.reasoning}",
                "",
                "**Supporting Sources:**",
                *(f"- [{s.title}]({s.url})" for s in dissent.sources),
                "",
            ]

    if report.failed_experts:
        lines += ["## Failed Experts", ""]
        lines += [f"- Round {f.round_number}, {f.role}: {f.error}" for f in report.failed_experts]
        lines.append("")

    lines += ["## Round History", ""]
    for rnd in report.round_history:
        lines += [
            f"### Round {rnd.round_number}",
            "",
            f"- **Participation:** {rnd.participation_count} experts",
            f"- **Average Confidence:** {rnd.average_confidence:.1f}/10",
            f"- **Clusters:** {len(rnd.clusters)}",
            f"- **Consensus Areas:** {len(rnd.consensus_areas)}",
            f"- **Divergence Areas:** {len(rnd.divergence_areas)}",
            "",
        ]
    return "\n".join(lines)


def save_report(
    report: DelphiReport,
    output_dir: Path,
    request_log: AgentRequestLog | None = None,
) -> ReportPaths:
    """Write the report as Markdown and JSON, plus the agent request log if given.

    Returns:
        Paths of the written files.
    """
    output_dir.mkdir(parents=True, exist_ok=True)
    base = report_basename(report.prompt.question, report.generated_at)

    md_path = output_dir / f"{base}.md"
    md_path.write_text(render_markdown(report), encoding="utf-8")

    json_path = output_dir / f"{base}.json"
    json_path.write_text(json.dumps(report.to_dict(), indent=2), encoding="utf-8")

    paths = ReportPaths(markdown=md_path, json=json_path)
    if request_log is not None:
        paths.agent_log = request_log.save(output_dir / f"{base}-agent-log.json")

    logger.info("Report saved to: %s", md_path)
    logger.info("Data saved to: %s", json_path)
    return paths


def print_round_summary(result: RoundResult) -> None:
    """Print a brief summary of one completed round."""
    synthesis = result.synthesis
    console.print(Rule(f"[bold cyan]Round {result.round_number} Summary[/bold cyan]"))
    console.print(
        Text(
            f"Experts: {synthesis.participation_count} | "
            f"Avg confidence: {synthesis.average_confidence:.1f}/10 | "
            f"Clusters: {len(synthesis.clusters)} | "
            f"Contrarian challenges: {len(result.contrarian_responses)}",
            style="dim",
        )
    )
    for cluster in synthesis.clusters:
        low, high = cluster.confidence_range
        console.print(
            Panel(
                "\n".join(cluster.positions[:2]),
                title=f"[bold]{cluster.theme}[/bold]",
                subtitle=f"{len(cluster.expert_ids)} experts, confidence {low}-{high}",
                border_style="dim",
            )
        )


def print_report(report: DelphiReport, paths: ReportPaths | None = None) -> None:
    """Print the consensus summary and convergence metrics."""
    summary = report.consensus_summary
    metrics = report.convergence_analysis
    console.print(Rule("[bold green]Delphi Consensus[/bold green]"))
    console.print(Markdown(f"**Final position:** {summary.final_position}"))
    console.print(
        Text(
            f"Support: {summary.support_level} | Confidence: {summary.confidence_level:.1f}/10",
            style="dim",
        )
    )

    table = Table(title="Convergence", show_header=True, header_style="bold")
    table.add_column("Metric")
    table.add_column("Value", justify="right")
    table.add_row("Rounds completed", str(metrics.rounds_completed))
    table.add_row("Position stability", _percent(metrics.position_stability))
    table.add_row("Consensus clarity", _percent(metrics.consensus_clarity))
    table.add_row("Confidence spread", f"{metrics.confidence_spread:.2f}")
    table.add_row("Citation overlap", _percent(metrics.citation_overlap))
    table.add_row("Termination reason", metrics.termination_reason.value.replace("_", " "))
    console.print(table)

    if report.dissenting_views:
        console.print(f"[yellow]{len(report.dissenting_views)} dissenting view(s) recorded[/yellow]")
    if report.failed_experts:
        console.print(f"[red]{len(report.failed_experts)} expert failure(s) recorded[/red]")
    if paths is not None:
        console.print(f"\n[green]Report saved to:[/green] {paths.markdown}")
        console.print(f"[green]Data saved to:[/green] {paths.json}")
        if paths.agent_log is not None:
            console.print(f"[green]Agent log saved to:[/green] {paths.agent_log}")

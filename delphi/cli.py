"""Click CLI: loads config, checks services, runs the Delphi process, saves the report."""

import asyncio
import logging
import sys
import time
from pathlib import Path

import click
from dotenv import load_dotenv
from rich.console import Console
from rich.logging import RichHandler
from rich.progress import Progress, SpinnerColumn, TextColumn, TimeElapsedColumn

from config.config_loader import AppConfig, ConfigError, load_config
from delphi.healthcheck import run_health_checks
from delphi.models import DelphiPrompt, DelphiReport, RoundResult
from delphi.output import ReportPaths, print_report, print_round_summary, save_report
from delphi.process import DelphiProcess, DelphiProcessError
from delphi.providers.base import ServiceClient
from delphi.providers.generation import StructuredGenerationClient
from delphi.providers.search import SearchClient
from delphi.question_file import QuestionFileError, parse_question_file
from delphi.registry import RunRegistry, RunStatus
from delphi.request_log import AgentRequestLog

logger = logging.getLogger(__name__)

console = Console(legacy_windows=False)

MIN_EXPERTS, MAX_EXPERTS = 3, 10
MIN_ROUNDS, MAX_ROUNDS = 1, 5


def _setup_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(message)s",
        handlers=[RichHandler(rich_tracebacks=True, show_path=False)],
    )
    # The SDK's HTTP client is chatty at INFO.
    logging.getLogger("httpx").setLevel(logging.WARNING)


def clamp_setting(name: str, value: int, low: int, high: int) -> int:
    """Clamp ``value`` to [low, high], warning when it changes."""
    clamped = max(low, min(high, value))
    if clamped != value:
        logger.warning("%s=%d is outside [%d, %d]; using %d", name, value, low, high, clamped)
    return clamped


def _build_clients(config: AppConfig) -> tuple[StructuredGenerationClient, SearchClient]:
    """Raises ConfigError when an API key is missing."""
    return (
        StructuredGenerationClient(config.generation),
        SearchClient(config.search),
    )


class ServiceCheckError(Exception):
    """Raised when a service fails the pre-run health check."""


async def _check_services(clients: list[ServiceClient]) -> bool:
    """Run health checks and print OK/FAIL per service. Returns True when all pass."""
    console.print("\n[bold]Checking services...[/bold]")
    results: dict[str, tuple[bool, str]] = await run_health_checks(clients)
    all_ok = True
    for name in sorted(results):
        ok, err = results[name]
        if ok:
            console.print(f"  [green]OK  [/green] {name}")
        else:
            short_err = err.splitlines()[0][:120] if err else "unknown error"
            console.print(f"  [red]FAIL[/red] {name}: {short_err}")
            all_ok = False
    console.print()
    return all_ok


def _prompt_interactively(config: AppConfig) -> tuple[DelphiPrompt, int, int]:
    question = click.prompt("Question").strip()
    context = click.prompt("Context (optional)", default="", show_default=False).strip()
    experts = click.prompt("Number of experts", default=config.defaults.experts, type=int)
    rounds = click.prompt("Maximum rounds", default=config.defaults.max_rounds, type=int)
    return DelphiPrompt(question=question, context=context or None), experts, rounds


async def _run_single(
    prompt: DelphiPrompt,
    config: AppConfig,
    client: StructuredGenerationClient,
    search: SearchClient,
    request_log: AgentRequestLog,
    registry: RunRegistry,
    experts: int,
    rounds: int,
    output_dir: Path,
    check_services: bool = True,
) -> tuple[DelphiReport, ReportPaths]:
    """Run one Delphi study and save its artifacts. Nothing is written unless it completes.

    Raises:
        ServiceCheckError: If ``check_services`` is set and a service is down.
        DelphiProcessError: If the run aborts.
        OSError: If the report cannot be written to ``output_dir``.
    """
    if check_services:
        if not await _check_services([client, search]):
            raise ServiceCheckError("Service health check failed. Check API keys in .env.")

    record = registry.create(prompt.question, asyncio.current_task())
    process = DelphiProcess(config, client, search)

    console.print(f"\n[bold cyan]Delphi[/bold cyan]: {experts} experts, up to {rounds} rounds")
    console.print(f"Question: [italic]{prompt.question[:80]}{'...' if len(prompt.question) > 80 else ''}[/italic]\n")

    start = time.monotonic()
    completed: list[RoundResult] = []
    try:
        with Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            TimeElapsedColumn(),
            console=console,
            transient=True,
        ) as progress:

            def on_round_complete(result: RoundResult) -> None:
                completed.append(result)
                progress.print(
                    f"[green]OK[/green] Round {result.round_number} complete "
                    f"({result.synthesis.participation_count} experts, "
                    f"{len(result.synthesis.clusters)} clusters)"
                )

            progress.add_task("Running Delphi rounds...", total=None)
            report = await process.run(
                prompt, experts, rounds, on_round_complete=on_round_complete, request_log=request_log
            )
    except DelphiProcessError as exc:
        registry.mark_failed(record.run_id, str(exc))
        raise
    except asyncio.CancelledError:
        # RunRegistry.cancel marks the record itself before cancelling the task.
        if registry.get(record.run_id).status is RunStatus.RUNNING:
            registry.mark_cancelled(record.run_id)
        raise

    for result in completed:
        print_round_summary(result)

    try:
        paths = save_report(report, output_dir, request_log)
    except OSError as exc:
        registry.mark_failed(record.run_id, f"Could not save report: {exc}")
        raise
    registry.mark_completed(record.run_id, paths.markdown)
    logger.info("Run %s finished in %.1fs", record.run_id, time.monotonic() - start)
    return report, paths


@click.command()
@click.argument("question", required=False)
@click.option("--context", default=None, help="Background context for the question")
@click.option("--constraint", "constraints", multiple=True, help="Constraint for the panel (repeatable)")
@click.option("--file", "question_file", type=click.Path(exists=True, dir_okay=False),
              help="Read the question from a .md file (front matter: context, constraints, experts, rounds)")
@click.option("--experts", default=None, type=int, help="Number of experts, 3-10 (default: from config)")
@click.option("--rounds", default=None, type=int, help="Maximum rounds, 1-5 (default: from config)")
@click.option("--output", "output_path", default=None, help="Output directory (default: from config)")
@click.option("--interactive", is_flag=True, default=False, help="Prompt for the question and settings")
@click.option("--health-check", "health_check_only", is_flag=True, default=False,
              help="Check API connectivity and exit")
@click.option("--skip-health-check", is_flag=True, default=False,
              help="Skip the API connectivity check at startup")
@click.option("--verbose", is_flag=True, help="Enable DEBUG-level logging")
def main(
    question: str | None,
    context: str | None,
    constraints: tuple[str, ...],
    question_file: str | None,
    experts: int | None,
    rounds: int | None,
    output_path: str | None,
    interactive: bool,
    health_check_only: bool,
    skip_health_check: bool,
    verbose: bool,
) -> None:
    """Delphi -- multi-round AI expert consensus.

    \b
    Examples:
      delphi "Will remote work remain dominant by 2030?"
      delphi "Best carbon pricing design?" --experts 6 --rounds 3
      delphi --file question.md --context "EU market"
      delphi --interactive
      delphi --health-check
    """
    if sys.platform == "win32":
        if hasattr(sys.stdout, "reconfigure"):
            sys.stdout.reconfigure(encoding="utf-8", errors="replace")
        if hasattr(sys.stderr, "reconfigure"):
            sys.stderr.reconfigure(encoding="utf-8", errors="replace")

    load_dotenv()
    _setup_logging(verbose)

    try:
        config = load_config()
        client, search = _build_clients(config)
    except (FileNotFoundError, ConfigError) as exc:
        console.print(f"[bold red]Config error:[/bold red] {exc}")
        sys.exit(1)

    if health_check_only:
        sys.exit(0 if asyncio.run(_check_services([client, search])) else 1)

    file_experts = file_rounds = None
    if interactive:
        prompt, experts_in, rounds_in = _prompt_interactively(config)
        experts = experts if experts is not None else experts_in
        rounds = rounds if rounds is not None else rounds_in
    elif question_file:
        try:
            parsed = parse_question_file(Path(question_file))
        except QuestionFileError as exc:
            console.print(f"[bold red]Error:[/bold red] {exc}")
            sys.exit(1)
        prompt = parsed.prompt
        file_experts, file_rounds = parsed.experts, parsed.rounds
    elif question:
        prompt = DelphiPrompt(question=question)
    else:
        console.print("[bold red]Error:[/bold red] Provide a QUESTION argument, --file, or --interactive.")
        sys.exit(1)

    # CLI flags win over front matter, which wins over config defaults.
    if context:
        prompt.context = context
    if constraints:
        prompt.constraints = list(constraints)
    effective_experts = clamp_setting(
        "experts",
        next(v for v in (experts, file_experts, config.defaults.experts) if v is not None),
        MIN_EXPERTS, MAX_EXPERTS,
    )
    effective_rounds = clamp_setting(
        "rounds",
        next(v for v in (rounds, file_rounds, config.defaults.max_rounds) if v is not None),
        MIN_ROUNDS, MAX_ROUNDS,
    )
    effective_output = Path(output_path) if output_path else config.defaults.output_dir

    registry = RunRegistry()
    try:
        report, paths = asyncio.run(
            _run_single(
                prompt=prompt,
                config=config,
                client=client,
                search=search,
                request_log=AgentRequestLog(),
                registry=registry,
                experts=effective_experts,
                rounds=effective_rounds,
                output_dir=effective_output,
                check_services=not skip_health_check,
            )
        )
    except (ServiceCheckError, DelphiProcessError, OSError) as exc:
        console.print(f"[bold red]Error:[/bold red] {exc}")
        sys.exit(1)
    except KeyboardInterrupt:
        console.print("\n[yellow]Cancelled. No report was written.[/yellow]")
        sys.exit(1)

    print_report(report, paths)


if __name__ == "__main__":
    main()

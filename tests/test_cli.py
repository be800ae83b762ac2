"""Tests for delphi/cli.py: setting resolution, exit codes and run bookkeeping."""

import asyncio
import logging
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest
from click.testing import CliRunner

from config.config_loader import ConfigError
from delphi import cli
from delphi.process import DelphiProcessError
from delphi.registry import RunRegistry, RunStatus
from delphi.request_log import AgentRequestLog
from tests.conftest import ScriptedOpenAI, generation_client


@pytest.mark.parametrize(
    "value, expected",
    [(2, 3), (3, 3), (7, 7), (10, 10), (11, 10), (-4, 3)],
)
def test_clamp_setting(value, expected):
    assert cli.clamp_setting("experts", value, cli.MIN_EXPERTS, cli.MAX_EXPERTS) == expected


def test_clamp_setting_warns_only_when_clamping(caplog):
    with caplog.at_level(logging.WARNING, logger="delphi.cli"):
        cli.clamp_setting("rounds", 3, cli.MIN_ROUNDS, cli.MAX_ROUNDS)
        assert caplog.text == ""
        cli.clamp_setting("rounds", 9, cli.MIN_ROUNDS, cli.MAX_ROUNDS)
    assert "rounds=9 is outside [1, 5]; using 5" in caplog.text


@pytest.fixture
def patched_cli(monkeypatch, app_config):
    """Replace config loading, client construction and the run itself."""
    client, search = MagicMock(), MagicMock()
    run_single = AsyncMock(return_value=(MagicMock(), MagicMock()))
    monkeypatch.setattr(cli, "load_dotenv", lambda: None)
    monkeypatch.setattr(cli, "load_config", lambda: app_config)
    monkeypatch.setattr(cli, "_build_clients", lambda config: (client, search))
    monkeypatch.setattr(cli, "_run_single", run_single)
    monkeypatch.setattr(cli, "print_report", MagicMock())
    return run_single


def test_question_argument_runs_with_clamped_settings(patched_cli, app_config):
    result = CliRunner().invoke(cli.main, ["Will remote work last?", "--experts", "20", "--rounds", "0"])

    assert result.exit_code == 0, result.output
    kwargs = patched_cli.await_args.kwargs
    assert kwargs["prompt"].question == "Will remote work last?"
    assert kwargs["experts"] == 10
    assert kwargs["rounds"] == 1
    assert kwargs["output_dir"] == app_config.defaults.output_dir
    assert kwargs["check_services"] is True
    cli.print_report.assert_called_once()


def test_defaults_come_from_config(patched_cli, app_config):
    result = CliRunner().invoke(cli.main, ["Q?", "--skip-health-check", "--output", "reports"])

    assert result.exit_code == 0, result.output
    kwargs = patched_cli.await_args.kwargs
    assert kwargs["experts"] == app_config.defaults.experts
    assert kwargs["rounds"] == app_config.defaults.max_rounds
    assert kwargs["output_dir"] == Path("reports")
    assert kwargs["check_services"] is False


def test_context_and_constraints_options(patched_cli):
    result = CliRunner().invoke(
        cli.main, ["Q?", "--context", "EU market", "--constraint", "OECD only", "--constraint", "By 2030"]
    )
    assert result.exit_code == 0, result.output
    prompt = patched_cli.await_args.kwargs["prompt"]
    assert prompt.context == "EU market"
    assert prompt.constraints == ["OECD only", "By 2030"]


def test_question_file_settings_lose_to_flags(patched_cli, tmp_path):
    path = tmp_path / "q.md"
    path.write_text(
        "---\ncontext: From file\nconstraints: [File constraint]\nexperts: 4\nrounds: 2\n---\nFile question?\n",
        encoding="utf-8",
    )

    result = CliRunner().invoke(cli.main, ["--file", str(path), "--experts", "6", "--context", "From flag"])

    assert result.exit_code == 0, result.output
    kwargs = patched_cli.await_args.kwargs
    assert kwargs["prompt"].question == "File question?"
    assert kwargs["prompt"].context == "From flag"
    assert kwargs["prompt"].constraints == ["File constraint"]
    assert kwargs["experts"] == 6
    assert kwargs["rounds"] == 2


def test_bad_question_file_exits_1(patched_cli, tmp_path):
    path = tmp_path / "q.md"
    path.write_text("---\nexperts: lots\n---\nQ?\n", encoding="utf-8")

    result = CliRunner().invoke(cli.main, ["--file", str(path)])

    assert result.exit_code == 1
    assert "Error" in result.output
    patched_cli.assert_not_called()


def test_interactive_prompts(patched_cli):
    result = CliRunner().invoke(cli.main, ["--interactive"], input="Interactive question?\nSome context\n4\n2\n")

    assert result.exit_code == 0, result.output
    kwargs = patched_cli.await_args.kwargs
    assert kwargs["prompt"].question == "Interactive question?"
    assert kwargs["prompt"].context == "Some context"
    assert kwargs["experts"] == 4
    assert kwargs["rounds"] == 2


def test_missing_question_exits_1(patched_cli):
    result = CliRunner().invoke(cli.main, [])
    assert result.exit_code == 1
    assert "Provide a QUESTION" in result.output
    patched_cli.assert_not_called()


def test_config_error_exits_1(patched_cli, monkeypatch):
    def missing_key(config):
        raise ConfigError("Missing API key: set OPENAI_API_KEY")

    monkeypatch.setattr(cli, "_build_clients", missing_key)

    result = CliRunner().invoke(cli.main, ["Q?"])

    assert result.exit_code == 1
    assert "OPENAI_API_KEY" in result.output


@pytest.mark.parametrize(
    "error",
    [DelphiProcessError("Delphi process failed: boom"), cli.ServiceCheckError("down"), PermissionError("read-only")],
)
def test_run_errors_exit_1(patched_cli, error):
    patched_cli.side_effect = error
    result = CliRunner().invoke(cli.main, ["Q?"])
    assert result.exit_code == 1
    assert str(error) in result.output
    cli.print_report.assert_not_called()


def test_keyboard_interrupt_exits_1(patched_cli, monkeypatch):
    monkeypatch.setattr(cli, "_run_single", MagicMock(side_effect=KeyboardInterrupt))
    result = CliRunner().invoke(cli.main, ["Q?"])
    assert result.exit_code == 1
    assert "No report was written" in result.output


@pytest.mark.parametrize("healthy, code", [(True, 0), (False, 1)])
def test_health_check_only(patched_cli, monkeypatch, healthy, code):
    check = AsyncMock(return_value=healthy)
    monkeypatch.setattr(cli, "_check_services", check)

    result = CliRunner().invoke(cli.main, ["--health-check"])

    assert result.exit_code == code
    check.assert_awaited_once()
    patched_cli.assert_not_called()


async def test_check_services_reports_each_service(monkeypatch):
    monkeypatch.setattr(
        cli, "run_health_checks",
        AsyncMock(return_value={"openai": (True, ""), "perplexity": (False, "401 Unauthorized\ntrace")}),
    )
    assert await cli._check_services([MagicMock(), MagicMock()]) is False


# --- _run_single ---


def _run_kwargs(app_config, client, search, registry, tmp_path, **overrides):
    kwargs = dict(
        prompt=None,
        config=app_config,
        client=client,
        search=search,
        request_log=AgentRequestLog(),
        registry=registry,
        experts=3,
        rounds=2,
        output_dir=tmp_path / "out",
        check_services=False,
    )
    kwargs.update(overrides)
    return kwargs


async def test_run_single_saves_artifacts(app_config, prompts, mock_search, sample_prompt, tmp_path):
    log = AgentRequestLog()
    client = generation_client(app_config.generation, ScriptedOpenAI(prompts, expert_count=3))
    registry = RunRegistry()

    report, paths = await cli._run_single(
        **_run_kwargs(app_config, client, mock_search, registry, tmp_path, prompt=sample_prompt, request_log=log)
    )

    assert paths.markdown.exists()
    assert paths.json.exists()
    assert paths.agent_log.exists()
    assert len(log) > 0
    assert report.convergence_analysis.rounds_completed == 2
    (record,) = registry.records()
    assert record.status is RunStatus.COMPLETED
    assert record.report_path == paths.markdown


async def test_run_single_service_check_failure(app_config, mock_search, sample_prompt, tmp_path, monkeypatch):
    monkeypatch.setattr(
        cli, "run_health_checks",
        AsyncMock(return_value={"openai": (False, "Incorrect API key"), "perplexity": (True, "")}),
    )
    log = AgentRequestLog()
    client = MagicMock()
    registry = RunRegistry()

    with pytest.raises(cli.ServiceCheckError):
        await cli._run_single(
            **_run_kwargs(
                app_config, client, mock_search, registry, tmp_path,
                prompt=sample_prompt, request_log=log, check_services=True,
            )
        )

    assert len(log) == 0
    assert len(registry) == 0
    assert not (tmp_path / "out").exists()


async def test_run_single_marks_failed_run(app_config, mock_search, sample_prompt, tmp_path, monkeypatch):
    process = MagicMock()
    process.run = AsyncMock(side_effect=DelphiProcessError("Delphi process failed: boom"))
    monkeypatch.setattr(cli, "DelphiProcess", MagicMock(return_value=process))
    registry = RunRegistry()

    with pytest.raises(DelphiProcessError):
        await cli._run_single(
            **_run_kwargs(app_config, MagicMock(), mock_search, registry, tmp_path, prompt=sample_prompt)
        )

    (record,) = registry.records()
    assert record.status is RunStatus.FAILED
    assert "boom" in record.error
    assert not (tmp_path / "out").exists()


async def test_run_single_unwritable_output_marks_failed(app_config, prompts, mock_search, sample_prompt, tmp_path):
    blocker = tmp_path / "out"
    blocker.write_text("not a directory", encoding="utf-8")
    client = generation_client(app_config.generation, ScriptedOpenAI(prompts, expert_count=3))
    registry = RunRegistry()

    with pytest.raises(OSError):
        await cli._run_single(**_run_kwargs(app_config, client, mock_search, registry, tmp_path, prompt=sample_prompt))

    (record,) = registry.records()
    assert record.status is RunStatus.FAILED
    assert record.error.startswith("Could not save report")


async def test_cancelled_run_writes_nothing(app_config, mock_search, sample_prompt, tmp_path, monkeypatch):
    started = asyncio.Event()

    async def hang(*args, **kwargs):
        started.set()
        await asyncio.Event().wait()

    process = MagicMock()
    process.run = hang
    monkeypatch.setattr(cli, "DelphiProcess", MagicMock(return_value=process))
    registry = RunRegistry()

    task = asyncio.create_task(
        cli._run_single(**_run_kwargs(app_config, MagicMock(), mock_search, registry, tmp_path, prompt=sample_prompt))
    )
    await started.wait()
    (record,) = registry.active()

    assert registry.cancel(record.run_id) is True
    with pytest.raises(asyncio.CancelledError):
        await task

    assert record.status is RunStatus.CANCELLED
    assert record.task is task
    assert not (tmp_path / "out").exists()


async def test_task_cancellation_marks_record(app_config, mock_search, sample_prompt, tmp_path, monkeypatch):
    started = asyncio.Event()

    async def hang(*args, **kwargs):
        started.set()
        await asyncio.Event().wait()

    process = MagicMock()
    process.run = hang
    monkeypatch.setattr(cli, "DelphiProcess", MagicMock(return_value=process))
    registry = RunRegistry()

    task = asyncio.create_task(
        cli._run_single(**_run_kwargs(app_config, MagicMock(), mock_search, registry, tmp_path, prompt=sample_prompt))
    )
    await started.wait()
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    (record,) = registry.records()
    assert record.status is RunStatus.CANCELLED

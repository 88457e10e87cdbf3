"""Unit tests for the command-line interface."""

from __future__ import annotations

import argparse
from unittest.mock import AsyncMock, MagicMock

import pytest

from wikimirror.cli import sync as cli
from wikimirror.models.sync import PhaseReport, SyncPhase, SyncRunState
from wikimirror.utils.errors import ConfigurationError, UpstreamQueryError


class TestParser:
    def test_phase_commands(self) -> None:
        parser = cli._build_parser()

        args = parser.parse_args(["sync", "--limit", "5", "--no-resume", "-q"])
        assert args.command == "sync"
        assert args.limit == 5
        assert args.no_resume is True
        assert args.quiet is True

        args = parser.parse_args(["phase-b", "--run-id", "abc"])
        assert args.run_id == "abc"
        assert args.limit is None

    def test_phase_a_has_no_limit(self) -> None:
        with pytest.raises(SystemExit):
            cli._build_parser().parse_args(["phase-a", "--limit", "3"])

    def test_repair_flags(self) -> None:
        args = cli._build_parser().parse_args(["repair-boundaries", "--apply", "--tolerance", "1.5"])
        assert args.apply is True
        assert args.tolerance == 1.5

    def test_config_default(self) -> None:
        args = cli._build_parser().parse_args(["status"])
        assert args.config == "config/config.yaml"

    def test_phase_command_mapping(self) -> None:
        assert cli._PHASE_COMMANDS["phase-c"] == (SyncPhase.RECONCILIATION,)
        assert cli._PHASE_COMMANDS["sync"][-1] is SyncPhase.AGGREGATION


class TestFormatRun:
    def test_reports_and_errors(self) -> None:
        state = SyncRunState(
            run_id="r1",
            reports=[PhaseReport(phase=SyncPhase.CONTENT, processed=3, succeeded=2, failed=1, details={"deleted": 1})],
            errors=["RECONCILIATION: boom"],
        )
        text = cli._format_run(state)

        assert text.splitlines()[0] == "Run r1"
        assert "processed=3 succeeded=2 failed=1 skipped=0" in text
        assert "[deleted=1]" in text
        assert "ERROR RECONCILIATION: boom" in text


class TestMain:
    def test_no_command_exits_1(self, capsys: pytest.CaptureFixture[str]) -> None:
        with pytest.raises(SystemExit) as excinfo:
            cli.main([])
        assert excinfo.value.code == 1
        assert "usage" in capsys.readouterr().out

    @pytest.mark.parametrize("code", [0, 1])
    def test_exit_code_from_handler(self, monkeypatch: pytest.MonkeyPatch, code: int) -> None:
        monkeypatch.setattr(cli, "_dispatch", AsyncMock(return_value=code))
        with pytest.raises(SystemExit) as excinfo:
            cli.main(["status"])
        assert excinfo.value.code == code

    def test_phase_command_gets_run_id(self, monkeypatch: pytest.MonkeyPatch) -> None:
        dispatch = AsyncMock(return_value=0)
        monkeypatch.setattr(cli, "_dispatch", dispatch)
        with pytest.raises(SystemExit):
            cli.main(["phase-a"])
        (args,) = dispatch.await_args.args
        assert args.run_id

    def test_configuration_error_exits_1(
        self, monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]
    ) -> None:
        monkeypatch.setattr(cli, "_dispatch", AsyncMock(side_effect=ConfigurationError("bad db_path")))
        with pytest.raises(SystemExit) as excinfo:
            cli.main(["status"])
        assert excinfo.value.code == 1
        assert "Configuration error: bad db_path" in capsys.readouterr().err

    def test_pipeline_error_exits_1(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setattr(cli, "_dispatch", AsyncMock(side_effect=UpstreamQueryError("nope")))
        with pytest.raises(SystemExit) as excinfo:
            cli.main(["analyze"])
        assert excinfo.value.code == 1


class TestHandlers:
    @pytest.mark.asyncio
    async def test_phases_passes_flags(self) -> None:
        orchestrator = MagicMock()
        orchestrator.run = AsyncMock(return_value=SyncRunState(run_id="r1", errors=["CONTENT: x"]))
        args = argparse.Namespace(command="phase-b", run_id="r1", quiet=True, limit=7)

        code = await cli._handle_phases(args, {"orchestrator": orchestrator})

        assert code == 1
        kwargs = orchestrator.run.await_args.kwargs
        assert kwargs["phases"] == (SyncPhase.CONTENT,)
        assert kwargs["limit"] == 7
        assert kwargs["resume"] is True
        orchestrator.progress_tracker.register_listener.assert_not_called()

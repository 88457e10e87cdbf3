"""Unit tests for SyncOrchestrator with mocked phase services."""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock

import pytest
import structlog

from wikimirror.models.checkpoint import CheckpointKind
from wikimirror.models.page import utc_now
from wikimirror.models.stats import AggregationReport
from wikimirror.models.sync import PhaseReport, SyncPhase
from wikimirror.pipeline.progress_tracker import SyncProgressTracker
from wikimirror.pipeline.sync_orchestrator import SyncOrchestrator
from wikimirror.utils.errors import ConfigurationError, PipelineError, UpstreamQueryError


def _services() -> dict[str, MagicMock]:
    discovery = MagicMock()
    discovery.run = AsyncMock(return_value=PhaseReport(phase=SyncPhase.DISCOVERY, processed=3, succeeded=3))
    content = MagicMock()
    content.run = AsyncMock(return_value=PhaseReport(phase=SyncPhase.CONTENT, processed=2, succeeded=2))
    reconciliation = MagicMock()
    reconciliation.run = AsyncMock(
        return_value=PhaseReport(phase=SyncPhase.RECONCILIATION, processed=1, succeeded=1)
    )
    aggregation = MagicMock()
    now = utc_now()
    aggregation.run = AsyncMock(
        return_value=AggregationReport(users=4, pages=3, series=1, started_at=now, finished_at=now)
    )
    checkpoints = MagicMock()
    checkpoints.prune.return_value = 0
    return {
        "discovery": discovery,
        "content": content,
        "reconciliation": reconciliation,
        "aggregation": aggregation,
        "checkpoints": checkpoints,
    }


class TestSyncOrchestrator:
    @pytest.mark.asyncio
    async def test_runs_all_phases_in_order(self) -> None:
        services = _services()
        orchestrator = SyncOrchestrator(**services)

        state = await orchestrator.run(run_id="r1", limit=10, resume=False)

        assert [r.phase for r in state.reports] == [
            SyncPhase.DISCOVERY,
            SyncPhase.CONTENT,
            SyncPhase.RECONCILIATION,
            SyncPhase.AGGREGATION,
        ]
        assert state.current_phase is SyncPhase.DONE
        assert state.completed_at is not None
        assert state.failed is False
        services["discovery"].run.assert_awaited_once()
        assert services["discovery"].run.await_args.kwargs["resume"] is False
        assert services["content"].run.await_args.kwargs["limit"] == 10

    @pytest.mark.asyncio
    async def test_aggregation_report_is_summarised(self) -> None:
        orchestrator = SyncOrchestrator(**_services())
        state = await orchestrator.run(phases=[SyncPhase.AGGREGATION])

        (report,) = state.reports
        assert report.processed == 8
        assert report.details == {"users": 4, "pages": 3, "series": 1}

    @pytest.mark.asyncio
    async def test_subset_runs_in_canonical_order(self) -> None:
        services = _services()
        orchestrator = SyncOrchestrator(**services)

        state = await orchestrator.run(phases=[SyncPhase.RECONCILIATION, SyncPhase.DISCOVERY])

        assert [r.phase for r in state.reports] == [SyncPhase.DISCOVERY, SyncPhase.RECONCILIATION]

    @pytest.mark.asyncio
    async def test_phase_logs_carry_run_and_phase(self) -> None:
        services = _services()
        seen: list[dict] = []
        report = PhaseReport(phase=SyncPhase.CONTENT, processed=0)

        async def _content_run(**kwargs) -> PhaseReport:
            seen.append(structlog.contextvars.get_contextvars())
            return report

        services["content"].run = AsyncMock(side_effect=_content_run)
        orchestrator = SyncOrchestrator(**services)

        await orchestrator.run(phases=[SyncPhase.CONTENT], run_id="r9")

        assert seen == [{"run_id": "r9", "phase": SyncPhase.CONTENT.value}]
        assert "run_id" not in structlog.contextvars.get_contextvars()
        services["content"].run.assert_not_awaited()
        services["aggregation"].run.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_phase_error_recorded_and_run_continues(self) -> None:
        services = _services()
        services["content"].run.side_effect = UpstreamQueryError("broken", provider_name="mock")
        orchestrator = SyncOrchestrator(**services)

        state = await orchestrator.run()

        assert state.failed is True
        assert state.errors == ["CONTENT: [mock] broken"]
        assert [r.phase for r in state.reports] == [
            SyncPhase.DISCOVERY,
            SyncPhase.RECONCILIATION,
            SyncPhase.AGGREGATION,
        ]

    @pytest.mark.asyncio
    async def test_configuration_error_aborts(self) -> None:
        services = _services()
        services["discovery"].run.side_effect = ConfigurationError("bad")
        orchestrator = SyncOrchestrator(**services)

        with pytest.raises(ConfigurationError):
            await orchestrator.run()
        services["content"].run.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_done_is_not_runnable(self) -> None:
        orchestrator = SyncOrchestrator(**_services())
        with pytest.raises(PipelineError):
            await orchestrator.run(phases=[SyncPhase.DONE])
        with pytest.raises(PipelineError):
            await orchestrator.run(phases=[])

    @pytest.mark.asyncio
    async def test_checkpoints_pruned_after_checkpointing_phases(self) -> None:
        services = _services()
        orchestrator = SyncOrchestrator(**services, checkpoints_keep=3)

        await orchestrator.run()

        pruned = [c.args for c in services["checkpoints"].prune.call_args_list]
        assert pruned == [(CheckpointKind.PAGE_LISTING, 3), (CheckpointKind.VOTE_PROGRESS, 3)]

    @pytest.mark.asyncio
    async def test_progress_reaches_completion(self) -> None:
        tracker = SyncProgressTracker()
        listener = MagicMock()
        tracker.register_listener("r1", listener)
        orchestrator = SyncOrchestrator(**_services(), progress_tracker=tracker)

        await orchestrator.run(run_id="r1")

        status = tracker.get_status("r1")
        assert status["phase"] == SyncPhase.DONE.value
        assert status["progress"] == 100.0
        assert status["message"] == "sync complete"
        progress_values = [c.args[2] for c in listener.call_args_list]
        assert progress_values == sorted(progress_values)

    @pytest.mark.asyncio
    async def test_phase_progress_callback_scales_into_span(self) -> None:
        services = _services()
        tracker = SyncProgressTracker()
        orchestrator = SyncOrchestrator(**services, progress_tracker=tracker)

        async def _content_run(limit=None, on_progress=None) -> PhaseReport:
            await on_progress(5, 10)
            assert tracker.get_status("r1")["progress"] == pytest.approx(42.5)
            return PhaseReport(phase=SyncPhase.CONTENT)

        services["content"].run = AsyncMock(side_effect=_content_run)
        state = await orchestrator.run(phases=[SyncPhase.CONTENT], run_id="r1")
        assert state.failed is False

"""Central orchestrator for a sync run.

Runs the phases in their fixed, one-directional order::

    DISCOVERY (A) → CONTENT (B) → RECONCILIATION (C) → AGGREGATION

Each phase advances a frozen :class:`SyncRunState` via ``model_copy`` and
broadcasts progress through the injected :class:`SyncProgressTracker`.
A phase that raises is recorded in ``state.errors`` and the run moves on:
pages left behind stay in the dirty queue and are picked up by the next
run.  Only :class:`ConfigurationError` aborts the run.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable, Iterable
from uuid import uuid4

import structlog

from wikimirror.interfaces.checkpoint_provider import ICheckpointProvider
from wikimirror.models.checkpoint import CheckpointKind
from wikimirror.models.page import utc_now
from wikimirror.models.stats import AggregationReport
from wikimirror.models.sync import PHASE_ORDER, PhaseReport, SyncPhase, SyncRunState
from wikimirror.pipeline.progress_tracker import SyncProgressTracker
from wikimirror.services.aggregation_service import AggregationService
from wikimirror.services.content_service import ContentService
from wikimirror.services.discovery_service import DiscoveryService
from wikimirror.services.reconciliation_service import ReconciliationService
from wikimirror.utils.errors import ConfigurationError, PipelineError, WikiMirrorError
from wikimirror.utils.logging import get_logger, sync_context

# Share of the whole run's progress bar given to each phase: (start, end).
_PHASE_SPAN: dict[SyncPhase, tuple[float, float]] = {
    SyncPhase.DISCOVERY: (0.0, 25.0),
    SyncPhase.CONTENT: (25.0, 60.0),
    SyncPhase.RECONCILIATION: (60.0, 90.0),
    SyncPhase.AGGREGATION: (90.0, 100.0),
}

_CHECKPOINT_KINDS: dict[SyncPhase, CheckpointKind] = {
    SyncPhase.DISCOVERY: CheckpointKind.PAGE_LISTING,
    SyncPhase.RECONCILIATION: CheckpointKind.VOTE_PROGRESS,
}


class SyncOrchestrator:
    """Coordinates the four sync phases.

    All services are injected; the orchestrator never builds them.
    """

    def __init__(
        self,
        discovery: DiscoveryService,
        content: ContentService,
        reconciliation: ReconciliationService,
        aggregation: AggregationService,
        checkpoints: ICheckpointProvider,
        progress_tracker: SyncProgressTracker | None = None,
        checkpoints_keep: int = 5,
    ) -> None:
        self._discovery = discovery
        self._content = content
        self._reconciliation = reconciliation
        self._aggregation = aggregation
        self._checkpoints = checkpoints
        self._tracker = progress_tracker or SyncProgressTracker()
        self._checkpoints_keep = checkpoints_keep
        self._logger: structlog.BoundLogger = get_logger(__name__)

    @property
    def progress_tracker(self) -> SyncProgressTracker:
        return self._tracker

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def run(
        self,
        phases: Iterable[SyncPhase] | None = None,
        run_id: str | None = None,
        limit: int | None = None,
        resume: bool = True,
    ) -> SyncRunState:
        """Run the requested phases (all of them by default) in canonical order.

        Parameters
        ----------
        phases:
            Subset of phases to run; always executed in A → B → C →
            aggregation order regardless of the order given.
        run_id:
            Identifier used for progress listeners and logs.
        limit:
            Cap on pages processed by the content and reconciliation phases.
        resume:
            Whether discovery resumes from its newest checkpoint.

        Raises
        ------
        PipelineError
            If ``phases`` names :attr:`SyncPhase.DONE` or is empty.
        ConfigurationError
            Propagated from any phase.
        """
        requested = set(PHASE_ORDER if phases is None else phases)
        if not requested or not requested <= set(PHASE_ORDER):
            raise PipelineError(f"Nothing to run for phases {sorted(p.value for p in requested)}")

        state = SyncRunState(run_id=run_id or uuid4().hex)
        self._logger.info(
            "sync_run_started",
            run_id=state.run_id,
            phases=[p.value for p in PHASE_ORDER if p in requested],
        )

        for phase in PHASE_ORDER:
            if phase not in requested:
                continue
            state = state.model_copy(update={"current_phase": phase})
            start, _ = _PHASE_SPAN[phase]
            await self._tracker.update(state.run_id, phase, start, f"{phase.value.lower()} started")

            try:
                with sync_context(state.run_id, phase.value):
                    report = await self._run_phase(state.run_id, phase, limit, resume)
            except ConfigurationError:
                raise
            except WikiMirrorError as exc:
                self._logger.error("sync_phase_failed", run_id=state.run_id, phase=phase.value, error=str(exc))
                state = state.model_copy(update={"errors": [*state.errors, f"{phase.value}: {exc}"]})
                continue

            state = state.model_copy(update={"reports": [*state.reports, report]})
            self._prune(phase)

        state = state.model_copy(update={"current_phase": SyncPhase.DONE, "completed_at": utc_now()})
        await self._tracker.update(
            state.run_id,
            SyncPhase.DONE,
            100.0,
            "sync failed" if state.failed else "sync complete",
        )
        self._logger.info(
            "sync_run_complete",
            run_id=state.run_id,
            phases=len(state.reports),
            errors=len(state.errors),
            elapsed_s=round((state.completed_at - state.started_at).total_seconds(), 3),
        )
        return state

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    async def _run_phase(self, run_id: str, phase: SyncPhase, limit: int | None, resume: bool) -> PhaseReport:
        on_progress = self._progress_callback(run_id, phase)
        if phase is SyncPhase.DISCOVERY:
            return await self._discovery.run(resume=resume, on_progress=on_progress)
        if phase is SyncPhase.CONTENT:
            return await self._content.run(limit=limit, on_progress=on_progress)
        if phase is SyncPhase.RECONCILIATION:
            return await self._reconciliation.run(limit=limit, on_progress=on_progress)
        return _aggregation_phase_report(await self._aggregation.run())

    def _progress_callback(self, run_id: str, phase: SyncPhase) -> Callable[[int, int | None], Awaitable[None]]:
        start, end = _PHASE_SPAN[phase]

        async def _report(done: int, total: int | None) -> None:
            if total:
                percent = start + (end - start) * min(done, total) / total
                message = f"{phase.value.lower()}: {done}/{total}"
            else:
                percent = start
                message = f"{phase.value.lower()}: {done}"
            await self._tracker.update(run_id, phase, percent, message)

        return _report

    def _prune(self, phase: SyncPhase) -> None:
        kind = _CHECKPOINT_KINDS.get(phase)
        if kind is None:
            return
        removed = self._checkpoints.prune(kind, self._checkpoints_keep)
        if removed:
            self._logger.debug("checkpoints_pruned", kind=kind.value, removed=removed)


def _aggregation_phase_report(report: AggregationReport) -> PhaseReport:
    return PhaseReport(
        phase=SyncPhase.AGGREGATION,
        processed=report.users + report.pages + report.series,
        succeeded=report.users + report.pages + report.series,
        details={"users": report.users, "pages": report.pages, "series": report.series},
    )

"""Sync progress tracking with callback-based listener notification.

Tracks the current phase and progress percentage for each sync run and
broadcasts updates to registered listener callbacks.  Listeners are keyed
by run ID so an operator console and a scheduled run never see each
other's progress.

Data flow::

    SyncOrchestrator ──update()──→ SyncProgressTracker ──callback()──→ CLI printer
                                                       ──→ (any other listener)
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from dataclasses import dataclass

import structlog

from wikimirror.models.sync import SyncPhase
from wikimirror.utils.logging import get_logger


@dataclass
class _RunStatus:
    """Internal, never-serialized snapshot of one run's progress."""

    phase: SyncPhase = SyncPhase.DISCOVERY
    progress: float = 0.0
    message: str = ""


class SyncProgressTracker:
    """Tracks and broadcasts sync progress via callbacks.

    Each run is identified by its ``run_id``.  Consumers register sync or
    async callbacks that are invoked whenever :meth:`update` is called for
    that run.
    """

    def __init__(self) -> None:
        self._statuses: dict[str, _RunStatus] = {}
        self._listeners: dict[str, list[Callable]] = {}
        self._logger: structlog.BoundLogger = get_logger(__name__)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def update(
        self,
        run_id: str,
        phase: SyncPhase,
        progress: float,
        message: str,
    ) -> None:
        """Record a progress update and notify all registered listeners.

        Parameters
        ----------
        run_id:
            The sync run to update.
        phase:
            The phase currently running.
        progress:
            Completion percentage of the whole run (0.0 – 100.0).
        message:
            Human-readable status message.
        """
        progress = max(0.0, min(100.0, progress))
        self._statuses[run_id] = _RunStatus(phase=phase, progress=progress, message=message)

        self._logger.debug(
            "progress_update",
            run_id=run_id,
            phase=phase.value,
            progress=round(progress, 1),
            message=message,
        )
        await self._notify_listeners(run_id, phase, progress, message)

    def register_listener(self, run_id: str, callback: Callable) -> None:
        """Register a callback accepting ``(run_id, phase, progress, message)``."""
        listeners = self._listeners.setdefault(run_id, [])
        if callback not in listeners:
            listeners.append(callback)
            self._logger.debug("listener_registered", run_id=run_id, total_listeners=len(listeners))

    def unregister_listener(self, run_id: str, callback: Callable) -> None:
        listeners = self._listeners.get(run_id, [])
        if callback in listeners:
            listeners.remove(callback)
            self._logger.debug("listener_unregistered", run_id=run_id, remaining_listeners=len(listeners))
        if not listeners:
            self._listeners.pop(run_id, None)

    def get_status(self, run_id: str) -> dict:
        """Return the current phase and progress for a run.

        Returns
        -------
        dict
            Keys: ``phase`` (:class:`str`), ``progress`` (:class:`float`),
            ``message`` (:class:`str`).  Zeroed defaults when the run has
            not been tracked yet.
        """
        status = self._statuses.get(run_id)
        if status is None:
            return {"phase": SyncPhase.DISCOVERY.value, "progress": 0.0, "message": ""}
        return {"phase": status.phase.value, "progress": status.progress, "message": status.message}

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    async def _notify_listeners(
        self,
        run_id: str,
        phase: SyncPhase,
        progress: float,
        message: str,
    ) -> None:
        """Invoke every listener for a run; a failing listener is logged and skipped."""
        for callback in list(self._listeners.get(run_id, [])):
            try:
                result = callback(run_id, phase, progress, message)
                if asyncio.iscoroutine(result):
                    await result
            except Exception as exc:
                self._logger.warning(
                    "listener_callback_error",
                    run_id=run_id,
                    error=str(exc),
                    callback=getattr(callback, "__name__", repr(callback)),
                )

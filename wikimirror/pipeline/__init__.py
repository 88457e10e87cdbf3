"""Sync orchestration components for the wikimirror pipeline."""

from wikimirror.pipeline.progress_tracker import SyncProgressTracker
from wikimirror.pipeline.sync_orchestrator import SyncOrchestrator

__all__ = [
    "SyncOrchestrator",
    "SyncProgressTracker",
]

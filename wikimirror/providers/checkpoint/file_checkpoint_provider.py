"""File-backed checkpoint provider.

Each save writes a new, uniquely stamped slot file
``<kind>-checkpoint-<stamp>.json`` in the checkpoint directory.  The JSON
is first written to a hidden temp file in the same directory, flushed and
fsynced, then moved into place with ``os.replace`` -- so a crash mid-write
leaves at worst a stray temp file, never a truncated slot.

Loading scans slots newest-first and returns the first one that validates
against the tagged checkpoint models.  Corrupt or incomplete slots are
logged and skipped.
"""

from __future__ import annotations

import os
import re
import time
from pathlib import Path

import structlog
from pydantic import ValidationError

from wikimirror.interfaces.checkpoint_provider import ICheckpointProvider
from wikimirror.models.checkpoint import CHECKPOINT_ADAPTER, Checkpoint, CheckpointKind
from wikimirror.utils.errors import CheckpointError

logger = structlog.get_logger(logger_name=__name__)

_DEFAULT_CHECKPOINT_DIR = Path("data/checkpoints")
_SLOT_RE = re.compile(r"^(?P<kind>[a-z_]+)-checkpoint-(?P<stamp>\d+)\.json$")


class FileCheckpointProvider(ICheckpointProvider):
    """Durable multi-generation checkpoints in a local directory.

    Parameters
    ----------
    checkpoint_dir:
        Directory holding the slot files (created on first save).
    """

    def __init__(self, checkpoint_dir: str | Path = _DEFAULT_CHECKPOINT_DIR) -> None:
        self._dir = Path(checkpoint_dir)
        self._last_stamp = 0

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def save(self, payload: Checkpoint) -> str:
        kind = CheckpointKind(payload.kind)
        try:
            self._dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise CheckpointError(
                f"Cannot create checkpoint directory {self._dir}: {exc}",
                provider_name=self.get_provider_name(),
            ) from exc

        path = self._slot_path(kind, self._next_stamp())
        tmp_path = path.with_name(f".{path.name}.tmp")
        body = payload.model_dump_json(indent=2)

        try:
            with open(tmp_path, "w", encoding="utf-8") as fh:
                fh.write(body)
                fh.flush()
                os.fsync(fh.fileno())
            os.replace(tmp_path, path)
        except OSError as exc:
            tmp_path.unlink(missing_ok=True)
            raise CheckpointError(
                f"Cannot write checkpoint {path.name}: {exc}",
                provider_name=self.get_provider_name(),
            ) from exc

        logger.debug("checkpoint_saved", kind=kind.value, slot=path.name)
        return path.name

    def load(self, kind: CheckpointKind) -> Checkpoint | None:
        kind = CheckpointKind(kind)
        for path in self._slot_paths(kind):
            payload = self._read_slot(path, kind)
            if payload is not None:
                logger.info("checkpoint_loaded", kind=kind.value, slot=path.name)
                return payload
        logger.info("checkpoint_none_valid", kind=kind.value)
        return None

    def prune(self, kind: CheckpointKind, keep: int) -> int:
        kind = CheckpointKind(kind)
        kept = 0
        removed = 0
        for path in self._slot_paths(kind):
            if kept < keep and self._read_slot(path, kind) is not None:
                kept += 1
                continue
            path.unlink(missing_ok=True)
            removed += 1

        # Leftovers from interrupted saves.
        if self._dir.exists():
            for tmp in self._dir.glob(f".{kind.value}-checkpoint-*.json.tmp"):
                tmp.unlink(missing_ok=True)
                removed += 1

        logger.info("checkpoint_pruned", kind=kind.value, kept=kept, removed=removed)
        return removed

    def list_slots(self, kind: CheckpointKind) -> list[str]:
        return [p.name for p in self._slot_paths(CheckpointKind(kind))]

    def get_provider_name(self) -> str:
        """Return ``'file_checkpoint'``."""
        return "file_checkpoint"

    # ------------------------------------------------------------------
    # Slot helpers
    # ------------------------------------------------------------------

    def _next_stamp(self) -> int:
        # Strictly increasing even when two saves land in the same microsecond.
        stamp = time.time_ns() // 1_000
        if stamp <= self._last_stamp:
            stamp = self._last_stamp + 1
        while self._slot_path_exists(stamp):
            stamp += 1
        self._last_stamp = stamp
        return stamp

    def _slot_path_exists(self, stamp: int) -> bool:
        return any(self._slot_path(kind, stamp).exists() for kind in CheckpointKind)

    def _slot_path(self, kind: CheckpointKind, stamp: int) -> Path:
        return self._dir / f"{kind.value}-checkpoint-{stamp:020d}.json"

    def _slot_paths(self, kind: CheckpointKind) -> list[Path]:
        """Slot files of *kind*, newest first."""
        if not self._dir.exists():
            return []
        slots: list[tuple[int, Path]] = []
        for path in self._dir.iterdir():
            match = _SLOT_RE.match(path.name)
            if match and match.group("kind") == kind.value:
                slots.append((int(match.group("stamp")), path))
        slots.sort(key=lambda item: item[0], reverse=True)
        return [path for _, path in slots]

    def _read_slot(self, path: Path, kind: CheckpointKind) -> Checkpoint | None:
        try:
            raw = path.read_bytes()
        except OSError as exc:
            logger.warning("checkpoint_unreadable", slot=path.name, error=str(exc))
            return None
        try:
            payload = CHECKPOINT_ADAPTER.validate_json(raw)
        except ValidationError as exc:
            logger.warning(
                "checkpoint_corrupt_skipped",
                slot=path.name,
                errors=exc.error_count(),
            )
            return None
        if payload.kind != kind.value:
            logger.warning(
                "checkpoint_kind_mismatch",
                slot=path.name,
                expected=kind.value,
                found=payload.kind,
            )
            return None
        return payload

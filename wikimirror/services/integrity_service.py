"""Version-history integrity diagnostics and boundary repair.

Defects are never corrected mid-sync.  :meth:`IntegrityService.diagnose`
only reports them; :meth:`IntegrityService.repair_boundaries` plans the
``valid_to`` corrections and applies them only when asked.  Repair is
idempotent: a second run over a repaired history plans nothing.
"""

from __future__ import annotations

from datetime import datetime
from itertools import groupby
from typing import Iterable, Protocol

from wikimirror.models.integrity import (
    BoundaryDefect,
    BoundaryFix,
    DefectKind,
    IntegrityReport,
    RepairResult,
)
from wikimirror.providers.mirror.sqlite_mirror_store import SQLiteMirrorStore
from wikimirror.utils.logging import get_logger


class _Bounded(Protocol):
    id: int
    page_id: int
    url: str
    valid_from: datetime
    valid_to: datetime | None


def find_defects(versions: Iterable[_Bounded], tolerance_seconds: float) -> list[BoundaryDefect]:
    """Scan versions (grouped by page, ordered by ``valid_from``) for defects."""
    defects: list[BoundaryDefect] = []
    for page_id, group in groupby(versions, key=lambda v: v.page_id):
        ordered = sorted(group, key=lambda v: (v.valid_from, v.id))
        open_versions = [v for v in ordered if v.valid_to is None]
        for extra in open_versions[:-1]:
            defects.append(
                BoundaryDefect(
                    kind=DefectKind.MULTIPLE_OPEN,
                    url=extra.url,
                    page_id=page_id,
                    version_id=extra.id,
                )
            )
        for version in ordered:
            if version.valid_to is not None and version.valid_to < version.valid_from:
                defects.append(
                    BoundaryDefect(
                        kind=DefectKind.INVERTED_INTERVAL,
                        url=version.url,
                        page_id=page_id,
                        version_id=version.id,
                        gap_seconds=(version.valid_to - version.valid_from).total_seconds(),
                    )
                )
        for prior, nxt in zip(ordered, ordered[1:]):
            if prior.valid_to is None:
                continue
            gap = (nxt.valid_from - prior.valid_to).total_seconds()
            if abs(gap) > tolerance_seconds:
                defects.append(
                    BoundaryDefect(
                        kind=DefectKind.BOUNDARY_GAP,
                        url=prior.url,
                        page_id=page_id,
                        version_id=prior.id,
                        next_version_id=nxt.id,
                        gap_seconds=gap,
                    )
                )
    return defects


def plan_boundary_fixes(versions: Iterable[_Bounded], tolerance_seconds: float) -> list[BoundaryFix]:
    """Corrections that make adjacent closed versions contiguous.

    For each adjacent pair whose gap exceeds the tolerance the prior
    version's ``valid_to`` becomes the next version's ``valid_from``; any
    closed version still ending before it starts is then clamped to a
    zero-length interval.
    """
    fixes: list[BoundaryFix] = []
    for _, group in groupby(versions, key=lambda v: v.page_id):
        ordered = sorted(group, key=lambda v: (v.valid_from, v.id))
        planned: dict[int, datetime] = {}
        for prior, nxt in zip(ordered, ordered[1:]):
            if prior.valid_to is None:
                continue
            if abs((nxt.valid_from - prior.valid_to).total_seconds()) > tolerance_seconds:
                planned[prior.id] = nxt.valid_from
        for version in ordered:
            if version.valid_to is None:
                continue
            new_to = planned.get(version.id, version.valid_to)
            if new_to < version.valid_from:
                new_to = version.valid_from
            if new_to != version.valid_to:
                fixes.append(
                    BoundaryFix(
                        version_id=version.id,
                        url=version.url,
                        old_valid_to=version.valid_to,
                        new_valid_to=new_to,
                    )
                )
    return fixes


class IntegrityService:
    """Diagnoses and repairs the temporal version history."""

    def __init__(self, store: SQLiteMirrorStore, tolerance_seconds: float = 2.0) -> None:
        self._store = store
        self._tolerance = tolerance_seconds
        self._logger = get_logger(__name__)

    async def diagnose(self) -> IntegrityReport:
        bounds = await self._store.version_bounds()
        defects = find_defects(bounds, self._tolerance)
        report = IntegrityReport(
            pages_checked=len({b.page_id for b in bounds}),
            versions_checked=len(bounds),
            defects=defects,
        )
        if defects:
            self._logger.warning("integrity_defects_found", **report.counts())
        else:
            self._logger.info("integrity_ok", versions=report.versions_checked)
        return report

    async def repair_boundaries(
        self,
        tolerance_seconds: float | None = None,
        apply: bool = False,
    ) -> RepairResult:
        """Plan (and with *apply*, write) contiguity fixes for version boundaries."""
        tolerance = self._tolerance if tolerance_seconds is None else tolerance_seconds
        bounds = await self._store.version_bounds()
        fixes = plan_boundary_fixes(bounds, tolerance)

        if apply and fixes:
            await self._store.set_valid_to([(f.version_id, f.new_valid_to) for f in fixes])
        self._logger.info(
            "boundary_repair_applied" if apply else "boundary_repair_planned",
            fixes=len(fixes),
            tolerance_s=tolerance,
        )
        return RepairResult(applied=apply, tolerance_seconds=tolerance, fixes=fixes)

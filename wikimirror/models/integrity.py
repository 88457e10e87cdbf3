"""Models for version-history integrity diagnostics and repair."""

from __future__ import annotations

from collections import Counter
from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class DefectKind(str, Enum):  # noqa: UP042 -- StrEnum requires Python 3.11+
    MULTIPLE_OPEN = "multiple_open"          # More than one version with valid_to NULL
    BOUNDARY_GAP = "boundary_gap"            # prior.valid_to != next.valid_from beyond tolerance
    INVERTED_INTERVAL = "inverted_interval"  # valid_to < valid_from


class VersionBounds(BaseModel):
    """The interval columns of one stored version."""

    model_config = ConfigDict(frozen=True)

    id: int
    page_id: int
    url: str
    valid_from: datetime
    valid_to: datetime | None = None


class BoundaryDefect(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: DefectKind
    url: str
    page_id: int
    version_id: int
    next_version_id: int | None = None
    gap_seconds: float | None = Field(
        default=None, description="next.valid_from - prior.valid_to; negative for overlaps."
    )


class BoundaryFix(BaseModel):
    """One planned ``valid_to`` correction."""

    model_config = ConfigDict(frozen=True)

    version_id: int
    url: str
    old_valid_to: datetime
    new_valid_to: datetime


class IntegrityReport(BaseModel):
    model_config = ConfigDict(frozen=True)

    pages_checked: int = 0
    versions_checked: int = 0
    defects: list[BoundaryDefect] = Field(default_factory=list)

    @property
    def healthy(self) -> bool:
        return not self.defects

    def counts(self) -> dict[str, int]:
        counts = Counter(d.kind.value for d in self.defects)
        return {kind.value: counts.get(kind.value, 0) for kind in DefectKind}


class RepairResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    applied: bool
    tolerance_seconds: float
    fixes: list[BoundaryFix] = Field(default_factory=list)

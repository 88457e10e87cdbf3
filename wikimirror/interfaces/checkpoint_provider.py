"""Abstract base class for durable crawl checkpoints.

A checkpoint store keeps several generations ("slots") per crawl kind.
Saving always writes a new slot; loading returns the newest slot that
passes structural validation; pruning keeps only the newest N.  A missing
or entirely corrupt set of slots is not an error: ``load`` returns ``None``
and the caller starts a fresh crawl.
"""

from __future__ import annotations

from abc import ABC, abstractmethod

from wikimirror.models.checkpoint import CheckpointKind


# Concrete implementation: FileCheckpointProvider (wikimirror/providers/checkpoint/)
# One JSON file per slot, written via temp file + atomic rename.
class ICheckpointProvider(ABC):
    """Contract for checkpoint persistence."""

    @abstractmethod
    def save(self, payload) -> str:
        """Persist *payload* in a new slot and return the slot handle.

        Parameters
        ----------
        payload:
            A checkpoint model; its ``kind`` field selects the slot family.

        Raises
        ------
        CheckpointError
            If the slot cannot be written.  Previously written slots are
            never affected by a failed save.
        """

    @abstractmethod
    def load(self, kind: CheckpointKind):
        """Return the newest valid payload of *kind*, or ``None``."""

    @abstractmethod
    def prune(self, kind: CheckpointKind, keep: int) -> int:
        """Delete all but the *keep* newest valid slots of *kind*.

        Returns the number of slots removed.
        """

    @abstractmethod
    def list_slots(self, kind: CheckpointKind) -> list[str]:
        """Return slot handles of *kind*, newest first."""

    @abstractmethod
    def get_provider_name(self) -> str:
        """Return a short identifier used in logs and error messages."""

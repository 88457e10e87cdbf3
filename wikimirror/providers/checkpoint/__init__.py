"""Checkpoint providers.

FileCheckpointProvider keeps one JSON file per slot in a local directory,
written with temp-file-then-rename so a crash never corrupts an older slot.
"""

from wikimirror.providers.checkpoint.file_checkpoint_provider import FileCheckpointProvider

__all__ = ["FileCheckpointProvider"]

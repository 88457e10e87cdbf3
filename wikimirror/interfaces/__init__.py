"""Public interface definitions for the engine's external collaborators.

The sync phases reach the upstream API and the checkpoint store only
through the abstract base classes defined here.  Concrete adapters live in
``wikimirror/providers/`` and are wired together in ``wikimirror/main.py``;
unit tests inject mocks instead.

CONCRETE PROVIDER MAP:
    Interface              →  Concrete implementation (in wikimirror/providers/)
    ─────────────────────────────────────────────────────────────────
    IWikiSourceProvider    →  CromGraphQLProvider
    ICheckpointProvider    →  FileCheckpointProvider
"""

from wikimirror.interfaces.checkpoint_provider import ICheckpointProvider
from wikimirror.interfaces.wiki_source_provider import IWikiSourceProvider

__all__ = ["ICheckpointProvider", "IWikiSourceProvider"]

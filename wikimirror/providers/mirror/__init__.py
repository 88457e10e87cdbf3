"""SQLite mirror storage.

SQLiteMirrorStore owns the temporal page graph, staging and derived
statistics; SQLiteDirtyQueue owns the dirty-page work queue.  Both default
to the same database file.
"""

from wikimirror.providers.mirror.sqlite_dirty_queue import SQLiteDirtyQueue
from wikimirror.providers.mirror.sqlite_mirror_store import SQLiteMirrorStore

__all__ = ["SQLiteDirtyQueue", "SQLiteMirrorStore"]

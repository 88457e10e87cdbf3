"""wikimirror: incremental, rate-limit-safe mirroring of a wiki into SQLite."""

__version__ = "0.1.0"

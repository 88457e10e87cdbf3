"""Concrete adapters for the upstream API, checkpoint files and the SQLite mirror."""

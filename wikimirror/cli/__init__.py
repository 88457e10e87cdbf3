"""Command-line tools for wikimirror.

- ``wikimirror`` (or ``python -m wikimirror.cli``) runs the sync phases,
  recomputes statistics, and diagnoses or repairs the version history.
"""

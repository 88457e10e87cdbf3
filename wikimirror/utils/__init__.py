"""Utility modules for wikimirror.

Available utility modules (all re-exported here for convenience):

- **confidence** -- Wilson lower bound, like ratio and controversy scoring
  used by the aggregation engine's per-page statistics.
- **errors** -- Domain-specific exception hierarchy rooted at WikiMirrorError;
  transient upstream failures, query rejections and local-state defects each
  get their own subclass so callers can handle them granularly.
- **concurrency** -- semaphore-bounded gather and map helpers used to
  pipeline per-page work under the upstream's rate budget.
- **logging** -- structlog setup with a dual-renderer pattern: coloured
  console output in development, structured JSON in production.
"""

# -- Vote scoring ----------------------------------------------------------
from wikimirror.utils.confidence import controversy_score, like_ratio, wilson_lower_bound

# -- Domain exception hierarchy --------------------------------------------
from wikimirror.utils.errors import (
    CheckpointError,
    ConfigurationError,
    IntegrityError,
    InvalidTransitionError,
    PipelineError,
    ProviderUnavailableError,
    RateLimitError,
    UpstreamQueryError,
    WikiMirrorError,
)

# -- Async concurrency helpers ---------------------------------------------
from wikimirror.utils.concurrency import bounded_map, throttled_gather

# -- Structured logging setup ----------------------------------------------
from wikimirror.utils.logging import configure_logging, get_logger, sync_context

__all__ = [
    "CheckpointError",
    "ConfigurationError",
    "IntegrityError",
    "InvalidTransitionError",
    "PipelineError",
    "ProviderUnavailableError",
    "RateLimitError",
    "UpstreamQueryError",
    "WikiMirrorError",
    "bounded_map",
    "configure_logging",
    "controversy_score",
    "get_logger",
    "like_ratio",
    "sync_context",
    "throttled_gather",
    "wilson_lower_bound",
]

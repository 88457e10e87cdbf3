"""structlog configuration for sync runs.

A sync run writes one event per line to stdout.  Run by hand in a
terminal it prints human-readable console lines (coloured only when stdout
is a tty); scheduled runs set ``APP_ENV=production`` or pass
``json_output`` and get one JSON object per event, ready for a log shipper.

Both outputs share one processor chain, and the root stdlib logger is
pointed at that chain too, so aiosqlite and httpx records look the same
as ours.  httpx is held at WARNING because the provider throttle already
logs request pacing.

:func:`sync_context` binds the run id (and phase) into structlog's
context variables so every event a phase emits can be traced back to its
run without threading the id through each service.
"""

import logging
import os
import sys
from contextlib import AbstractContextManager

import structlog


def configure_logging(log_level: str = "INFO", json_output: bool = False) -> structlog.BoundLogger:
    """Install the structlog pipeline and route stdlib logging through it.

    Args:
        log_level: Minimum level name (DEBUG, INFO, WARNING, ERROR).
        json_output: Emit JSON regardless of ``APP_ENV``.

    Returns:
        The root structlog logger.
    """
    use_json = json_output or os.environ.get("APP_ENV", "development") == "production"

    shared_processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.StackInfoRenderer(),
        structlog.dev.set_exc_info,
        structlog.processors.TimeStamper(fmt="iso"),
    ]

    if use_json:
        renderer: structlog.types.Processor = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty())

    structlog.configure(
        processors=[*shared_processors, renderer],
        wrapper_class=structlog.make_filtering_bound_logger(logging.getLevelName(log_level.upper())),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            processors=[
                structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                *shared_processors,
                renderer,
            ],
        )
    )

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(log_level.upper())
    logging.getLogger("httpx").setLevel(logging.WARNING)

    return structlog.get_logger()


def get_logger(name: str) -> structlog.BoundLogger:
    """Return a logger tagged with *name*, configuring defaults on first use."""
    if not structlog.is_configured():
        configure_logging()
    return structlog.get_logger(logger_name=name)


def sync_context(run_id: str, phase: str | None = None) -> AbstractContextManager:
    """Bind ``run_id`` (and ``phase`` when given) to every event logged inside the block."""
    bindings = {"run_id": run_id}
    if phase is not None:
        bindings["phase"] = phase
    return structlog.contextvars.bound_contextvars(**bindings)

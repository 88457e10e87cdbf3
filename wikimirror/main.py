"""wikimirror composition root.

Wires together the upstream provider, the rate-limit-safe fetcher, the
SQLite mirror and dirty queue, the checkpoint store and the phase
services.  Configuration comes from ``config/config.yaml`` layered under
``.env`` and ``WIKIMIRROR_*`` environment variables.

The CLI (``wikimirror.cli.sync``) and the integration tests both build
their object graph through :func:`build_components`.
"""

from __future__ import annotations

from collections.abc import Iterable
from typing import Any

import httpx
import structlog

from wikimirror.config.loader import build_settings
from wikimirror.config.settings import Settings
from wikimirror.interfaces.checkpoint_provider import ICheckpointProvider
from wikimirror.interfaces.wiki_source_provider import IWikiSourceProvider
from wikimirror.models.sync import SyncPhase, SyncRunState
from wikimirror.pipeline.progress_tracker import SyncProgressTracker
from wikimirror.pipeline.sync_orchestrator import SyncOrchestrator
from wikimirror.providers.checkpoint.file_checkpoint_provider import FileCheckpointProvider
from wikimirror.providers.mirror.sqlite_dirty_queue import SQLiteDirtyQueue
from wikimirror.providers.mirror.sqlite_mirror_store import SQLiteMirrorStore
from wikimirror.providers.wiki_source.crom_graphql_provider import CromGraphQLProvider
from wikimirror.services.aggregation_service import AggregationService
from wikimirror.services.content_service import ContentService
from wikimirror.services.discovery_service import DiscoveryService
from wikimirror.services.integrity_service import IntegrityService
from wikimirror.services.rate_limit_safe_fetcher import RateLimitSafeFetcher
from wikimirror.services.reconciliation_service import ReconciliationService
from wikimirror.utils.logging import configure_logging, get_logger

_logger: structlog.BoundLogger = get_logger(__name__)


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------


def load_settings(config_path: str = "config/config.yaml") -> Settings:
    """Resolve settings and configure logging from them.

    Raises
    ------
    ConfigurationError
        If the layered configuration is invalid.
    """
    app_settings = build_settings(config_path)
    configure_logging(
        log_level=app_settings.log_level,
        json_output=(app_settings.app_env == "production"),
    )
    return app_settings


# ---------------------------------------------------------------------------
# DI assembly
# ---------------------------------------------------------------------------


def build_components(
    app_settings: Settings,
    provider: IWikiSourceProvider | None = None,
    checkpoints: ICheckpointProvider | None = None,
    fetcher: RateLimitSafeFetcher | None = None,
    progress_tracker: SyncProgressTracker | None = None,
) -> dict[str, Any]:
    """Construct every provider and service instance for a sync run.

    Any collaborator passed in is used instead of the default one, which
    is how tests inject a mocked upstream or a fetcher with a no-op sleep.

    Returns
    -------
    dict
        Components keyed by role name.  ``http_client`` is ``None`` when
        the provider was injected; otherwise the caller must close it.
    """
    http_client: httpx.AsyncClient | None = None
    if provider is None:
        http_client = httpx.AsyncClient(timeout=app_settings.request_timeout)
        provider = CromGraphQLProvider(
            http_client=http_client,
            endpoint=app_settings.upstream_endpoint,
            site_base_url=app_settings.site_base_url,
            request_delay=app_settings.request_delay,
            timeout=app_settings.request_timeout,
            user_agent=app_settings.user_agent,
        )

    if fetcher is None:
        budget_source = provider
        fetcher = RateLimitSafeFetcher.from_settings(
            app_settings,
            budget_probe=lambda: getattr(budget_source, "last_budget", None),
        )

    store = SQLiteMirrorStore(db_path=app_settings.db_path)
    queue = SQLiteDirtyQueue(db_path=app_settings.db_path)
    checkpoints = checkpoints or FileCheckpointProvider(app_settings.checkpoint_dir)
    tolerance = app_settings.boundary_tolerance_seconds

    discovery = DiscoveryService(
        provider=provider,
        fetcher=fetcher,
        store=store,
        queue=queue,
        checkpoints=checkpoints,
        page_batch_size=app_settings.page_batch_size,
        max_first=app_settings.max_first,
    )
    content = ContentService(
        provider=provider,
        fetcher=fetcher,
        store=store,
        queue=queue,
        max_first=app_settings.max_first,
        concurrency_limit=app_settings.concurrency_limit,
        boundary_tolerance=tolerance,
    )
    reconciliation = ReconciliationService(
        provider=provider,
        fetcher=fetcher,
        store=store,
        queue=queue,
        checkpoints=checkpoints,
        max_first=app_settings.max_first,
        boundary_tolerance=tolerance,
    )
    aggregation = AggregationService(store)
    integrity = IntegrityService(store, tolerance_seconds=tolerance)

    orchestrator = SyncOrchestrator(
        discovery=discovery,
        content=content,
        reconciliation=reconciliation,
        aggregation=aggregation,
        checkpoints=checkpoints,
        progress_tracker=progress_tracker,
        checkpoints_keep=app_settings.checkpoints_keep,
    )

    _logger.debug(
        "components_built",
        provider=provider.get_provider_name(),
        checkpoints=checkpoints.get_provider_name(),
        db_path=app_settings.db_path,
    )
    return {
        "settings": app_settings,
        "http_client": http_client,
        "provider": provider,
        "fetcher": fetcher,
        "store": store,
        "queue": queue,
        "checkpoints": checkpoints,
        "discovery": discovery,
        "content": content,
        "reconciliation": reconciliation,
        "aggregation": aggregation,
        "integrity": integrity,
        "orchestrator": orchestrator,
    }


async def initialize_storage(components: dict[str, Any]) -> None:
    """Create the mirror and dirty-queue tables if they do not exist yet."""
    await components["store"].initialize()
    await components["queue"].initialize()


async def close_components(components: dict[str, Any]) -> None:
    http_client = components.get("http_client")
    if http_client is not None:
        await http_client.aclose()


async def run_sync(
    app_settings: Settings,
    phases: Iterable[SyncPhase] | None = None,
    limit: int | None = None,
    resume: bool = True,
) -> SyncRunState:
    """Build the components, run the requested phases and tear down."""
    components = build_components(app_settings)
    try:
        await initialize_storage(components)
        return await components["orchestrator"].run(phases=phases, limit=limit, resume=resume)
    finally:
        await close_components(components)

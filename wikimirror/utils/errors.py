"""Custom exception hierarchy for wikimirror.

All application exceptions inherit from :class:`WikiMirrorError`, which
carries an optional ``provider_name`` so error handlers can identify which
component (e.g. "crom_graphql", "sqlite_mirror", "file_checkpoint") caused
the failure.

The hierarchy is organized by failure class:

    WikiMirrorError  (base -- catch-all for any wikimirror error)
    +-- RateLimitError           (upstream throttled the request)
    +-- ProviderUnavailableError (network failure / upstream 5xx)
    +-- UpstreamQueryError       (upstream rejected the query itself)
    +-- CheckpointError          (checkpoint slot could not be written)
    +-- InvalidTransitionError   (illegal dirty-queue state change)
    +-- IntegrityError           (version-boundary or count defects)
    +-- PipelineError            (phase orchestration failure)
    +-- ConfigurationError       (startup / invalid config)

Transient classes (rate limit, unavailable) are retried by the fetcher;
query errors are not.  Only ConfigurationError is fatal to a run.
"""


class WikiMirrorError(Exception):
    """Base exception for all wikimirror errors.

    Every subclass carries a human-readable ``message`` and an optional
    ``provider_name`` identifying which component triggered the error.
    The ``__str__`` method prefixes the provider name in brackets for
    structured log output, e.g. ``[crom_graphql] Rate limit exceeded``.
    """

    def __init__(
        self,
        message: str = "An unexpected error occurred",
        provider_name: str | None = None,
    ) -> None:
        self._message = message
        self._provider_name = provider_name
        super().__init__(self._message)

    @property
    def message(self) -> str:
        return self._message

    @property
    def provider_name(self) -> str | None:
        return self._provider_name

    def __str__(self) -> str:
        if self._provider_name:
            return f"[{self._provider_name}] {self._message}"
        return self._message


# ---------------------------------------------------------------------------
# Upstream errors
# ---------------------------------------------------------------------------

class RateLimitError(WikiMirrorError):
    """Raised when the upstream API signals throttling (HTTP 429 / retry-after).

    ``retry_after`` holds the server-suggested cool-down in seconds when the
    response carried one.
    """

    def __init__(
        self,
        message: str = "Rate limit exceeded",
        provider_name: str | None = None,
        retry_after: float | None = None,
    ) -> None:
        super().__init__(message=message, provider_name=provider_name)
        self._retry_after = retry_after

    @property
    def retry_after(self) -> float | None:
        return self._retry_after


class ProviderUnavailableError(WikiMirrorError):
    """Raised on network failures and upstream 5xx responses.

    The fetcher treats this as transient and retries with backoff.
    """

    def __init__(
        self,
        message: str = "Upstream service is unavailable",
        provider_name: str | None = None,
    ) -> None:
        super().__init__(message=message, provider_name=provider_name)


class UpstreamQueryError(WikiMirrorError):
    """Raised when the upstream returns a GraphQL ``errors`` payload."""

    def __init__(
        self,
        message: str = "Upstream query failed",
        provider_name: str | None = None,
    ) -> None:
        super().__init__(message=message, provider_name=provider_name)


# ---------------------------------------------------------------------------
# Local state errors
# ---------------------------------------------------------------------------

class CheckpointError(WikiMirrorError):
    """Raised when a checkpoint slot cannot be written."""

    def __init__(
        self,
        message: str = "Checkpoint write failed",
        provider_name: str | None = None,
    ) -> None:
        super().__init__(message=message, provider_name=provider_name)


class InvalidTransitionError(WikiMirrorError):
    """Raised by the dirty queue when a state change is not in the legal table."""

    def __init__(
        self,
        url: str,
        from_state: str,
        to_state: str,
        provider_name: str | None = None,
    ) -> None:
        super().__init__(
            message=f"Illegal dirty-page transition {from_state} -> {to_state} for {url}",
            provider_name=provider_name,
        )
        self._url = url
        self._from_state = from_state
        self._to_state = to_state

    @property
    def url(self) -> str:
        return self._url

    @property
    def from_state(self) -> str:
        return self._from_state

    @property
    def to_state(self) -> str:
        return self._to_state


class IntegrityError(WikiMirrorError):
    """Raised when a structural defect is found in the version history."""

    def __init__(
        self,
        message: str = "Mirror integrity defect detected",
        provider_name: str | None = None,
    ) -> None:
        super().__init__(message=message, provider_name=provider_name)


# ---------------------------------------------------------------------------
# Orchestration / configuration errors
# ---------------------------------------------------------------------------

class PipelineError(WikiMirrorError):
    """Raised when sync orchestration fails (unknown phase, aborted run, etc.)."""

    def __init__(
        self,
        message: str = "Sync pipeline failed",
        provider_name: str | None = None,
    ) -> None:
        super().__init__(message=message, provider_name=provider_name)


class ConfigurationError(WikiMirrorError):
    """Raised when configuration is invalid or missing at startup."""

    def __init__(
        self,
        message: str = "Invalid or missing configuration",
        provider_name: str | None = None,
    ) -> None:
        super().__init__(message=message, provider_name=provider_name)

"""Application settings loaded from environment variables via pydantic-settings.

# ─── HOW SETTINGS WORK ────────────────────────────────────────────────
#
# Values are read from TWO sources (in priority order):
#
#   1. **Environment variables** -- e.g., WIKIMIRROR_DB_PATH=/srv/mirror.db
#      (highest priority -- always wins)
#   2. **.env file** -- key=value lines in the project root .env file
#
# Field `db_path` maps to env var `WIKIMIRROR_DB_PATH` (prefix + upper case).
# APP_ENV and LOG_LEVEL are read without the prefix so that the logging
# setup and deployment tooling share one variable.
#
# The fetcher thresholds below are heuristics tuned against one upstream's
# eventual-consistency behaviour; they are configuration, not constants.
# ──────────────────────────────────────────────────────────────────────
"""

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from wikimirror.utils.errors import ConfigurationError


class Settings(BaseSettings):
    """wikimirror sync settings.

    Environment variables override defaults. Loaded from .env file when present.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="WIKIMIRROR_",
        extra="ignore",
        populate_by_name=True,
    )

    # === Upstream ===
    upstream_endpoint: str = "https://apiv2.crom.avn.sh/graphql"
    site_base_url: str = "http://scp-wiki-cn.wikidot.com/"
    request_delay: float = 0.5  # seconds between upstream requests
    request_timeout: float = 30.0
    user_agent: str = "wikimirror/0.1 (+sync)"

    # === Storage ===
    db_path: str = "data/mirror.db"
    checkpoint_dir: str = "data/checkpoints"
    checkpoints_keep: int = 5

    # === Crawl sizing ===
    page_batch_size: int = 100
    max_first: int = 100  # window size for votes / revisions pagination
    concurrency_limit: int = 1

    # === Rate-limit-safe fetcher ===
    skip_unchanged_tolerance: int = 2
    undercount_ratio: float = 0.30
    absolute_tolerance: int = 5
    relative_tolerance: float = 0.10
    fuzzy_tolerance: float = 0.20
    max_attempts: int = 10
    rate_limit_base_delay: float = 60.0
    backoff_factor: float = 1.5
    max_backoff_multiplier: float = 10.0
    max_delay: float = 300.0
    protection_after_attempts: int = 3
    quality_retry_delay: float = 2.0
    budget_low_water: int = 0

    # === Integrity ===
    boundary_tolerance_seconds: float = 2.0

    # === App Config ===
    app_env: str = Field(
        default="development",
        validation_alias=AliasChoices("WIKIMIRROR_APP_ENV", "APP_ENV"),
    )
    log_level: str = Field(
        default="INFO",
        validation_alias=AliasChoices("WIKIMIRROR_LOG_LEVEL", "LOG_LEVEL"),
    )

    def validate_for_sync(self) -> None:
        """Reject settings that would make a sync run meaningless.

        Raises
        ------
        ConfigurationError
            On the first invalid value found.
        """
        for name in ("undercount_ratio", "relative_tolerance", "fuzzy_tolerance"):
            value = getattr(self, name)
            if not 0.0 < value <= 1.0:
                raise ConfigurationError(f"{name} must be in (0, 1], got {value}")
        if self.relative_tolerance > self.fuzzy_tolerance:
            raise ConfigurationError("relative_tolerance must not exceed fuzzy_tolerance")
        for name in ("page_batch_size", "max_first", "max_attempts", "concurrency_limit"):
            if getattr(self, name) < 1:
                raise ConfigurationError(f"{name} must be at least 1")
        if self.checkpoints_keep < 1:
            raise ConfigurationError("checkpoints_keep must be at least 1")
        if self.backoff_factor < 1.0 or self.max_backoff_multiplier < 1.0:
            raise ConfigurationError("backoff factors must be >= 1.0")
        if not self.upstream_endpoint:
            raise ConfigurationError("upstream_endpoint must be set")

"""YAML configuration loader with environment variable overrides.

# ─── CONFIGURATION HIERARCHY ──────────────────────────────────────────
#
# Configuration is loaded in layers (later layers override earlier):
#
#   1. config/config.yaml  -- Static defaults checked into the repo
#   2. .env file           -- Local operator overrides (not committed)
#   3. Environment vars    -- Set by the scheduler at deploy time
#
# load_config() reads the YAML file first, then deep-merges the values
# resolved by Settings on top.  build_settings() goes the other way and
# produces a Settings object whose unset fields fall back to the YAML.
# ──────────────────────────────────────────────────────────────────────
"""

from pathlib import Path
from typing import Any

import yaml

from wikimirror.config.settings import Settings
from wikimirror.utils.errors import ConfigurationError

# YAML section -> Settings fields it may set.
_SECTION_FIELDS: dict[str, tuple[str, ...]] = {
    "upstream": (
        "upstream_endpoint",
        "site_base_url",
        "request_delay",
        "request_timeout",
        "user_agent",
    ),
    "storage": ("db_path", "checkpoint_dir", "checkpoints_keep"),
    "crawl": ("page_batch_size", "max_first", "concurrency_limit"),
    "fetcher": (
        "skip_unchanged_tolerance",
        "undercount_ratio",
        "absolute_tolerance",
        "relative_tolerance",
        "fuzzy_tolerance",
        "max_attempts",
        "rate_limit_base_delay",
        "backoff_factor",
        "max_backoff_multiplier",
        "max_delay",
        "protection_after_attempts",
        "quality_retry_delay",
        "budget_low_water",
    ),
    "integrity": ("boundary_tolerance_seconds",),
    "app": ("app_env", "log_level"),
}


def _read_yaml(path: str) -> dict[str, Any]:
    config_path = Path(path)
    if not config_path.exists():
        return {}
    with open(config_path, encoding="utf-8") as f:
        try:
            loaded = yaml.safe_load(f) or {}
        except yaml.YAMLError as exc:
            raise ConfigurationError(f"Cannot parse {config_path}: {exc}") from exc
    if not isinstance(loaded, dict):
        raise ConfigurationError(f"{config_path} must contain a mapping at top level")
    return loaded


def load_config(path: str = "config/config.yaml") -> dict:
    """Load YAML config and merge with environment-based Settings.

    Environment variables (via Settings) override YAML values where keys overlap.

    Args:
        path: Path to the YAML configuration file.

    Returns:
        Fully resolved configuration dictionary, grouped by section.
    """
    yaml_config = _read_yaml(path)

    settings = Settings()
    explicit = settings.model_fields_set
    env_overrides: dict[str, Any] = {}
    for section, fields in _SECTION_FIELDS.items():
        values = {name: getattr(settings, name) for name in fields if name in explicit}
        if values:
            env_overrides[section] = values

    # Defaults for anything neither layer set.
    for section, fields in _SECTION_FIELDS.items():
        bucket = yaml_config.setdefault(section, {})
        for name in fields:
            bucket.setdefault(name, getattr(settings, name))

    _deep_merge(yaml_config, env_overrides)
    return yaml_config


def build_settings(path: str = "config/config.yaml") -> Settings:
    """Resolve the layered configuration into a validated Settings object.

    Raises
    ------
    ConfigurationError
        If a YAML value has the wrong type or the result fails
        :meth:`Settings.validate_for_sync`.
    """
    resolved = load_config(path)
    flat: dict[str, Any] = {}
    for section, fields in _SECTION_FIELDS.items():
        bucket = resolved.get(section) or {}
        for name in fields:
            if name in bucket:
                flat[name] = bucket[name]
    try:
        settings = Settings(**flat)
    except ValueError as exc:
        raise ConfigurationError(f"Invalid configuration: {exc}") from exc
    settings.validate_for_sync()
    return settings


def _deep_merge(base: dict, overrides: dict) -> None:
    """Recursively merge overrides into base dict, mutating base in place."""
    for key, value in overrides.items():
        if key in base and isinstance(base[key], dict) and isinstance(value, dict):
            _deep_merge(base[key], value)
        else:
            base[key] = value

"""Unit tests for Settings validation and the layered YAML loader."""

from __future__ import annotations

from pathlib import Path

import pytest

from wikimirror.config.loader import _deep_merge, build_settings, load_config
from wikimirror.config.settings import Settings
from wikimirror.utils.errors import ConfigurationError


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    """Keep the developer's environment and .env file out of these tests."""
    monkeypatch.chdir(tmp_path)
    for name in ("WIKIMIRROR_DB_PATH", "WIKIMIRROR_MAX_FIRST", "APP_ENV", "LOG_LEVEL"):
        monkeypatch.delenv(name, raising=False)


def _write_yaml(path: Path, body: str) -> str:
    path.write_text(body, encoding="utf-8")
    return str(path)


# ======================================================================
# Settings
# ======================================================================


class TestSettings:
    def test_defaults_are_valid(self) -> None:
        Settings().validate_for_sync()

    def test_default_thresholds(self) -> None:
        s = Settings()
        assert s.skip_unchanged_tolerance == 2
        assert s.undercount_ratio == pytest.approx(0.30)
        assert s.relative_tolerance == pytest.approx(0.10)
        assert s.fuzzy_tolerance == pytest.approx(0.20)

    def test_env_override(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("WIKIMIRROR_MAX_FIRST", "25")
        assert Settings().max_first == 25

    def test_unprefixed_log_level(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("LOG_LEVEL", "DEBUG")
        assert Settings().log_level == "DEBUG"

    @pytest.mark.parametrize(
        "overrides",
        [
            {"undercount_ratio": 0.0},
            {"fuzzy_tolerance": 1.5},
            {"relative_tolerance": 0.3, "fuzzy_tolerance": 0.2},
            {"max_first": 0},
            {"page_batch_size": 0},
            {"checkpoints_keep": 0},
            {"backoff_factor": 0.5},
            {"upstream_endpoint": ""},
        ],
    )
    def test_invalid_values_rejected(self, overrides: dict) -> None:
        with pytest.raises(ConfigurationError):
            Settings(**overrides).validate_for_sync()


# ======================================================================
# Loader
# ======================================================================


class TestLoader:
    def test_missing_file_gives_defaults(self, tmp_path: Path) -> None:
        settings = build_settings(str(tmp_path / "absent.yaml"))
        assert settings.max_first == 100
        assert settings.db_path == "data/mirror.db"

    def test_yaml_sections_applied(self, tmp_path: Path) -> None:
        path = _write_yaml(
            tmp_path / "config.yaml",
            "storage:\n  db_path: /tmp/m.db\ncrawl:\n  max_first: 50\nintegrity:\n  boundary_tolerance_seconds: 1.5\n",
        )
        settings = build_settings(path)
        assert settings.db_path == "/tmp/m.db"
        assert settings.max_first == 50
        assert settings.boundary_tolerance_seconds == pytest.approx(1.5)

    def test_environment_beats_yaml(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        path = _write_yaml(tmp_path / "config.yaml", "crawl:\n  max_first: 50\n")
        monkeypatch.setenv("WIKIMIRROR_MAX_FIRST", "7")

        assert load_config(path)["crawl"]["max_first"] == 7
        assert build_settings(path).max_first == 7

    def test_invalid_value_raises_configuration_error(self, tmp_path: Path) -> None:
        path = _write_yaml(tmp_path / "config.yaml", "fetcher:\n  undercount_ratio: 2.0\n")
        with pytest.raises(ConfigurationError):
            build_settings(path)

    def test_wrong_type_raises_configuration_error(self, tmp_path: Path) -> None:
        path = _write_yaml(tmp_path / "config.yaml", "crawl:\n  max_first: lots\n")
        with pytest.raises(ConfigurationError):
            build_settings(path)

    def test_unparseable_yaml(self, tmp_path: Path) -> None:
        path = _write_yaml(tmp_path / "config.yaml", "crawl: [unclosed\n")
        with pytest.raises(ConfigurationError):
            load_config(path)

    def test_top_level_must_be_mapping(self, tmp_path: Path) -> None:
        path = _write_yaml(tmp_path / "config.yaml", "- a\n- b\n")
        with pytest.raises(ConfigurationError):
            load_config(path)

    def test_deep_merge(self) -> None:
        base = {"a": {"x": 1, "y": 2}, "b": 1}
        _deep_merge(base, {"a": {"y": 3}, "c": 4})
        assert base == {"a": {"x": 1, "y": 3}, "b": 1, "c": 4}

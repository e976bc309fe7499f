"""Tests for IndexConfig."""
import logging
from pathlib import Path

import pytest
from pydantic import ValidationError

from noteindex.config import DEFAULT_SEARCH_WEIGHTS, IndexConfig, load_config, parse_weights
from noteindex.exceptions import ConfigurationError, ErrorCode


class TestDefaults:
    def test_defaults(self, monkeypatch):
        for name in ("NOTEINDEX_NOTES_DIR", "NOTEINDEX_DATABASE_PATH", "NOTEINDEX_SEARCH_WEIGHTS",
                     "NOTEINDEX_SEARCH_LIMIT", "NOTEINDEX_IN_MEMORY_DB", "NOTEINDEX_LOG_LEVEL"):
            monkeypatch.delenv(name, raising=False)
        cfg = IndexConfig()
        assert cfg.notes_dir == Path("notes")
        assert cfg.database_path == Path(".noteindex/index.db")
        assert cfg.search_weights == DEFAULT_SEARCH_WEIGHTS
        assert cfg.search_limit is None
        assert cfg.in_memory_db is False
        assert cfg.prune_unused_on_rebuild is True
        assert cfg.get_log_level() == logging.INFO

    def test_environment_overrides(self, monkeypatch):
        monkeypatch.setenv("NOTEINDEX_SEARCH_WEIGHTS", "4, 3, 2, 1")
        monkeypatch.setenv("NOTEINDEX_SEARCH_LIMIT", "7")
        monkeypatch.setenv("NOTEINDEX_IN_MEMORY_DB", "yes")
        monkeypatch.setenv("NOTEINDEX_LOG_LEVEL", "debug")
        cfg = IndexConfig()
        assert cfg.search_weights == (4.0, 3.0, 2.0, 1.0)
        assert cfg.search_limit == 7
        assert cfg.in_memory_db is True
        assert cfg.log_level == "DEBUG"


class TestValidation:
    def test_parse_weights_requires_four(self):
        with pytest.raises(ValueError):
            parse_weights("1,2,3")

    def test_weights_string_accepted(self):
        assert IndexConfig(search_weights="2,2,2,2").search_weights == (2.0, 2.0, 2.0, 2.0)

    @pytest.mark.parametrize("overrides", [
        {"search_weights": (1.0, 0.0, 1.0, 1.0)},
        {"busy_timeout_seconds": 0},
        {"search_limit": 0},
        {"log_level": "chatty"},
    ])
    def test_invalid_values_rejected(self, overrides):
        with pytest.raises(ValidationError):
            IndexConfig(**overrides)


class TestPaths:
    def test_relative_paths_resolve_against_base_dir(self, tmp_path):
        cfg = IndexConfig(base_dir=tmp_path, notes_dir=Path("n"))
        assert cfg.get_notes_dir() == tmp_path / "n"
        assert cfg.get_absolute_path(Path("/abs")) == Path("/abs")

    def test_db_url_creates_parent(self, tmp_path):
        cfg = IndexConfig(base_dir=tmp_path, database_path=Path("x/y/index.db"), in_memory_db=False)
        url = cfg.get_db_url()
        assert url == f"sqlite:///{tmp_path / 'x' / 'y' / 'index.db'}"
        assert (tmp_path / "x" / "y").is_dir()

    def test_in_memory_url(self):
        assert IndexConfig(in_memory_db=True).get_db_url() == "sqlite://"


class TestLoadConfig:
    def test_overrides_applied(self, tmp_path):
        cfg = load_config(base_dir=tmp_path, search_limit=3)
        assert cfg.search_limit == 3
        assert cfg.base_dir == tmp_path

    def test_invalid_field_names_key(self):
        with pytest.raises(ConfigurationError) as exc_info:
            load_config(log_level="chatty")
        assert exc_info.value.config_key == "log_level"
        assert exc_info.value.code == ErrorCode.CONFIG_INVALID

    def test_cross_field_failure_has_no_key(self):
        with pytest.raises(ConfigurationError) as exc_info:
            load_config(search_limit=0)
        assert exc_info.value.config_key is None

    def test_bad_environment_value(self, monkeypatch):
        monkeypatch.setenv("NOTEINDEX_SEARCH_WEIGHTS", "1,2")
        with pytest.raises(ConfigurationError):
            load_config()

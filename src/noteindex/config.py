"""Configuration module for the note index."""

import logging
import os
from pathlib import Path
from typing import Optional, Tuple

from dotenv import load_dotenv
from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from noteindex.exceptions import ConfigurationError

# Load environment variables from the project root .env file.
# Anchored to __file__ so it works regardless of the process CWD.
_PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent
load_dotenv(_PROJECT_ROOT / ".env")

# User-level config, lives alongside the default index location
_USER_ENV = Path.home() / ".noteindex" / ".env"
load_dotenv(_USER_ENV)


logger = logging.getLogger(__name__)

# Relative field weights for title, description, aliases, body
DEFAULT_SEARCH_WEIGHTS: Tuple[float, float, float, float] = (10.0, 5.0, 5.0, 1.0)


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in ("true", "1", "yes")


def parse_weights(value: str) -> Tuple[float, float, float, float]:
    """Parse a ``title,description,aliases,body`` weight string.

    Raises:
        ValueError: If the string does not hold exactly four numbers.
    """
    parts = [p.strip() for p in value.split(",") if p.strip()]
    if len(parts) != 4:
        raise ValueError(
            f"Expected 4 comma-separated search weights, got {len(parts)}: '{value}'"
        )
    return tuple(float(p) for p in parts)  # type: ignore[return-value]


def _default_search_limit() -> Optional[int]:
    raw = os.getenv("NOTEINDEX_SEARCH_LIMIT")
    if not raw:
        return None
    return int(raw)


def _default_weights() -> Tuple[float, float, float, float]:
    raw = os.getenv("NOTEINDEX_SEARCH_WEIGHTS")
    if not raw:
        return DEFAULT_SEARCH_WEIGHTS
    return parse_weights(raw)


class IndexConfig(BaseModel):
    """Configuration for the note index."""

    # Base directory that relative paths are resolved against
    base_dir: Path = Field(
        default_factory=lambda: Path(os.getenv("NOTEINDEX_BASE_DIR", "."))
    )
    # Root of the markdown note tree
    notes_dir: Path = Field(
        default_factory=lambda: Path(os.getenv("NOTEINDEX_NOTES_DIR", "notes"))
    )
    # SQLite index file
    database_path: Path = Field(
        default_factory=lambda: Path(
            os.getenv("NOTEINDEX_DATABASE_PATH", ".noteindex/index.db")
        )
    )
    # When True, the index lives in memory and must be rebuilt every run
    in_memory_db: bool = Field(
        default_factory=lambda: _env_flag("NOTEINDEX_IN_MEMORY_DB", "false")
    )
    # How long a writer waits on the SQLite file lock before giving up
    busy_timeout_seconds: float = Field(
        default_factory=lambda: float(os.getenv("NOTEINDEX_BUSY_TIMEOUT", "5.0"))
    )
    # bm25 weights: title, description, aliases, body
    search_weights: Tuple[float, float, float, float] = Field(
        default_factory=_default_weights
    )
    # Cap for searches that pass no explicit limit; None returns every match
    search_limit: Optional[int] = Field(default_factory=_default_search_limit)
    # Delete topic/tag rows nobody references at the end of a full rebuild
    prune_unused_on_rebuild: bool = Field(
        default_factory=lambda: _env_flag("NOTEINDEX_PRUNE_UNUSED", "true")
    )
    log_level: str = Field(
        default_factory=lambda: os.getenv("NOTEINDEX_LOG_LEVEL", "INFO")
    )

    @field_validator("search_weights", mode="before")
    @classmethod
    def _coerce_weights(cls, v):
        if isinstance(v, str):
            return parse_weights(v)
        return v

    @field_validator("log_level")
    @classmethod
    def _validate_log_level(cls, v: str) -> str:
        level = v.upper()
        if level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"Unknown log level '{v}'")
        return level

    @model_validator(mode="after")
    def _validate_limits(self) -> "IndexConfig":
        """Reject weights and limits that would make queries meaningless."""
        if any(w <= 0 for w in self.search_weights):
            raise ValueError("search_weights must all be > 0")
        if self.busy_timeout_seconds <= 0:
            raise ValueError("busy_timeout_seconds must be > 0")
        if self.search_limit is not None and self.search_limit < 1:
            raise ValueError("search_limit must be >= 1")
        return self

    def get_absolute_path(self, path: Path) -> Path:
        """Convert a relative path to an absolute path based on base_dir."""
        if path.is_absolute():
            return path
        return self.base_dir / path

    def get_notes_dir(self) -> Path:
        """Get the absolute path of the notes root."""
        return self.get_absolute_path(self.notes_dir)

    def get_db_url(self, database_path: Optional[Path] = None) -> str:
        """Get the database URL for SQLite."""
        if self.in_memory_db and database_path is None:
            return "sqlite://"
        db_path = self.get_absolute_path(database_path or self.database_path)
        db_path.parent.mkdir(parents=True, exist_ok=True)
        return f"sqlite:///{db_path}"

    def get_log_level(self) -> int:
        return getattr(logging, self.log_level)


def load_config(**overrides) -> IndexConfig:
    """Build an IndexConfig from the environment plus explicit overrides.

    Raises:
        ConfigurationError: If a setting fails validation. ``config_key``
            names the first offending field.
    """
    try:
        return IndexConfig(**overrides)
    except ValidationError as e:
        first = e.errors()[0] if e.errors() else {}
        loc = first.get("loc") or ()
        key = str(loc[0]) if loc else None
        raise ConfigurationError(
            f"Invalid index configuration: {first.get('msg', e)}",
            config_key=key,
        ) from e
    except ValueError as e:
        # Malformed environment values fail inside the default factories
        raise ConfigurationError(f"Invalid index configuration: {e}") from e


# Create a global config instance
config = IndexConfig()

"""Configuration management for crates-dump."""

import os
from pathlib import Path
from typing import Dict, List, Optional

import toml
from pydantic import BaseModel, Field, ValidationError, field_validator

from .errors import DumpConfigError

DEFAULT_RESOURCE = "https://static.crates.io/db-dump.tar.gz"

DEFAULT_TABLES = (
    "badges",
    "categories",
    "crate_owners",
    "crates",
    "crates_categories",
    "crates_keywords",
    "dependencies",
    "keywords",
    "metadata",
    "reserved_crate_names",
    "teams",
    "users",
    "version_authors",
    "version_downloads",
    "versions",
)

MINIMAL_TABLES = ("crates", "dependencies", "versions")

DEFAULT_TARGET_PATH = "data"
DEFAULT_DATABASE_NAME = "db.sqlite"
TABLE_EXTENSION = ".csv"


def default_cache_dir() -> str:
    """Get default directory for downloaded dump archives."""
    if os.name == "nt":
        cache_base = os.environ.get("LOCALAPPDATA", str(Path.home() / "AppData" / "Local"))
    else:
        cache_base = os.environ.get("XDG_CACHE_HOME", str(Path.home() / ".cache"))
    return os.path.join(cache_base, "crates-dump")


def tables_to_files(tables: List[str]) -> List[str]:
    """Map table names to the CSV file names they are extracted to."""
    return [f"{table}{TABLE_EXTENSION}" for table in tables]


def files_to_tables(files: List[str]) -> List[str]:
    """Map CSV file names back to table names (file stems)."""
    return [Path(f).stem for f in files]


class CacheConfig(BaseModel):
    """Configuration for the dump download cache."""

    cache_dir: str = Field(
        default_factory=default_cache_dir,
        description="Directory holding downloaded archives and their metadata",
    )
    ttl_hours: float = Field(
        default=24,
        ge=0,
        description="Re-download a cached archive once it is older than this",
    )
    offline: bool = Field(
        default=False,
        description="Never hit the network; use cached copies only",
    )
    progress_bar: bool = Field(default=False)
    timeout: float = Field(default=60.0, gt=0, description="HTTP timeout in seconds")
    user_agent: str = Field(default="crates-dump (https://github.com/crates-dump)")

    @field_validator("cache_dir")
    @classmethod
    def expand_path(cls, v):
        """Expand user paths and environment variables."""
        return os.path.expanduser(os.path.expandvars(v))


class LoaderConfig(BaseModel):
    """Everything the loader needs to refresh and load the dump."""

    resource: str = Field(default=DEFAULT_RESOURCE, min_length=1)
    tables: List[str] = Field(default_factory=lambda: list(DEFAULT_TABLES))
    target_path: str = Field(default=DEFAULT_TARGET_PATH, min_length=1)
    table_schema: Dict[str, str] = Field(default_factory=dict)
    preload: bool = Field(
        default=False,
        description="Materialize every CSV view into a native table",
    )
    database_name: str = Field(default=DEFAULT_DATABASE_NAME, min_length=1)
    cache: CacheConfig = Field(default_factory=CacheConfig)

    @field_validator("tables")
    @classmethod
    def check_tables(cls, v):
        """Tables must be non-empty, unique, plain names."""
        if not v:
            raise ValueError("at least one table must be requested")
        if len(set(v)) != len(v):
            raise ValueError(f"duplicate tables requested: {v}")
        for table in v:
            if not table or "/" in table or "\\" in table or table in (".", ".."):
                raise ValueError(f"invalid table name: {table!r}")
        return v

    @field_validator("target_path")
    @classmethod
    def expand_target(cls, v):
        """Expand user paths and environment variables."""
        return os.path.expanduser(os.path.expandvars(v))

    @property
    def sentinel_table(self) -> str:
        """First requested table, used as the freshness reference."""
        return self.tables[0]


def default_config() -> LoaderConfig:
    """Configuration for the full public dump with all default tables."""
    return LoaderConfig()


class ConfigManager:
    """Finds and loads the TOML configuration file."""

    def __init__(self, config_path: Optional[str] = None):
        """Initialize configuration manager.

        Args:
            config_path: Path to configuration file. If None, searches standard locations.
        """
        self.config_path = config_path or self._find_config_file()
        self._config: Optional[LoaderConfig] = None

    def _find_config_file(self) -> str:
        """Find configuration file in standard locations."""
        search_paths = [
            os.path.expanduser("~/.config/crates-dump/config.toml"),
            "crates_dump.toml",
        ]

        for path in search_paths:
            if os.path.exists(path):
                return path

        return search_paths[0]

    @property
    def config(self) -> LoaderConfig:
        """Get configuration, loading if necessary."""
        if self._config is None:
            self._config = self._load_config()
        return self._config

    def _load_config(self) -> LoaderConfig:
        """Load configuration from TOML file.

        The file holds a ``[loader]`` section (with an optional
        ``[loader.table_schema]`` table) and a ``[cache]`` section.
        """
        if not os.path.exists(self.config_path):
            return default_config()

        try:
            with open(self.config_path, "r") as f:
                config_data = toml.load(f)
            loader_data = dict(config_data.get("loader", {}))
            loader_data["cache"] = config_data.get("cache", {})
            return LoaderConfig(**loader_data)
        except (toml.TomlDecodeError, ValidationError, ValueError, TypeError) as e:
            raise DumpConfigError(f"Invalid configuration file {self.config_path}: {e}") from e

    def reload(self):
        """Drop the loaded configuration so the next access re-reads the file."""
        self._config = None

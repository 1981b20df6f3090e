"""Refreshing the dump and loading it into DuckDB.

Typical use::

    conn = (
        DumpLoader.builder()
        .minimal()
        .preload(True)
        .build()
        .update()
        .open_db()
    )
    conn.execute("SELECT name FROM crates LIMIT 10").fetchall()
"""

import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Optional, Set, Union

import duckdb
from pydantic import ValidationError

from .cache import CacheEntry, DumpCache
from .config import (
    CacheConfig,
    LoaderConfig,
    MINIMAL_TABLES,
    TABLE_EXTENSION,
    files_to_tables,
    tables_to_files,
)
from .errors import DumpConfigError, DumpDatabaseError, DumpIOError
from .extract import extract_tables, file_mtime, is_fresh, newest_mtime
from .schema import TableDefinition, build_load_script

logger = logging.getLogger(__name__)

# open_db() decisions
DB_MISSING = "missing"
DB_STALE = "stale"
DB_FRESH = "fresh"

# Records which requested files the last extracted archive did not contain
MANIFEST_NAME = ".extract-manifest.json"

_EXISTING_OBJECTS_SQL = """
SELECT table_name, table_type
FROM information_schema.tables
WHERE table_schema = current_schema()
"""


class DumpLoader:
    """Keeps extracted dump files and a DuckDB database up to date."""

    def __init__(self, config: LoaderConfig, cache: Optional[DumpCache] = None):
        """Initialize loader.

        Args:
            config: Validated loader configuration
            cache: Download cache (built from config.cache if None)
        """
        self.config = config
        self.cache = cache or DumpCache(config.cache)
        self.extracted: List[Path] = []

    @classmethod
    def from_config(cls, config: LoaderConfig) -> "DumpLoader":
        return cls(config)

    @staticmethod
    def builder() -> "DumpLoaderBuilder":
        return DumpLoaderBuilder()

    @property
    def target_path(self) -> Path:
        return Path(self.config.target_path)

    @property
    def tables(self) -> List[str]:
        return list(self.config.tables)

    @property
    def files(self) -> List[str]:
        """CSV file names extracted for the requested tables."""
        return tables_to_files(self.config.tables)

    @property
    def preload(self) -> bool:
        return self.config.preload

    def csv_path(self, table: str) -> Path:
        return self.target_path / tables_to_files([table])[0]

    def csv_paths(self) -> List[Path]:
        return [self.csv_path(table) for table in self.config.tables]

    def sqlite_path(self) -> Path:
        """Path of the database file built from the extracted tables."""
        return self.target_path / self.config.database_name

    # === Refresh ===

    def update(self) -> "DumpLoader":
        """Make sure the requested CSV files are extracted and current.

        Extraction is skipped when every requested file exists and none is
        older than the cached archive. Files the archive did not contain
        last time it was extracted are not waited for.

        Returns:
            self, for chaining

        Raises:
            DumpNotFoundError: If the dump cannot be fetched
            DumpIOError: If the archive cannot be unpacked
        """
        entry = self.cache.resolve(self.config.resource)

        if self._extracted_fresh(entry):
            logger.info("Extracted tables in %s are up to date", self.target_path)
            self.extracted = []
            return self

        self.extracted = extract_tables(entry.path, self.target_path, self.files)
        missing = sorted(set(self.files) - {p.name for p in self.extracted})
        self._write_manifest(entry, missing)
        return self

    def _extracted_fresh(self, entry: CacheEntry) -> bool:
        known_missing = self._known_missing(entry)
        expected = [p for p in self.csv_paths() if p.name not in known_missing]
        if not expected:
            return bool(known_missing)
        return is_fresh(expected, entry.created_at())

    def manifest_path(self) -> Path:
        return self.target_path / MANIFEST_NAME

    def _known_missing(self, entry: CacheEntry) -> Set[str]:
        """Requested files absent from this very archive at its last extraction."""
        path = self.manifest_path()
        if not path.exists():
            return set()

        try:
            with open(path, "r", encoding="utf-8") as f:
                manifest = json.load(f)
        except (OSError, json.JSONDecodeError):
            logger.debug("Ignoring unreadable manifest %s", path)
            return set()

        if (
            manifest.get("archive") != str(entry.path)
            or manifest.get("archive_created_at") != entry.created_at()
        ):
            return set()
        return set(manifest.get("missing", []))

    def _write_manifest(self, entry: CacheEntry, missing: List[str]) -> None:
        path = self.manifest_path()
        manifest = {
            "archive": str(entry.path),
            "archive_created_at": entry.created_at(),
            "missing": missing,
        }
        try:
            with open(path, "w", encoding="utf-8") as f:
                json.dump(manifest, f, indent=2)
        except OSError as e:
            raise DumpIOError(f"Failed to write {path}: {e}") from e

    # === Schema ===

    def table_definition(self, table: str) -> TableDefinition:
        return TableDefinition(
            table,
            self.csv_path(table),
            schema=self.config.table_schema.get(table),
            preload=self.config.preload,
        )

    def table_definitions(self) -> List[TableDefinition]:
        return [self.table_definition(table) for table in self.config.tables]

    def file_to_query(self, table: str) -> str:
        """SQL statements exposing one table."""
        return self.table_definition(table).to_sql()

    def load_script(self) -> str:
        """SQL batch exposing every requested table."""
        return build_load_script(self.table_definitions())

    def load_dump_into(self, conn: duckdb.DuckDBPyConnection) -> None:
        """Create the views (and preloaded tables) on a connection.

        The whole batch runs in one transaction, so a failing statement
        leaves the database as it was.

        Raises:
            DumpDatabaseError: If DuckDB rejects a statement
        """
        definitions = self.table_definitions()
        script = build_load_script(definitions)

        try:
            existing = {
                name.lower(): kind
                for name, kind in conn.execute(_EXISTING_OBJECTS_SQL).fetchall()
            }
        except duckdb.Error as e:
            raise DumpDatabaseError(f"Failed to inspect database: {e}") from e

        drops = [drop for d in definitions for drop in d.conflicting_drops(existing)]
        if drops:
            script = "\n".join(drops) + "\n" + script

        logger.debug("Load script:\n%s", script)

        try:
            conn.begin()
        except duckdb.Error as e:
            # The caller's open transaction is left alone
            raise DumpDatabaseError(f"Failed to start load transaction: {e}") from e

        try:
            conn.execute(script)
            conn.commit()
        except duckdb.Error as e:
            self._rollback(conn)
            raise DumpDatabaseError(f"Failed to create tables: {e}") from e

        logger.info("Loaded %d table(s)", len(definitions))

    @staticmethod
    def _rollback(conn: duckdb.DuckDBPyConnection) -> None:
        try:
            conn.rollback()
        except duckdb.Error as e:
            # Transaction already ended by the failing COMMIT
            logger.debug("Rollback failed: %s", e)

    # === Database ===

    def database_state(self) -> str:
        """Decide whether the database file has to be (re)built.

        Returns:
            DB_MISSING if there is no database file, DB_STALE if it is older
            than the newest extracted table file, DB_FRESH otherwise
        """
        db_mtime = file_mtime(self.sqlite_path())
        if db_mtime is None:
            return DB_MISSING

        newest = newest_mtime(self.csv_paths())
        if newest is not None and db_mtime < newest:
            return DB_STALE
        return DB_FRESH

    def open_db(self, force: bool = False) -> duckdb.DuckDBPyConnection:
        """Open the database, building it first if needed.

        Args:
            force: Rebuild even if the database looks fresh

        Raises:
            DumpIOError: If a stale database cannot be removed
            DumpDatabaseError: If the database cannot be opened or loaded
        """
        path = self.sqlite_path()
        state = self.database_state()
        if force and state == DB_FRESH:
            state = DB_STALE

        if state == DB_STALE:
            logger.info("Database %s is older than the extracted tables, rebuilding", path)
            self._remove_database(path)

        try:
            self.target_path.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise DumpIOError(f"Failed to create {self.target_path}: {e}") from e

        try:
            conn = duckdb.connect(str(path))
        except duckdb.Error as e:
            raise DumpDatabaseError(f"Failed to open {path}: {e}") from e

        if state != DB_FRESH:
            try:
                self.load_dump_into(conn)
            except DumpDatabaseError:
                conn.close()
                # An empty database file would look fresh on the next call
                self._remove_database(path)
                raise
        else:
            logger.debug("Database %s is up to date", path)

        return conn

    @staticmethod
    def _remove_database(path: Path) -> None:
        for candidate in (path, path.with_name(path.name + ".wal")):
            try:
                candidate.unlink(missing_ok=True)
            except OSError as e:
                raise DumpIOError(f"Failed to remove {candidate}: {e}") from e

    # === Status ===

    def status(self) -> Dict[str, Any]:
        """Freshness of the cached archive, extracted files and database."""
        entry = self.cache.peek(self.config.resource)
        db_path = self.sqlite_path()

        tables = []
        for table in self.config.tables:
            path = self.csv_path(table)
            mtime = file_mtime(path)
            tables.append({
                "table": table,
                "path": str(path),
                "exists": mtime is not None,
                "size_bytes": os.path.getsize(path) if mtime is not None else 0,
                "mtime": mtime,
            })

        return {
            "resource": self.config.resource,
            "cached_archive": str(entry.path) if entry else None,
            "archive_created_at": entry.created_at() if entry else None,
            "extracted_fresh": (
                self._extracted_fresh(entry) if entry else False
            ),
            "database": str(db_path),
            "database_state": self.database_state(),
            "preload": self.config.preload,
            "tables": tables,
        }


class DumpLoaderBuilder:
    """Fluent construction of a DumpLoader.

    Setters only record values; validation happens once, in build().
    """

    def __init__(self, config: Optional[LoaderConfig] = None):
        self._fields: Dict[str, Any] = config.model_dump() if config else {}
        self._cache: Optional[DumpCache] = None
        self._bad_files: List[str] = []

    def resource(self, path: Union[str, Path]) -> "DumpLoaderBuilder":
        self._fields["resource"] = str(path)
        return self

    def files(self, files: List[Union[str, Path]]) -> "DumpLoaderBuilder":
        """Request tables by CSV file name (``crates.csv``)."""
        names = [str(f) for f in files]
        self._bad_files = [name for name in names if not name.endswith(TABLE_EXTENSION)]
        self._fields["tables"] = files_to_tables(names)
        return self

    def tables(self, tables: List[str]) -> "DumpLoaderBuilder":
        self._bad_files = []
        self._fields["tables"] = list(tables)
        return self

    def table_schema(self, table: str, schema: str) -> "DumpLoaderBuilder":
        """Name the columns of a table with a ``CREATE TABLE`` statement."""
        self._fields.setdefault("table_schema", {})[table] = schema
        return self

    def target_path(self, path: Union[str, Path]) -> "DumpLoaderBuilder":
        self._fields["target_path"] = str(path)
        return self

    def database_name(self, name: str) -> "DumpLoaderBuilder":
        self._fields["database_name"] = name
        return self

    def cache(self, cache: Union[CacheConfig, DumpCache]) -> "DumpLoaderBuilder":
        if isinstance(cache, DumpCache):
            self._cache = cache
            self._fields["cache"] = cache.config.model_dump()
        else:
            self._cache = None
            self._fields["cache"] = cache.model_dump()
        return self

    def preload(self, should: bool = True) -> "DumpLoaderBuilder":
        self._fields["preload"] = should
        return self

    def minimal(self) -> "DumpLoaderBuilder":
        """Only the crates, dependencies and versions tables."""
        return self.tables(list(MINIMAL_TABLES))

    def build(self) -> DumpLoader:
        """Validate the configuration and create the loader.

        Raises:
            DumpConfigError: If the configuration is invalid
        """
        if self._bad_files:
            raise DumpConfigError(f"Table files must end in {TABLE_EXTENSION}: {self._bad_files}")
        try:
            config = LoaderConfig(**self._fields)
        except ValidationError as e:
            raise DumpConfigError(f"Invalid loader configuration: {e}") from e
        return DumpLoader(config, cache=self._cache)

"""crates-dump - SQL access to the crates.io database dump.

Downloads the published dump archive, extracts the requested CSV files and
exposes them as DuckDB views, optionally materialized into native tables.
"""

__version__ = "0.3.0"

from .errors import (
    CratesDumpError,
    DumpConfigError,
    DumpDatabaseError,
    DumpIOError,
    DumpNotFoundError,
)
from .config import (
    CacheConfig,
    LoaderConfig,
    DEFAULT_RESOURCE,
    DEFAULT_TABLES,
    MINIMAL_TABLES,
    default_config,
)
from .cache import CacheEntry, DumpCache
from .loader import DumpLoader, DumpLoaderBuilder

__all__ = [
    "__version__",
    "CratesDumpError",
    "DumpConfigError",
    "DumpDatabaseError",
    "DumpIOError",
    "DumpNotFoundError",
    "CacheConfig",
    "LoaderConfig",
    "DEFAULT_RESOURCE",
    "DEFAULT_TABLES",
    "MINIMAL_TABLES",
    "default_config",
    "CacheEntry",
    "DumpCache",
    "DumpLoader",
    "DumpLoaderBuilder",
]

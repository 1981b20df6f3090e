"""Exception types raised by crates-dump.

Every failure of a collaborator (download cache, archive, DuckDB) is
wrapped into one of these and re-raised with the original exception
chained as ``__cause__``.
"""


class CratesDumpError(Exception):
    """Base class for all crates-dump errors."""


class DumpNotFoundError(CratesDumpError):
    """The dump resource could not be resolved or fetched."""


class DumpDatabaseError(CratesDumpError):
    """DuckDB rejected a statement while creating or loading tables."""


class DumpIOError(CratesDumpError):
    """Filesystem or archive failure while unpacking the dump."""


class DumpConfigError(CratesDumpError):
    """Loader or cache configuration is invalid."""

"""Selective extraction of CSV files from the dump archive."""

import logging
import shutil
import tarfile
import zlib
from pathlib import Path, PurePosixPath
from typing import Iterable, List, Optional

from .errors import DumpIOError

logger = logging.getLogger(__name__)


def file_mtime(path: Path) -> Optional[float]:
    """Modification time of a file, or None if it does not exist.

    Raises:
        DumpIOError: If the file exists but cannot be stat'ed
    """
    try:
        return path.stat().st_mtime
    except FileNotFoundError:
        return None
    except OSError as e:
        raise DumpIOError(f"Failed to read metadata of {path}: {e}") from e


def oldest_mtime(paths: Iterable[Path]) -> Optional[float]:
    """Oldest mtime among paths, or None if any of them is missing."""
    oldest = None
    for path in paths:
        mtime = file_mtime(path)
        if mtime is None:
            return None
        if oldest is None or mtime < oldest:
            oldest = mtime
    return oldest


def newest_mtime(paths: Iterable[Path]) -> Optional[float]:
    """Newest mtime among the paths that exist, or None if none does."""
    mtimes = [m for m in (file_mtime(p) for p in paths) if m is not None]
    return max(mtimes) if mtimes else None


def is_fresh(paths: List[Path], archive_created_at: float) -> bool:
    """Check whether extracted files are at least as new as the archive.

    Every file must exist and none may be older than the archive's
    creation time.
    """
    oldest = oldest_mtime(paths)
    return oldest is not None and archive_created_at <= oldest


def extract_tables(archive_path: Path, target_dir: Path, files: List[str]) -> List[Path]:
    """Unpack the requested files from a gzip tar archive.

    Members are matched on their base name only, wherever they sit in the
    archive. Each match is written to ``target_dir/<base name>``,
    overwriting existing files; everything else is skipped.

    Args:
        archive_path: Local .tar.gz archive
        target_dir: Destination directory, created if needed
        files: Base names of the files to extract

    Returns:
        Paths written, in archive order

    Raises:
        DumpIOError: If the archive cannot be read or a file cannot be written
    """
    wanted = set(files)
    extracted: List[Path] = []

    try:
        target_dir.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        raise DumpIOError(f"Failed to create {target_dir}: {e}") from e

    logger.info("Extracting %d file(s) from %s into %s", len(wanted), archive_path, target_dir)

    try:
        with tarfile.open(archive_path, "r:gz") as tar:
            member: tarfile.TarInfo
            for member in tar:
                if not member.isfile():
                    continue
                name = PurePosixPath(member.name).name
                if name not in wanted:
                    continue

                destination = target_dir / name
                source = tar.extractfile(member)
                if source is None:
                    raise DumpIOError(f"Cannot read archive member {member.name}")
                # Stream instead of tar.extract() so mtime is the extraction time.
                with source, open(destination, "wb") as dst:
                    shutil.copyfileobj(source, dst)

                logger.debug("Extracted %s -> %s", member.name, destination)
                extracted.append(destination)
    except (tarfile.TarError, zlib.error, EOFError, OSError) as e:
        raise DumpIOError(f"Failed to unpack {archive_path}: {e}") from e

    missing = wanted - {p.name for p in extracted}
    for name in sorted(missing):
        logger.warning("%s not found in %s", name, archive_path)

    return extracted

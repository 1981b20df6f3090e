"""Download cache for the dump archive.

Resolves a resource locator (HTTP(S) URL, ``file://`` URL or plain path)
to a local file. Remote archives are stored in the cache directory next
to a small JSON metadata file recording when they were fetched.
"""

import hashlib
import json
import logging
import os
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Dict, List, Optional
from urllib.parse import urlparse

import requests
from rich.progress import (
    BarColumn,
    DownloadColumn,
    Progress,
    TextColumn,
    TransferSpeedColumn,
)

from .config import CacheConfig
from .errors import DumpIOError, DumpNotFoundError

logger = logging.getLogger(__name__)

CHUNK_SIZE = 1024 * 1024


def is_remote(resource: str) -> bool:
    """Check whether a resource has to be downloaded."""
    return urlparse(resource).scheme in ("http", "https")


class CacheEntry:
    """A resource cached on local disk."""

    def __init__(
        self,
        resource: str,
        path: Path,
        cached_at: datetime,
        checked_at: Optional[datetime] = None,
        etag: Optional[str] = None,
    ):
        """Initialize cache entry.

        Args:
            resource: Resource locator the entry was resolved from
            path: Local copy of the resource
            cached_at: When the local copy was written
            checked_at: When the remote was last asked for a newer copy
            etag: ETag returned by the server, if any
        """
        self.resource = resource
        self.path = Path(path)
        self.cached_at = cached_at
        self.checked_at = checked_at or cached_at
        self.etag = etag

    def created_at(self) -> float:
        """Creation time of the local copy as a POSIX timestamp."""
        return self.cached_at.timestamp()

    def is_expired(self, ttl: timedelta) -> bool:
        return datetime.now() - self.checked_at >= ttl

    def to_dict(self) -> Dict[str, Any]:
        return {
            "resource": self.resource,
            "path": str(self.path),
            "cached_at": self.cached_at.isoformat(),
            "checked_at": self.checked_at.isoformat(),
            "etag": self.etag,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CacheEntry":
        return cls(
            resource=data["resource"],
            path=Path(data["path"]),
            cached_at=datetime.fromisoformat(data["cached_at"]),
            checked_at=datetime.fromisoformat(data.get("checked_at") or data["cached_at"]),
            etag=data.get("etag"),
        )

    def __repr__(self) -> str:
        return f"CacheEntry({self.resource!r}, {str(self.path)!r}, cached_at={self.cached_at.isoformat()})"


class DumpCache:
    """Local cache of downloaded dump archives."""

    def __init__(
        self,
        config: Optional[CacheConfig] = None,
        session: Optional[requests.Session] = None,
    ):
        """Initialize dump cache.

        Args:
            config: Cache configuration (defaults used if None)
            session: HTTP session, mainly to allow injecting one in tests
        """
        self.config = config or CacheConfig()
        self.cache_dir = Path(self.config.cache_dir)
        self.ttl = timedelta(hours=self.config.ttl_hours)
        self._session = session

    @property
    def session(self) -> requests.Session:
        if self._session is None:
            self._session = requests.Session()
            self._session.headers["User-Agent"] = self.config.user_agent
        return self._session

    def cached_path(self, resource: str) -> Path:
        """Get a local path for a resource, downloading it if stale.

        Raises:
            DumpNotFoundError: If the resource cannot be resolved
        """
        return self.resolve(resource).path

    def resolve(self, resource: str) -> CacheEntry:
        """Resolve a resource to its cache entry.

        Local resources are used in place. Remote resources are downloaded
        when missing or when the last check is older than the TTL.

        Raises:
            DumpNotFoundError: If the resource cannot be resolved
        """
        if not is_remote(resource):
            return self._resolve_local(resource)
        return self._resolve_remote(resource)

    def peek(self, resource: str) -> Optional[CacheEntry]:
        """Look up a resource without fetching anything."""
        if is_remote(resource):
            return self._load_entry(resource)
        try:
            return self._resolve_local(resource)
        except DumpNotFoundError:
            return None

    def _resolve_local(self, resource: str) -> CacheEntry:
        parsed = urlparse(resource)
        raw_path = parsed.path if parsed.scheme == "file" else resource
        path = Path(raw_path).expanduser()

        try:
            mtime = path.stat().st_mtime
        except OSError as e:
            raise DumpNotFoundError(f"Dump not found: {resource}") from e

        if not path.is_file():
            raise DumpNotFoundError(f"Dump is not a file: {resource}")

        return CacheEntry(resource, path, datetime.fromtimestamp(mtime))

    def _resolve_remote(self, resource: str) -> CacheEntry:
        local_path = self.path_for(resource)
        entry = self._load_entry(resource)

        if entry is not None and self.config.offline:
            logger.debug("Offline, using cached %s", local_path)
            return entry
        if self.config.offline:
            raise DumpNotFoundError(f"Dump not cached and cache is offline: {resource}")
        if entry is not None and not entry.is_expired(self.ttl):
            logger.debug("Cache hit for %s (%s)", resource, local_path)
            return entry

        return self._fetch(resource, local_path, entry)

    def path_for(self, resource: str) -> Path:
        """Cache file for a remote resource."""
        digest = hashlib.sha256(resource.encode("utf-8")).hexdigest()[:16]
        name = Path(urlparse(resource).path).name or "resource"
        return self.cache_dir / f"{digest}-{name}"

    def _meta_path(self, local_path: Path) -> Path:
        return local_path.with_name(local_path.name + ".json")

    def _load_entry(self, resource: str) -> Optional[CacheEntry]:
        local_path = self.path_for(resource)
        meta_path = self._meta_path(local_path)
        if not local_path.exists() or not meta_path.exists():
            return None

        try:
            with open(meta_path, "r", encoding="utf-8") as f:
                return CacheEntry.from_dict(json.load(f))
        except (OSError, json.JSONDecodeError, KeyError, ValueError):
            logger.debug("Ignoring unreadable cache metadata %s", meta_path)
            return None

    def _save_entry(self, entry: CacheEntry) -> None:
        meta_path = self._meta_path(entry.path)
        try:
            with open(meta_path, "w", encoding="utf-8") as f:
                json.dump(entry.to_dict(), f, indent=2)
        except OSError as e:
            raise DumpNotFoundError(f"Failed to write cache metadata {meta_path}") from e

    def _fetch(
        self,
        resource: str,
        local_path: Path,
        previous: Optional[CacheEntry],
    ) -> CacheEntry:
        """Download a resource, or revalidate the cached copy by ETag."""
        headers = {}
        if previous is not None and previous.etag:
            headers["If-None-Match"] = previous.etag

        tmp_path = local_path.with_name(local_path.name + ".tmp")
        logger.info("Fetching %s", resource)

        try:
            self.cache_dir.mkdir(parents=True, exist_ok=True)
            with self.session.get(
                resource,
                headers=headers,
                stream=True,
                timeout=self.config.timeout,
            ) as response:
                if response.status_code == 304 and previous is not None:
                    logger.debug("%s not modified", resource)
                    previous.checked_at = datetime.now()
                    self._save_entry(previous)
                    return previous

                response.raise_for_status()
                total = int(response.headers.get("content-length", 0))
                self._write_body(response, tmp_path, total)
                etag = response.headers.get("ETag")

            tmp_path.replace(local_path)
        except requests.RequestException as e:
            tmp_path.unlink(missing_ok=True)
            raise DumpNotFoundError(f"Failed to fetch {resource}: {e}") from e
        except OSError as e:
            tmp_path.unlink(missing_ok=True)
            raise DumpNotFoundError(f"Failed to store {resource} in {self.cache_dir}: {e}") from e

        entry = CacheEntry(resource, local_path, datetime.now(), etag=etag)
        self._save_entry(entry)
        logger.info("Cached %s at %s", resource, local_path)
        return entry

    def _write_body(self, response: requests.Response, tmp_path: Path, total: int) -> None:
        with open(tmp_path, "wb") as f:
            if not self.config.progress_bar:
                for chunk in response.iter_content(chunk_size=CHUNK_SIZE):
                    f.write(chunk)
                return

            with Progress(
                TextColumn("[progress.description]{task.description}"),
                BarColumn(),
                DownloadColumn(),
                TransferSpeedColumn(),
            ) as progress:
                task = progress.add_task("Downloading dump", total=total or None)
                for chunk in response.iter_content(chunk_size=CHUNK_SIZE):
                    f.write(chunk)
                    progress.update(task, advance=len(chunk))

    def entries(self) -> List[CacheEntry]:
        """All entries currently stored in the cache directory."""
        if not self.cache_dir.exists():
            return []

        entries = []
        for meta_path in sorted(self.cache_dir.glob("*.json")):
            try:
                with open(meta_path, "r", encoding="utf-8") as f:
                    entry = CacheEntry.from_dict(json.load(f))
            except (OSError, json.JSONDecodeError, KeyError, ValueError):
                continue
            if entry.path.exists():
                entries.append(entry)
        return entries

    def clear(self) -> int:
        """Delete all cached archives and metadata.

        Returns:
            Number of files removed
        """
        if not self.cache_dir.exists():
            return 0

        removed = 0
        for path in self.cache_dir.iterdir():
            if not path.is_file():
                continue
            try:
                path.unlink()
            except OSError as e:
                raise DumpIOError(f"Failed to remove {path}: {e}") from e
            removed += 1
        return removed

    def get_cache_info(self) -> Dict[str, Any]:
        """Get cache status information."""
        entries = self.entries()
        return {
            "cache_dir": str(self.cache_dir),
            "ttl_hours": self.ttl.total_seconds() / 3600,
            "offline": self.config.offline,
            "entries": [
                {
                    "resource": entry.resource,
                    "path": str(entry.path),
                    "size_bytes": os.path.getsize(entry.path),
                    "cached_at": entry.cached_at,
                    "expired": entry.is_expired(self.ttl),
                }
                for entry in entries
            ],
        }

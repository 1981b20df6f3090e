"""Shared fixtures: a small dump archive shaped like the real one."""

import io
import tarfile
from pathlib import Path

import pytest

from crates_dump import CacheConfig, DumpLoader

DUMP_DIR = "2024-01-01-020017"

TEST_CSV = "id,name\n3,awooo\n"
OTHER_CSV = "id,label\n1,first\n2,second\n"


def _add_file(tar: tarfile.TarFile, name: str, content: str) -> None:
    data = content.encode("utf-8")
    info = tarfile.TarInfo(name)
    info.size = len(data)
    info.mtime = 1_000_000  # far in the past, must not leak into extracted files
    tar.addfile(info, io.BytesIO(data))


def make_archive(path: Path, files: dict) -> Path:
    """Write a .tar.gz with the given {member name: content}."""
    with tarfile.open(path, "w:gz") as tar:
        for name, content in files.items():
            _add_file(tar, name, content)
    return path


@pytest.fixture
def dump_archive(tmp_path):
    """Dump with test.csv and other.csv under a dated data directory."""
    return make_archive(
        tmp_path / "test.tar.gz",
        {
            f"{DUMP_DIR}/README.md": "crates.io dump\n",
            f"{DUMP_DIR}/data/test.csv": TEST_CSV,
            f"{DUMP_DIR}/data/other.csv": OTHER_CSV,
            f"{DUMP_DIR}/data/unused.csv": "a\n1\n",
        },
    )


@pytest.fixture
def target_dir(tmp_path):
    return tmp_path / "testdata" / "extracted"


@pytest.fixture
def cache_config(tmp_path):
    return CacheConfig(cache_dir=str(tmp_path / "cache"))


@pytest.fixture
def builder(dump_archive, target_dir, cache_config):
    """Builder pointed at the fixture archive, requesting the test table."""
    return (
        DumpLoader.builder()
        .resource(dump_archive)
        .target_path(target_dir)
        .tables(["test"])
        .cache(cache_config)
    )


@pytest.fixture
def archive_factory(tmp_path):
    """Build extra archives inside the test's tmp_path."""

    def factory(name: str, files: dict) -> Path:
        return make_archive(tmp_path / name, files)

    return factory

"""Tests for the command line interface."""

import pytest
from click.testing import CliRunner

from crates_dump.cli import cli


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def base_args(dump_archive, target_dir, tmp_path, monkeypatch):
    monkeypatch.setenv("XDG_CACHE_HOME", str(tmp_path / "xdg"))
    monkeypatch.chdir(tmp_path)
    return [
        "--resource", str(dump_archive),
        "--target", str(target_dir),
        "--table", "test",
        "--table", "other",
    ]


class TestCli:
    """Tests for the crates-dump commands."""

    def test_version(self, runner):
        result = runner.invoke(cli, ["--version"])
        assert result.exit_code == 0

    def test_update(self, runner, base_args, target_dir):
        result = runner.invoke(cli, base_args + ["update"])

        assert result.exit_code == 0, result.output
        assert "Extracted 2 table(s)" in result.output
        assert (target_dir / "test.csv").exists()

        result = runner.invoke(cli, base_args + ["update"])
        assert "up to date" in result.output

    def test_load_and_query(self, runner, base_args, target_dir):
        result = runner.invoke(cli, base_args + ["--preload", "load"])
        assert result.exit_code == 0, result.output
        assert (target_dir / "db.sqlite").exists()

        result = runner.invoke(cli, base_args + ["query", "SELECT name FROM test"])
        assert result.exit_code == 0, result.output
        assert "awooo" in result.output
        assert "1 row(s)" in result.output

    def test_query_limit(self, runner, base_args):
        runner.invoke(cli, base_args + ["load"])
        result = runner.invoke(cli, base_args + ["query", "SELECT * FROM other", "--limit", "1"])

        assert result.exit_code == 0, result.output
        assert "first" in result.output
        assert "second" not in result.output

    def test_query_error(self, runner, base_args):
        runner.invoke(cli, base_args + ["load"])
        result = runner.invoke(cli, base_args + ["query", "SELECT * FROM nowhere"])

        assert result.exit_code == 1
        assert "Error running query" in result.output

    def test_tables(self, runner, base_args):
        runner.invoke(cli, base_args + ["--preload", "load"])
        result = runner.invoke(cli, base_args + ["tables"])

        assert result.exit_code == 0, result.output
        assert "temp_test" in result.output
        assert "other" in result.output

    def test_status(self, runner, base_args):
        result = runner.invoke(cli, base_args + ["status"])

        assert result.exit_code == 0, result.output
        assert "Dump Status" in result.output
        assert "missing" in result.output

    def test_missing_resource(self, runner, base_args, tmp_path):
        args = base_args + ["--resource", str(tmp_path / "nope.tar.gz"), "update"]
        result = runner.invoke(cli, args)

        assert result.exit_code == 1
        assert "Error updating dump" in result.output

    def test_invalid_table(self, runner, base_args):
        result = runner.invoke(cli, base_args + ["--table", "../x", "update"])

        assert result.exit_code == 1
        assert "Error initializing" in result.output

    def test_cache_status_empty(self, runner, base_args):
        result = runner.invoke(cli, base_args + ["cache", "status"])

        assert result.exit_code == 0, result.output
        assert "No cached archives" in result.output

    def test_cache_clear(self, runner, base_args):
        result = runner.invoke(cli, base_args + ["cache", "clear", "--yes"])

        assert result.exit_code == 0, result.output
        assert "Cache cleared" in result.output

    def test_config_file(self, runner, base_args, tmp_path, target_dir):
        config = tmp_path / "config.toml"
        config.write_text('[loader]\npreload = true\n')

        result = runner.invoke(cli, ["--config", str(config)] + base_args + ["load"])

        assert result.exit_code == 0, result.output
        result = runner.invoke(cli, ["--config", str(config)] + base_args + ["tables"])
        assert "temp_other" in result.output

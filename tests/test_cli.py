"""Tests for the contextsift CLI."""

import json
from pathlib import Path

import pytest
from click.testing import CliRunner
from rich.console import Console

from contextsift import cli
from contextsift.cli import main
from contextsift.config import Config, set_config


@pytest.fixture(autouse=True)
def cli_config(tmp_path, mocker):
    mocker.patch("contextsift.cli.init_logging")
    mocker.patch.object(cli, "console", Console(width=200))
    config = Config.from_dict(
        {
            "project_name": "webapp",
            "cache": {"path": str(tmp_path / "cache.sqlite3")},
        }
    )
    set_config(config)
    return config


def _write_project():
    Path("src/auth").mkdir(parents=True)
    Path("src/auth/login.ts").write_text(
        "export async function login(username: string, password: string) {\n"
        "  return authenticate(username, password);\n"
        "}\n"
    )
    Path("styles").mkdir()
    Path("styles/theme.css").write_text(".button { color: red; }\n")
    Path("logo.png").write_bytes(b"\x89PNG\r\n\x1a\n\x00\x00")


def _rank(runner, *args):
    return runner.invoke(
        main, ["rank", "user authentication", "--no-embedding", "--no-generative", *args]
    )


def test_rank_json():
    runner = CliRunner()
    with runner.isolated_filesystem():
        _write_project()
        result = _rank(runner, "--json")
        assert result.exit_code == 0, result.output
        data = json.loads(result.output)
        assert [r["file"] for r in data] == ["src/auth/login.ts", "styles/theme.css"]
        assert data[0]["subscores"]["embedding"] is None
        assert data[0]["matches"]


def test_rank_table():
    runner = CliRunner()
    with runner.isolated_filesystem():
        _write_project()
        result = _rank(runner, "src", "--top", "1")
        assert result.exit_code == 0, result.output
        assert "src/auth/login.ts" in result.output
        assert "theme.css" not in result.output


def test_rank_invalid_query():
    runner = CliRunner()
    with runner.isolated_filesystem():
        _write_project()
        result = runner.invoke(main, ["rank", "a", "--no-embedding", "--no-generative"])
        assert result.exit_code == 1
        assert "Invalid query" in result.output


def test_saved_results():
    runner = CliRunner()
    with runner.isolated_filesystem():
        _write_project()
        assert _rank(runner, "--save", "--json").exit_code == 0

        result = runner.invoke(main, ["results", "list"])
        assert result.exit_code == 0
        assert "search_user_authentication_webapp" in result.output

        result = runner.invoke(main, ["results", "show", "search_user_authentication_webapp"])
        assert result.exit_code == 0
        record = json.loads(result.output)
        assert record["keyword"] == "user authentication"
        assert record["results"][0]["file"] == "src/auth/login.ts"

        result = runner.invoke(main, ["results", "delete", "search_user_authentication_webapp"])
        assert result.exit_code == 0
        result = runner.invoke(main, ["results", "show", "search_user_authentication_webapp"])
        assert result.exit_code == 1


def test_results_list_empty():
    result = CliRunner().invoke(main, ["results", "list", "nothing"])
    assert result.exit_code == 0
    assert "No saved searches for nothing" in result.output


def test_cache_commands():
    runner = CliRunner()
    result = runner.invoke(main, ["cache", "stats"])
    assert result.exit_code == 0
    assert "Entries: 0" in result.output

    result = runner.invoke(main, ["cache", "clean", "--max-age-days", "0"])
    assert result.exit_code == 0
    assert "Removed 0 entries" in result.output

from __future__ import annotations

import json

from click.testing import CliRunner

from stringscope.cli import main


def _configure(tmp_path, database=None):
    lines = [
        "corpus:",
        "  root: site",
        "  groups:",
        "    plugins: content/plugins",
    ]
    if database is not None:
        lines.append(f"  database: {database}")
    (tmp_path / "stringscope.yml").write_text("\n".join(lines) + "\n")


def test_cli_help_lists_commands():
    runner = CliRunner()
    result = runner.invoke(main, ["--help"])
    assert result.exit_code == 0
    for command in ("init", "locations", "tables", "files", "db", "results", "cancel", "cleanup", "serve"):
        assert command in result.output


def test_cli_init_writes_config(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    runner = CliRunner()

    result = runner.invoke(main, ["init"])

    assert result.exit_code == 0
    assert (tmp_path / "stringscope.yml").exists()
    assert (tmp_path / ".stringscope" / "stringscope.db").exists()
    assert ".stringscope/" in (tmp_path / ".gitignore").read_text()

    again = runner.invoke(main, ["init"])
    assert "Skipped" in again.output


def test_cli_files_search(tmp_path, site, monkeypatch):
    _configure(tmp_path)
    monkeypatch.chdir(tmp_path)

    result = CliRunner().invoke(main, ["files", "hello"])

    assert result.exit_code == 0
    assert "a.txt:1: <mark>hello</mark> world" in result.output
    assert "b.min.js" not in result.output
    assert "2 matches, 3/3 scanned (completed)" in result.output


def test_cli_files_json_keep_then_results(tmp_path, site, monkeypatch):
    _configure(tmp_path)
    monkeypatch.chdir(tmp_path)
    runner = CliRunner()

    result = runner.invoke(main, ["files", "hello", "--scope", "plugins:forms", "--json", "--keep"])

    assert result.exit_code == 0
    payload = json.loads(result.output)
    assert payload["status"] == "completed"
    assert [r["relative_path"] for r in payload["results"]] == ["content/plugins/forms/form.php"]

    stored = runner.invoke(main, ["results", payload["search_id"], "--json"])
    assert stored.exit_code == 0
    assert len(json.loads(stored.output)) == 1

    cleaned = runner.invoke(main, ["cleanup", payload["search_id"]])
    assert cleaned.exit_code == 0
    missing = runner.invoke(main, ["results", payload["search_id"]])
    assert missing.exit_code != 0
    assert "not found" in missing.output


def test_cli_files_invalid_regex(tmp_path, site, monkeypatch):
    _configure(tmp_path)
    monkeypatch.chdir(tmp_path)

    result = CliRunner().invoke(main, ["files", "(broken", "--regex"])

    assert result.exit_code != 0
    assert "Invalid regular expression" in result.output


def test_cli_db_search(tmp_path, corpus_db, monkeypatch):
    _configure(tmp_path, database=corpus_db)
    monkeypatch.chdir(tmp_path)

    result = CliRunner().invoke(main, ["db", "needle", "--table", "users"])

    assert result.exit_code == 0
    assert "users.bio [id=7]: likes <mark>needle</mark> work" in result.output


def test_cli_tables_and_locations(tmp_path, site, corpus_db, monkeypatch):
    _configure(tmp_path, database=corpus_db)
    monkeypatch.chdir(tmp_path)
    runner = CliRunner()

    tables = runner.invoke(main, ["tables", "--json"])
    locations = runner.invoke(main, ["locations", "--json"])

    assert tables.exit_code == 0
    assert {"name": "users", "rows": 10} in json.loads(tables.output)
    assert locations.exit_code == 0
    assert "plugins:forms" in [item["scope"] for item in json.loads(locations.output)]


def test_cli_cancel_reports_cancelled(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)

    result = CliRunner().invoke(main, ["cancel", "abc"])

    assert result.exit_code == 0
    assert "abc: cancelled" in result.output

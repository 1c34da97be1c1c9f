from __future__ import annotations

import sqlite3

import pytest

from stringscope.engine.editor import FileEditor, RowEditor, language_for
from stringscope.errors import EditError

from helpers import write


def test_language_for_extensions(tmp_path):
    assert language_for(tmp_path / "a.php") == "php"
    assert language_for(tmp_path / "a.TSX") == "typescript"
    assert language_for(tmp_path / "a.yml") == "yaml"
    assert language_for(tmp_path / "a.unknown") == "plaintext"


def test_file_editor_read(tmp_path, site):
    editor = FileEditor(site, tmp_path / "backups")

    data = editor.read("content/plugins/forms/form.php")

    assert data["language"] == "php"
    assert data["relative_path"] == "content/plugins/forms/form.php"
    assert "Hello forms" in data["content"]
    assert data["writable"] is True


def test_file_editor_refuses_paths_outside_root(tmp_path, site):
    write(tmp_path / "secret.txt", "top secret")
    editor = FileEditor(site, tmp_path / "backups")

    with pytest.raises(EditError):
        editor.read("../secret.txt")
    with pytest.raises(EditError):
        editor.save(tmp_path / "secret.txt", "overwritten")
    assert (tmp_path / "secret.txt").read_text() == "top secret"


def test_file_editor_save_keeps_backup(tmp_path, site):
    backups = tmp_path / "backups"
    editor = FileEditor(site, backups)

    saved = editor.save("a.txt", "goodbye world\n")

    assert (site / "a.txt").read_text() == "goodbye world\n"
    backup_files = list(backups.glob("a.txt.*.bak"))
    assert len(backup_files) == 1
    assert backup_files[0].read_text() == "hello world\n"
    assert saved["backup"] == str(backup_files[0])


def test_file_editor_missing_file(tmp_path, site):
    editor = FileEditor(site, tmp_path / "backups")
    with pytest.raises(EditError):
        editor.read("nope.txt")


def test_row_editor_get_and_update(corpus_db):
    conn = sqlite3.connect(corpus_db)
    try:
        editor = RowEditor(conn)

        before = editor.get_value("users", "bio", "7")
        assert before["value"] == "likes needle work"
        assert before["primary_value"] == 7
        assert before["is_structured"] is False

        editor.update_value("users", "bio", "7", "likes thread work")
        assert editor.get_value("users", "bio", 7)["value"] == "likes thread work"

        option = editor.get_value("options", "option_value", 1)
        assert option["is_structured"] is True
    finally:
        conn.close()


@pytest.mark.parametrize(
    "table,column,key",
    [
        ("nope", "bio", 1),
        ("users", "age", 1),
        ("users", "id", 1),
        ("users", "bio", "seven"),
        ("users", "bio", 999),
        ("logs", "message", 1),
    ],
)
def test_row_editor_rejects_bad_locations(corpus_db, table, column, key):
    conn = sqlite3.connect(corpus_db)
    try:
        editor = RowEditor(conn)
        with pytest.raises(EditError):
            editor.get_value(table, column, key)
        with pytest.raises(EditError):
            editor.update_value(table, column, key, "x")
    finally:
        conn.close()

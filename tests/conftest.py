from __future__ import annotations

import json
import sqlite3

import pytest

from stringscope.store import Store

from helpers import write


@pytest.fixture
def site(tmp_path):
    root = tmp_path / "site"
    write(root / "a.txt", "hello world\n")
    write(root / "b.min.js", "var hello=1;")
    write(root / "content" / "plugins" / "forms" / "form.php", "<?php echo 'Hello forms'; ?>\n")
    write(root / "content" / "plugins" / "gallery" / "gallery.php", "<?php // nothing to see\n")
    write(root / "content" / "vendor" / "lib.txt", "hello from vendor\n")
    return root


@pytest.fixture
def corpus_db(tmp_path):
    db_path = tmp_path / "corpus.db"
    conn = sqlite3.connect(db_path)
    conn.execute("CREATE TABLE users (id INTEGER PRIMARY KEY, bio TEXT, age INTEGER)")
    conn.executemany(
        "INSERT INTO users (id, bio, age) VALUES (?, ?, ?)",
        [(i, "likes needle work" if i == 7 else f"user {i}", 20 + i) for i in range(1, 11)],
    )
    conn.execute("CREATE TABLE logs (message TEXT, created TEXT)")
    conn.execute("INSERT INTO logs (message, created) VALUES ('needle in a log', '2024-01-01')")
    conn.execute(
        "CREATE TABLE options (option_id INTEGER PRIMARY KEY, option_name VARCHAR(191), option_value LONGTEXT)"
    )
    conn.execute(
        "INSERT INTO options (option_id, option_name, option_value) VALUES (?, ?, ?)",
        (1, "widget_config", json.dumps({"widgets": [{"title": "plain"}, {"title": "needle title"}]})),
    )
    conn.commit()
    conn.close()
    return db_path


@pytest.fixture
def store(tmp_path):
    return Store(db_path=tmp_path / "state" / "stringscope.db")

from __future__ import annotations

import pytest

from stringscope.config import StringscopeConfig, get_base_dir, parse_size


def test_config_load_sections(tmp_path):
    config_path = tmp_path / "stringscope.yml"
    config_path.write_text(
        """
corpus:
  root: ./www
  content_dir: wp-content
  groups:
    plugins: wp-content/plugins
  database: data/site.db
search:
  batch_size_files: 50
  memory_limit: 256M
  max_file_bytes: 2m
  retention_seconds: 600
server:
  port: 9000
        """.strip()
    )

    config = StringscopeConfig.load(tmp_path)

    assert config.corpus.content_dir == "wp-content"
    assert config.corpus.groups == {"plugins": "wp-content/plugins"}
    assert config.corpus_root == (tmp_path / "www").resolve()
    assert config.database_path == (tmp_path / "data" / "site.db").resolve()
    assert config.search.batch_size_files == 50
    assert config.search.batch_size_db == 500
    assert config.search.memory_limit == 256 * 1024 * 1024
    assert config.search.max_file_bytes == 2 * 1024 * 1024
    assert config.search.retention_seconds == 600
    assert config.server.port == 9000
    assert config.server.host == "127.0.0.1"


def test_config_defaults_without_file(tmp_path, monkeypatch):
    monkeypatch.delenv("STRINGSCOPE_API_TOKEN", raising=False)
    config = StringscopeConfig.load(tmp_path)

    assert config.corpus_root == tmp_path.resolve()
    assert config.database_path is None
    assert config.search.max_execution_time == 25.0
    assert config.search.page_size == 500
    assert config.server.api_token is None
    assert config.state_dir == tmp_path.resolve() / ".stringscope"


def test_config_token_from_environment(tmp_path, monkeypatch):
    (tmp_path / "stringscope.yml").write_text("server:\n  api_token: from-file\n")
    monkeypatch.setenv("STRINGSCOPE_API_TOKEN", "from-env")

    config = StringscopeConfig.load(tmp_path)

    assert config.server.api_token == "from-env"


@pytest.mark.parametrize(
    "value,expected",
    [
        (None, 0),
        (4096, 4096),
        ("1048576", 1048576),
        ("256K", 256 * 1024),
        ("512mb", 512 * 1024 * 1024),
        ("1G", 1024 ** 3),
    ],
)
def test_parse_size(value, expected):
    assert parse_size(value) == expected


def test_parse_size_rejects_garbage():
    with pytest.raises(ValueError):
        parse_size("lots")


def test_get_base_dir_walks_up(tmp_path, monkeypatch):
    (tmp_path / "stringscope.yml").write_text("corpus:\n  root: .\n")
    nested = tmp_path / "a" / "b"
    nested.mkdir(parents=True)
    monkeypatch.chdir(nested)

    assert get_base_dir().resolve() == tmp_path.resolve()

from __future__ import annotations

from pathlib import Path

from stringscope.config import CorpusConfig, SearchConfig, StringscopeConfig


def write(path: Path, content: str) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content)
    return path


def make_config(base_dir: Path, database: Path | None = None, **search: object) -> StringscopeConfig:
    return StringscopeConfig(
        corpus=CorpusConfig(
            root="site",
            content_dir="content",
            groups={"plugins": "content/plugins"},
            database=str(database) if database else None,
        ),
        search=SearchConfig(**search),
        base_dir=base_dir,
    )

"""
Stringscope CLI - resumable string search over file trees and databases.

Commands:
    init       - Create stringscope.yml and the .stringscope state directory
    locations  - List selectable file search scopes
    tables     - List corpus database tables
    files      - Search files under a scope
    db         - Search corpus database tables
    results    - Print stored results of a search
    cancel     - Cancel a running search
    cleanup    - Delete a search and its stored results
    serve      - Start the HTTP API
"""

from __future__ import annotations

import json
import logging
import sys
from pathlib import Path

import click
from dotenv import load_dotenv

load_dotenv()
load_dotenv(Path.cwd() / ".env")

from . import __version__
from .config import CONFIG_FILENAME, StringscopeConfig, ensure_state_dir, get_base_dir
from .engine.files import FileSearch
from .engine.matching import MODE_LITERAL, MODE_REGEX
from .engine.session import STATUS_RUNNING, BatchResult, SearchEngine
from .engine.tables import DatabaseSearch
from .errors import StringscopeError
from .store import DB_FILENAME, MatchRecord, Store


SAMPLE_CONFIG = """\
# Stringscope Configuration

corpus:
  root: .                # Directory searched by `stringscope files`
  content_dir: content   # Selected with --scope content
  groups:                # Selected with --scope <group>:* or <group>:<name>
    plugins: content/plugins
    themes: content/themes
  # database: data/site.db  # SQLite database searched by `stringscope db`

search:
  batch_size_files: 100       # Files scanned per batch
  batch_size_db: 500          # Rows inspected per batch
  max_execution_time: 25      # Seconds per batch (2s are kept in reserve)
  memory_limit: 0             # e.g. 256M; 0 = unlimited
  max_file_bytes: 5M          # Larger files are skipped
  max_cell_bytes: 1M          # Larger cells are skipped
  max_matches_per_cell: 20
  max_results_per_batch: 1000
  preview_width: 200
  retention_seconds: 3600     # Sessions and results expire after this

server:
  host: 127.0.0.1
  port: 8430
  # api_token: change-me      # Or set STRINGSCOPE_API_TOKEN
"""

KIND_CHOICES = click.Choice(["file", "database"])


def _load() -> tuple[StringscopeConfig, Store]:
    base_dir = get_base_dir()
    config = StringscopeConfig.load(base_dir)
    store = Store(config.state_dir / DB_FILENAME, default_ttl=config.search.retention_seconds)
    return config, store


def _engine(kind: str, config: StringscopeConfig, store: Store) -> SearchEngine:
    if kind == "database":
        return DatabaseSearch(store, config)
    return FileSearch(store, config)


def _format_record(record: MatchRecord) -> str:
    if record.kind == "file":
        return f"{record.relative_path}:{record.line}: {record.preview}"
    location = f"{record.table}.{record.column} [{record.primary_key}={record.primary_value}]"
    if record.structure_path:
        location += f" {record.structure_path}"
    return f"{location}: {record.preview}"


def _run_to_completion(engine: SearchEngine, search_id: str, quiet: bool) -> BatchResult:
    """Call process_batch until the session leaves the running state."""
    while True:
        result = engine.process_batch(search_id)
        if not quiet:
            pct = int(result.progress)
            bar = "█" * (pct // 5) + "░" * (20 - pct // 5)
            label = f" {result.current}" if result.current and result.current != "completed" else ""
            click.echo(f"\r  [{bar}] {result.processed}/{result.total}{label}", nl=False, err=True)
        if result.status != STATUS_RUNNING:
            if not quiet:
                click.echo(err=True)
            return result


def _report(engine: SearchEngine, search_id: str, final: BatchResult, as_json: bool, keep: bool) -> None:
    records = engine.get_results(search_id)
    if as_json:
        payload = final.to_dict()
        payload.pop("batch_results", None)
        payload.pop("batch_count", None)
        payload["results"] = [record.to_dict() for record in records]
        click.echo(json.dumps(payload, indent=2, default=str))
    else:
        for record in records:
            click.echo(_format_record(record))
        click.echo(f"\n{len(records)} matches, {final.processed}/{final.total} scanned ({final.status})")
        if final.truncated:
            click.echo("Note: enumeration was cut short by the resource budget; results are partial.")
        if final.skipped_tables:
            click.echo(f"Skipped tables: {', '.join(final.skipped_tables)}")
        if keep:
            click.echo(f"Search id: {search_id}")
    if not keep:
        engine.cleanup(search_id)


@click.group()
@click.version_option(version=__version__)
@click.option("-v", "--verbose", is_flag=True, help="Enable debug logging")
def main(verbose: bool):
    """Stringscope - resumable string search over files and databases."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )


@main.command()
@click.option("--force", is_flag=True, help="Overwrite existing configuration")
def init(force: bool):
    """Initialize Stringscope in the current directory."""
    base_dir = Path.cwd()
    click.echo(f"Initializing Stringscope in: {base_dir}")

    state_dir = ensure_state_dir(base_dir)
    click.echo(f"  Created: {state_dir}")

    store = Store(state_dir / DB_FILENAME)
    click.echo(f"  Database: {store.db_path}")

    config_path = base_dir / CONFIG_FILENAME
    if not config_path.exists() or force:
        config_path.write_text(SAMPLE_CONFIG)
        click.echo(f"  Created: {config_path}")
    else:
        click.echo(f"  Skipped: {config_path} (already exists)")

    gitignore_path = base_dir / ".gitignore"
    gitignore_entry = "\n# Stringscope\n.stringscope/\n.env\n"
    if gitignore_path.exists():
        content = gitignore_path.read_text()
        if ".stringscope" not in content:
            with open(gitignore_path, "a") as f:
                f.write(gitignore_entry)
            click.echo(f"  Updated: {gitignore_path}")
    else:
        gitignore_path.write_text(gitignore_entry)
        click.echo(f"  Created: {gitignore_path}")

    click.echo("\nStringscope initialized! Next steps:")
    click.echo(f"  1. Edit {CONFIG_FILENAME} to point corpus.root / corpus.database at your data")
    click.echo("  2. Run: stringscope files 'needle'")
    click.echo("  3. Run: stringscope serve")


@main.command()
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
def locations(as_json: bool):
    """List file search scopes."""
    config, store = _load()
    items = FileSearch(store, config).locations()
    if as_json:
        click.echo(json.dumps(items, indent=2))
        return
    for item in items:
        click.echo(f"  {item['scope']:<30} {item['label']}")


@main.command()
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
def tables(as_json: bool):
    """List corpus database tables with row counts."""
    config, store = _load()
    try:
        items = DatabaseSearch(store, config).list_tables()
    except StringscopeError as exc:
        raise click.ClickException(str(exc)) from exc
    if as_json:
        click.echo(json.dumps(items, indent=2))
        return
    for item in items:
        click.echo(f"  {item['name']:<40} {item['rows']:>10} rows")


@main.command()
@click.argument("term")
@click.option("--scope", default="root", show_default=True, help="root, content, <group>:* or <group>:<name>")
@click.option("--regex", is_flag=True, help="Treat TERM as a regular expression")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@click.option("--keep", is_flag=True, help="Keep the session and its results after printing")
def files(term: str, scope: str, regex: bool, as_json: bool, keep: bool):
    """Search files for TERM.

    Examples:

        stringscope files 'old-domain.com'
        stringscope files --scope plugins:forms --regex '/wp_\\w+_meta/i'
    """
    config, store = _load()
    engine = FileSearch(store, config)
    try:
        session = engine.init(scope, term, MODE_REGEX if regex else MODE_LITERAL)
        if not as_json:
            click.echo(f"Searching {session.total} files in scope '{scope}'", err=True)
        final = _run_to_completion(engine, session.id, quiet=as_json)
        _report(engine, session.id, final, as_json, keep)
    except StringscopeError as exc:
        raise click.ClickException(str(exc)) from exc


@main.command()
@click.argument("term")
@click.option("--table", "tables_filter", multiple=True, help="Limit to table (repeatable)")
@click.option("--regex", is_flag=True, help="Treat TERM as a regular expression")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@click.option("--keep", is_flag=True, help="Keep the session and its results after printing")
def db(term: str, tables_filter: tuple[str, ...], regex: bool, as_json: bool, keep: bool):
    """Search corpus database tables for TERM."""
    config, store = _load()
    engine = DatabaseSearch(store, config)
    try:
        session = engine.init(term, MODE_REGEX if regex else MODE_LITERAL, list(tables_filter))
        if not as_json:
            click.echo(f"Searching {session.total} rows in {len(session.tables)} tables", err=True)
        final = _run_to_completion(engine, session.id, quiet=as_json)
        _report(engine, session.id, final, as_json, keep)
    except StringscopeError as exc:
        raise click.ClickException(str(exc)) from exc


@main.command()
@click.argument("search_id")
@click.option("--kind", type=KIND_CHOICES, default="file", show_default=True)
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
def results(search_id: str, kind: str, as_json: bool):
    """Print the stored results of a kept search."""
    config, store = _load()
    engine = _engine(kind, config, store)
    try:
        session = engine.get_session(search_id)
    except StringscopeError as exc:
        raise click.ClickException(str(exc)) from exc
    records = engine.get_results(search_id)
    if as_json:
        click.echo(json.dumps([record.to_dict() for record in records], indent=2, default=str))
        return
    for record in records:
        click.echo(_format_record(record))
    click.echo(f"\n{len(records)} matches ({session.status}, {session.processed}/{session.total})")


@main.command()
@click.argument("search_id")
@click.option("--kind", type=KIND_CHOICES, default="file", show_default=True)
def cancel(search_id: str, kind: str):
    """Cancel a running search."""
    config, store = _load()
    outcome = _engine(kind, config, store).cancel(search_id)
    click.echo(f"{outcome['search_id']}: {outcome['status']}")


@main.command()
@click.argument("search_id")
@click.option("--kind", type=KIND_CHOICES, default="file", show_default=True)
def cleanup(search_id: str, kind: str):
    """Delete a search and its stored results."""
    config, store = _load()
    _engine(kind, config, store).cleanup(search_id)
    click.echo(f"Removed {search_id}")


@main.command()
@click.option("--host", default=None, help="Bind host (default from config)")
@click.option("--port", default=None, type=int, help="Bind port (default from config)")
def serve(host: str | None, port: int | None):
    """Start the HTTP API server."""
    from .web.server import run_server

    config, _ = _load()
    host = host or config.server.host
    port = port or config.server.port
    click.echo(f"Serving Stringscope API on http://{host}:{port}")
    try:
        run_server(host=host, port=port)
    except KeyboardInterrupt:
        sys.exit(0)


if __name__ == "__main__":
    main()

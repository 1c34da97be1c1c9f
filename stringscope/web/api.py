"""
FastAPI transport layer for the search engines.
"""

from __future__ import annotations

import asyncio
import json
import os
from pathlib import Path
from typing import Any, Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from loguru import logger
from pydantic import BaseModel, Field
from sse_starlette.sse import EventSourceResponse

from ..config import StringscopeConfig, get_base_dir
from ..engine.editor import FileEditor, RowEditor
from ..engine.files import FileSearch
from ..engine.session import STATUS_RUNNING, SearchEngine, session_summary
from ..engine.tables import DatabaseSearch, open_corpus_database
from ..errors import (
    BatchConflict,
    CorpusUnavailable,
    EditError,
    InvalidPattern,
    SessionNotFound,
    StoreFailure,
    StringscopeError,
)
from ..store import DB_FILENAME, Store

TOKEN_HEADER = "X-Stringscope-Token"
KIND_PATTERN = "^(file|database)$"
MODE_PATTERN = "^(literal|regex)$"


class FileSearchRequest(BaseModel):
    search_string: str = Field(min_length=1)
    scope: str = "root"
    mode: str = Field(default="literal", pattern=MODE_PATTERN)


class DbSearchRequest(BaseModel):
    search_string: str = Field(min_length=1)
    mode: str = Field(default="literal", pattern=MODE_PATTERN)
    tables: list[str] = Field(default_factory=list)


class FileContentRequest(BaseModel):
    path: str
    content: str


class DbValueRequest(BaseModel):
    table: str
    column: str
    primary_value: str
    value: str


def _status_for(exc: StringscopeError) -> int:
    if isinstance(exc, (InvalidPattern, EditError)):
        return 400
    if isinstance(exc, SessionNotFound):
        return 404
    if isinstance(exc, BatchConflict):
        return 409
    if isinstance(exc, (StoreFailure, CorpusUnavailable)):
        return 503
    return 400


def _config_root() -> Path:
    forced_root = os.environ.get("STRINGSCOPE_CONFIG_ROOT")
    if forced_root:
        return Path(forced_root).expanduser().resolve()
    return get_base_dir()


def create_app(config: StringscopeConfig | None = None) -> FastAPI:
    app = FastAPI(title="stringscope", version="0.1.0")
    config = config or StringscopeConfig.load(_config_root())
    store = Store(config.state_dir / DB_FILENAME, default_ttl=config.search.retention_seconds)
    engines: dict[str, SearchEngine] = {
        "file": FileSearch(store, config),
        "database": DatabaseSearch(store, config),
    }
    file_editor = FileEditor(config.corpus_root, config.state_dir / "backups", config.search.max_file_bytes)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["http://localhost:5173", "http://127.0.0.1:5173"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(StringscopeError)
    async def stringscope_error_handler(_request: Request, exc: StringscopeError) -> JSONResponse:
        status_code = _status_for(exc)
        if status_code >= 500:
            logger.error("api error status={} error={}", status_code, exc)
        else:
            logger.warning("api error status={} error={}", status_code, exc)
        return JSONResponse(
            status_code=status_code,
            content={"status": "error", "error": type(exc).__name__, "message": str(exc)},
        )

    @app.exception_handler(HTTPException)
    async def http_error_handler(_request: Request, exc: HTTPException) -> JSONResponse:
        return JSONResponse(status_code=exc.status_code, content={"status": "error", "message": exc.detail})

    async def require_token(token: Optional[str] = Header(default=None, alias=TOKEN_HEADER)) -> None:
        expected = config.server.api_token
        if expected and token != expected:
            raise HTTPException(status_code=401, detail="invalid or missing API token")

    guarded = [Depends(require_token)]

    def _engine(kind: str) -> SearchEngine:
        return engines[kind]

    # =========================================================================
    # File searches
    # =========================================================================

    @app.post("/api/file-searches", dependencies=guarded)
    async def init_file_search(payload: FileSearchRequest) -> dict[str, Any]:
        session = await asyncio.to_thread(
            engines["file"].init, payload.scope, payload.search_string, payload.mode
        )
        logger.info("api.file_searches created search_id={} total={}", session.id, session.total)
        return session_summary(session)

    @app.post("/api/file-searches/{search_id}/batch", dependencies=guarded)
    async def process_file_batch(search_id: str) -> dict[str, Any]:
        result = await asyncio.to_thread(engines["file"].process_batch, search_id)
        return result.to_dict()

    @app.post("/api/file-searches/{search_id}/cancel", dependencies=guarded)
    async def cancel_file_search(search_id: str) -> dict[str, Any]:
        return await asyncio.to_thread(engines["file"].cancel, search_id)

    # =========================================================================
    # Database searches
    # =========================================================================

    @app.post("/api/db-searches", dependencies=guarded)
    async def init_db_search(payload: DbSearchRequest) -> dict[str, Any]:
        session = await asyncio.to_thread(
            engines["database"].init, payload.search_string, payload.mode, payload.tables
        )
        logger.info("api.db_searches created search_id={} tables={}", session.id, len(session.tables))
        return session_summary(session)

    @app.post("/api/db-searches/{search_id}/batch", dependencies=guarded)
    async def process_db_batch(search_id: str) -> dict[str, Any]:
        result = await asyncio.to_thread(engines["database"].process_batch, search_id)
        return result.to_dict()

    @app.post("/api/db-searches/{search_id}/cancel", dependencies=guarded)
    async def cancel_db_search(search_id: str) -> dict[str, Any]:
        return await asyncio.to_thread(engines["database"].cancel, search_id)

    # =========================================================================
    # Shared session routes
    # =========================================================================

    @app.get("/api/searches/{search_id}/results", dependencies=guarded)
    async def get_results(search_id: str, kind: str = Query(default="file", pattern=KIND_PATTERN)) -> dict[str, Any]:
        engine = _engine(kind)
        session = await asyncio.to_thread(engine.get_session, search_id)
        records = await asyncio.to_thread(engine.get_results, search_id)
        return {
            "status": "success",
            "search": session_summary(session),
            "results": [record.to_dict() for record in records],
            "count": len(records),
        }

    @app.delete("/api/searches/{search_id}", dependencies=guarded)
    async def delete_search(search_id: str, kind: str = Query(default="file", pattern=KIND_PATTERN)) -> dict[str, Any]:
        await asyncio.to_thread(_engine(kind).cleanup, search_id)
        return {"status": "success", "deleted": search_id}

    @app.get("/api/searches/{search_id}/events", dependencies=guarded)
    async def stream_events(
        search_id: str,
        kind: str = Query(default="file", pattern=KIND_PATTERN),
    ) -> EventSourceResponse:
        engine = _engine(kind)
        # Fail before the stream opens so unknown ids get a 404 body.
        await asyncio.to_thread(engine.get_session, search_id)

        async def event_generator() -> Any:
            while True:
                try:
                    result = await asyncio.to_thread(engine.process_batch, search_id)
                except StringscopeError as exc:
                    yield {
                        "event": "error",
                        "data": json.dumps({"status": "error", "error": type(exc).__name__, "message": str(exc)}),
                    }
                    return
                payload = result.to_dict()
                payload.pop("batch_results", None)
                yield {"event": "progress", "data": json.dumps(payload, default=str)}
                if result.status != STATUS_RUNNING:
                    break
            session = await asyncio.to_thread(engine.get_session, search_id)
            yield {"event": "done", "data": json.dumps(session_summary(session), default=str)}

        return EventSourceResponse(event_generator())

    # =========================================================================
    # Pickers
    # =========================================================================

    @app.get("/api/locations", dependencies=guarded)
    async def list_locations() -> dict[str, Any]:
        items = await asyncio.to_thread(engines["file"].locations)
        return {"items": items}

    @app.get("/api/tables", dependencies=guarded)
    async def list_tables() -> dict[str, Any]:
        items = await asyncio.to_thread(engines["database"].list_tables)
        return {"items": items}

    # =========================================================================
    # Edit-back
    # =========================================================================

    @app.get("/api/files/content", dependencies=guarded)
    async def read_file(path: str = Query(...)) -> dict[str, Any]:
        return await asyncio.to_thread(file_editor.read, path)

    @app.put("/api/files/content", dependencies=guarded)
    async def save_file(payload: FileContentRequest) -> dict[str, Any]:
        saved = await asyncio.to_thread(file_editor.save, payload.path, payload.content)
        return {"status": "success", **saved}

    def _with_row_editor(action: str, *args: Any) -> dict[str, Any]:
        conn = open_corpus_database(config.database_path, readonly=(action == "get_value"))
        try:
            return getattr(RowEditor(conn), action)(*args)
        finally:
            conn.close()

    @app.get("/api/db/value", dependencies=guarded)
    async def get_db_value(
        table: str = Query(...),
        column: str = Query(...),
        primary_value: str = Query(...),
    ) -> dict[str, Any]:
        return await asyncio.to_thread(_with_row_editor, "get_value", table, column, primary_value)

    @app.put("/api/db/value", dependencies=guarded)
    async def update_db_value(payload: DbValueRequest) -> dict[str, Any]:
        updated = await asyncio.to_thread(
            _with_row_editor,
            "update_value",
            payload.table,
            payload.column,
            payload.primary_value,
            payload.value,
        )
        return {"status": "success", **updated}

    return app

"""
HTTP transport for the DB utilities server.

Endpoints:
- GET  /api/backup:  stream a fresh pg_dump, keeping a copy in the archive directory
- POST /api/restore: replay an uploaded SQL file with psql
- GET  /api/history: list archives with size and date
- GET  /api/health:  tool discovery and database connectivity

The configuration is built once at startup and handed to `create_app`;
handlers receive it through a dependency rather than module globals.
"""

import asyncio
import errno
import logging
import socket
from typing import Optional

import asyncpg
import uvicorn
from fastapi import APIRouter, Depends, FastAPI, File, Request, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse, StreamingResponse
from starlette.status import (
    HTTP_400_BAD_REQUEST,
    HTTP_500_INTERNAL_SERVER_ERROR,
)

from config import UtilityConfig
from backup.dump_sql import SqlDumpStream
from backup.history import list_archives
from backup.pg_tools import find_pg_dump, find_psql
from backup.restore_sql import restore_sql_file, save_upload

logger = logging.getLogger(__name__)

API_VERSION = "1.0.0"

router = APIRouter(prefix="/api")


class PortInUseError(OSError):
    """The configured listen port is already bound by another process"""

    def __init__(self, port: int):
        super().__init__(errno.EADDRINUSE, f"Port {port} is already in use")
        self.port = port


def get_config(request: Request) -> UtilityConfig:
    return request.app.state.config


@router.get("/backup")
async def backup(config: UtilityConfig = Depends(get_config)):
    """
    Stream a plain SQL dump as an attachment.

    The status is 200 once streaming starts, even if pg_dump later exits
    non-zero; that outcome is only logged.
    """
    pg_dump = find_pg_dump(config.pg_dump_path)
    if pg_dump is None:
        logger.error("[ERROR] pg_dump not found in PATH or common PostgreSQL installation directories")
        return JSONResponse(
            status_code=HTTP_500_INTERNAL_SERVER_ERROR,
            content={"error": "pg_dump not available"},
        )

    dump = SqlDumpStream(config, pg_dump)
    try:
        await dump.start()
    except OSError as e:
        logger.error(f"[ERROR] Could not start pg_dump: {e}")
        return JSONResponse(
            status_code=HTTP_500_INTERNAL_SERVER_ERROR,
            content={"error": "Unable to start backup"},
        )

    return StreamingResponse(
        dump.stream(),
        media_type="application/octet-stream",
        headers={"Content-Disposition": f'attachment; filename="{dump.filename}"'},
    )


@router.post("/restore")
async def restore(
    file: Optional[UploadFile] = File(None),
    config: UtilityConfig = Depends(get_config),
):
    """Replay the uploaded SQL script; psql output is never returned to the caller"""
    if file is None or not file.filename:
        return PlainTextResponse("No file uploaded", status_code=HTTP_400_BAD_REQUEST)

    try:
        upload_path = await asyncio.to_thread(save_upload, config.upload_dir, file.file, file.filename)
    finally:
        await file.close()

    result = await restore_sql_file(config, upload_path)
    if not result.ok:
        return PlainTextResponse("Restore failed", status_code=HTTP_500_INTERNAL_SERVER_ERROR)
    return PlainTextResponse("Restore completed")


@router.get("/history")
async def history(config: UtilityConfig = Depends(get_config)):
    """All archive files, unordered"""
    try:
        records = await asyncio.to_thread(list_archives, config.backup_dir)
    except OSError as e:
        logger.error(f"Unable to read backup directory {config.backup_dir}: {e}")
        return JSONResponse(
            status_code=HTTP_500_INTERNAL_SERVER_ERROR,
            content={"error": "Unable to read backup directory"},
        )
    return [record.to_dict() for record in records]


@router.get("/health")
async def health_check(config: UtilityConfig = Depends(get_config)):
    """Health check: client tools present and database reachable"""
    tools = {
        "pg_dump": find_pg_dump(config.pg_dump_path),
        "psql": find_psql(config.psql_path),
    }
    missing = [name for name, path in tools.items() if path is None]
    if missing:
        return JSONResponse(
            status_code=HTTP_500_INTERNAL_SERVER_ERROR,
            content={"status": "unhealthy", "error": f"Missing tools: {', '.join(missing)}", **tools},
        )

    try:
        conn = await asyncpg.connect(dsn=config.database_url, timeout=5)
        try:
            await conn.fetchval("SELECT 1")
        finally:
            await conn.close()
    except Exception as e:
        logger.error(f"Health check failed: {e}")
        return JSONResponse(
            status_code=HTTP_500_INTERNAL_SERVER_ERROR,
            content={"status": "unhealthy", "error": str(e), **tools},
        )

    return JSONResponse(content={"status": "healthy", "database": "connected", **tools})


def create_app(config: UtilityConfig) -> FastAPI:
    """Build the application around an already validated configuration"""
    config.ensure_directories()

    app = FastAPI(title="Warehouse DB Utilities", version=API_VERSION)
    app.state.config = config

    # The inventory UI is served from a different origin
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["*"],
        expose_headers=["Content-Disposition"],
    )
    app.include_router(router)
    return app


def bind_listen_socket(host: str, port: int) -> socket.socket:
    """
    Bind the listening socket up front so a busy port is reported
    before uvicorn starts.

    Raises:
        PortInUseError: another process already holds the port
    """
    family = socket.AF_INET6 if ":" in host else socket.AF_INET
    sock = socket.socket(family, socket.SOCK_STREAM)
    sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
    try:
        sock.bind((host, port))
    except OSError as e:
        sock.close()
        if e.errno == errno.EADDRINUSE:
            raise PortInUseError(port) from e
        raise
    sock.set_inheritable(True)
    return sock


def run_http_server(config: UtilityConfig, log_level: str = "info"):
    """
    Run the utilities server until interrupted.

    Args:
        config: Startup configuration; host and port are taken from it
        log_level: Level name for uvicorn's own loggers
    """
    sock = bind_listen_socket(config.host, config.port)
    app = create_app(config)
    server = uvicorn.Server(uvicorn.Config(app, log_level=log_level))
    logger.info(f"DB utils server running on port {config.port}")
    server.run(sockets=[sock])

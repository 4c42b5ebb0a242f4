"""
HTTP endpoint for the sync server.

Exposes SyncServer over aiohttp.web:

    POST /api/sync          bearer-authenticated sync round
    GET  /api/sync/status   bearer-authenticated sync bookkeeping
    GET  /health            liveness probe

Run standalone with ``firewood-sync-server`` or ``python -m firewood_sync.sync.http``.
"""

from __future__ import annotations

import argparse
import json
import logging

from aiohttp import web

from ..config import ServerConfig
from ..exceptions import AuthenticationError, ValidationError
from ..logging_utils import configure_structured_logging
from ..protocol import format_timestamp, utc_now
from ..storage.sqlite import SQLiteConfig, SQLiteServerStore
from .server import SyncServer

logger = logging.getLogger(__name__)

SYNC_SERVER = web.AppKey("sync_server", SyncServer)


def _error(message: str, status: int, **details: object) -> web.Response:
    body: dict[str, object] = {"error": message}
    if details:
        body["details"] = details
    return web.json_response(body, status=status)


async def sync_endpoint(request: web.Request) -> web.Response:
    server = request.app[SYNC_SERVER]

    try:
        user_id = server.authenticate(request.headers.get("Authorization"))
    except AuthenticationError as e:
        return _error(e.message, 401)

    try:
        payload = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        return _error("Request body must be JSON", 400)

    try:
        result = await server.handle_sync(user_id, payload)
    except ValidationError as e:
        logger.warning(f"Rejected sync request from {user_id}: {e}")
        return _error(e.message, 400, **e.details)

    return web.json_response(result)


async def status_endpoint(request: web.Request) -> web.Response:
    server = request.app[SYNC_SERVER]

    try:
        user_id = server.authenticate(request.headers.get("Authorization"))
    except AuthenticationError as e:
        return _error(e.message, 401)

    return web.json_response(await server.status(user_id))


async def health_endpoint(request: web.Request) -> web.Response:
    return web.json_response({"status": "ok", "timestamp": format_timestamp(utc_now())})


def create_app(server: SyncServer) -> web.Application:
    """Build the aiohttp application around a SyncServer."""
    app = web.Application()
    app[SYNC_SERVER] = server
    app.router.add_post("/api/sync", sync_endpoint)
    app.router.add_get("/api/sync/status", status_endpoint)
    app.router.add_get("/health", health_endpoint)
    return app


async def build_app(config: ServerConfig) -> web.Application:
    """Open the SQLite store and wire it into a new application."""
    store = await SQLiteServerStore.create(SQLiteConfig(db_path=config.db_path))
    app = create_app(SyncServer(store))

    async def close_store(app: web.Application) -> None:
        await store.close()

    app.on_cleanup.append(close_store)
    return app


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    defaults = ServerConfig.from_env()
    parser = argparse.ArgumentParser(description="Firewood sync server")
    parser.add_argument("--host", type=str, default=defaults.host, help="Bind host")
    parser.add_argument("--port", type=int, default=defaults.port, help="Bind port")
    parser.add_argument("--db", type=str, default=defaults.db_path, help="SQLite database path")
    parser.add_argument(
        "--log-level",
        type=str,
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level",
    )
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    configure_structured_logging(level=getattr(logging, args.log_level))

    config = ServerConfig(db_path=args.db, host=args.host, port=args.port)
    logger.info(f"Starting sync server on {config.host}:{config.port}")
    web.run_app(build_app(config), host=config.host, port=config.port, print=None)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())

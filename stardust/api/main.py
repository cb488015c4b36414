"""Stardust API - analysis operation service.

Hosts the WebSocket transport used by the front-end (/api/socket) and a
small read-only REST surface:
- Operation list and server status
- CSV download of operation outputs

On startup the saved queue is restored before anything may run, then the
scheduler continues whatever was pending.
"""

import logging
import os
from contextlib import asynccontextmanager
from typing import Callable, Optional

from fastapi import FastAPI, WebSocket
from fastapi.middleware.cors import CORSMiddleware

from stardust import __version__
from stardust.api.routes import artifacts, operations
from stardust.api.transport import WebSocketConnection
from stardust.cache.kv_store import create_store
from stardust.executor.analyzer import load_analyzer
from stardust.executor.service import OperationService

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

PUBLIC_APP_URL = os.environ.get("PUBLIC_APP_URL", "https://www.stardust.fyi")
API_HOST = os.environ.get("API_HOST", "localhost")
API_PORT = int(os.environ.get("API_PORT", "1996"))
API_PATH_SOCKET = "/api/socket"

CORS_ORIGINS = [
    PUBLIC_APP_URL,
    f"{PUBLIC_APP_URL}:443",
    "http://localhost:3000",  # local front-end dev server
]


def default_service() -> OperationService:
    return OperationService(create_store(), load_analyzer())


def create_app(service_factory: Optional[Callable[[], OperationService]] = None) -> FastAPI:
    """Build the application. Tests pass their own service factory."""
    factory = service_factory or default_service

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        service = factory()
        app.state.service = service
        logger.info("Restoring operation queue...")
        await service.start()
        logger.info(
            f"Stardust API ready: {len(service.queue)} operations, "
            f"running={service.scheduler.is_running}"
        )
        yield
        logger.info("Shutting down Stardust API")
        await service.stop()
        await service.store.close()

    app = FastAPI(
        title="Stardust API",
        description="Queued GitHub analysis operations with live progress over WebSocket.",
        version=__version__,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=CORS_ORIGINS,
        allow_methods=["GET", "POST"],
        allow_headers=["*"],
    )

    app.include_router(operations.router, prefix="/api")
    app.include_router(artifacts.router, prefix="/api")

    @app.websocket(API_PATH_SOCKET)
    async def socket(websocket: WebSocket):
        """One client connection: channels submit/delete/admin in, status/list/op-update/message out."""
        service: OperationService = websocket.app.state.service
        connection = WebSocketConnection(websocket)
        await connection.serve(service.client_connected, service.client_disconnected)

    @app.get("/health")
    async def health():
        service: OperationService = app.state.service
        return {
            "status": "healthy",
            "version": __version__,
            "operations": len(service.queue),
            "active_operations": service.queue.active_count(),
            "is_running": service.scheduler.is_running,
            "connected_clients": service.notifier.status.connected_clients,
        }

    app.include_router(artifacts.fallback_router)

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "stardust.api.main:app",
        host=API_HOST,
        port=API_PORT,
    )

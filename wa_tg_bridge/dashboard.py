"""
Status Endpoint

Small FastAPI app exposing JSON health and status for the running bridge.
"""

import logging
import time
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

import uvicorn
from fastapi import FastAPI
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)

StatusProvider = Callable[[], Any]


def collect_status(providers: Dict[str, StatusProvider]) -> Dict[str, Any]:
    """Run every provider; a failing provider reports 'error'"""
    status = {}
    for name, provider in providers.items():
        try:
            status[name] = provider()
        except Exception as e:
            logger.warning(f"⚠️  Status provider {name} failed: {e}")
            status[name] = "error"
    return status


def create_app(providers: Dict[str, StatusProvider],
               clock: Callable[[], float] = time.monotonic) -> FastAPI:
    """Create FastAPI app serving /health and /status."""
    app = FastAPI(title="WhatsApp-Telegram Bridge", version="1.0.0")
    started_at = clock()

    def uptime() -> int:
        return int(clock() - started_at)

    @app.get("/health")
    async def health():
        components = collect_status(providers)
        healthy = components.get("whatsapp") in ("connected", True)
        return JSONResponse(
            status_code=200 if healthy else 503,
            content={
                "status": "healthy" if healthy else "degraded",
                "uptime": uptime(),
                "components": components,
                "timestamp": datetime.now(timezone.utc).isoformat(),
            },
        )

    @app.get("/status")
    async def status():
        return {
            "components": collect_status(providers),
            "uptime": uptime(),
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    return app


def build_server(app: FastAPI, host: str = "127.0.0.1", port: int = 3001) -> uvicorn.Server:
    """uvicorn server that runs inside the bridge's event loop"""
    config = uvicorn.Config(app, host=host, port=port, log_level="warning", lifespan="off")
    return uvicorn.Server(config)


async def serve(server: uvicorn.Server):
    """Run the server; a bind failure is logged rather than raised"""
    try:
        await server.serve()
    except (OSError, SystemExit) as e:
        logger.warning(f"⚠️  Dashboard not started: {e}")
    else:
        logger.info("Dashboard stopped")


def stop_server(server: Optional[uvicorn.Server]):
    if server is not None:
        server.should_exit = True

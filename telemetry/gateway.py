"""
Tracking Gateway

FastAPI server delivering live track updates over WebSocket.

Endpoints:
- WS   /ws/tracking     - Subscribe to entities/areas, receive updates
- GET  /api/sources     - Provider ingester health
- GET  /api/stats       - Pipeline statistics
- GET  /health          - Liveness

WebSocket actions (JSON):
    {"action": "subscribe_entity", "entity_id": "7C1B72"}
    {"action": "unsubscribe_entity", "entity_id": "7C1B72"}
    {"action": "subscribe_area", "min_lat": 8.5, "max_lat": 23.5, "min_lon": 102.0, "max_lon": 109.5}
    {"action": "unsubscribe_area", ...same bounds...}
    {"action": "ping"}

Usage:
    python -m telemetry.gateway
    python -m telemetry.gateway --port 8002 --dry-run
"""

import argparse
import logging
import uuid
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

import httpx
import uvicorn
from dotenv import load_dotenv
from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware

from .config import TrackingSettings, get_postgres_url, get_redis_url
from .exceptions import SubscriptionError
from .service import TrackingService, connect

logger = logging.getLogger(__name__)


class WebSocketSessions:
    """Delivery over connected WebSockets, keyed by session id"""

    def __init__(self):
        self.connections: Dict[str, WebSocket] = {}

    def register(self, session_id: str, websocket: WebSocket):
        self.connections[session_id] = websocket

    def unregister(self, session_id: str):
        self.connections.pop(session_id, None)

    async def send(self, session_id: str, message: Dict[str, Any]) -> None:
        websocket = self.connections.get(session_id)
        if websocket is None:
            raise SubscriptionError(f"session {session_id} is not connected")
        await websocket.send_json(message)

    def __len__(self) -> int:
        return len(self.connections)


def handle_action(service: TrackingService, session_id: str, message: Dict[str, Any]) -> Dict[str, Any]:
    """Apply one client action; returns the reply"""
    notifier = service.notifier
    notifier.registry.touch(session_id)
    action = message.get("action")

    try:
        if action == "subscribe_entity":
            return notifier.subscribe_entity(session_id, str(message.get("entity_id", "")))
        if action == "unsubscribe_entity":
            return notifier.unsubscribe_entity(session_id, str(message.get("entity_id", "")))
        if action in ("subscribe_area", "unsubscribe_area"):
            bounds = [float(message[k]) for k in ("min_lat", "max_lat", "min_lon", "max_lon")]
            if action == "subscribe_area":
                return notifier.subscribe_area(session_id, *bounds)
            return notifier.unsubscribe_area(session_id, *bounds)
        if action == "ping":
            return {"type": "pong", "status": "ok", "key": session_id}
    except (KeyError, TypeError, ValueError) as e:
        return {"type": "error", "status": "invalid", "message": f"missing or invalid bounds: {e}"}
    except SubscriptionError as e:
        return {"type": "error", "status": "invalid", "message": str(e)}

    return {"type": "error", "status": "invalid", "message": f"unknown action: {action}"}


def create_app(
    service: Optional[TrackingService] = None,
    settings: Optional[TrackingSettings] = None,
    dry_run: bool = False,
    start_service: bool = True,
) -> FastAPI:
    """
    Build the gateway app.

    With no service given, the lifespan connects to Redis/PostgreSQL (or runs
    in memory with dry_run) and owns the service's lifecycle.
    """
    sessions = WebSocketSessions()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        redis_client = pg_pool = http_client = None
        owned = app.state.service is None

        if owned:
            app_settings = settings or TrackingSettings()
            if not dry_run:
                try:
                    redis_client, pg_pool = await connect(get_redis_url(), get_postgres_url())
                except Exception as e:
                    logger.warning(f"Could not connect to Redis, running in memory: {e}")
                    redis_client = None
            http_client = httpx.AsyncClient()
            app.state.service = TrackingService(
                app_settings,
                redis_client=redis_client,
                pg_pool=pg_pool,
                http_client=http_client,
                delivery=sessions,
            )

        if start_service:
            await app.state.service.start()

        yield

        if start_service:
            await app.state.service.stop()
        if http_client is not None:
            await http_client.aclose()
        if redis_client is not None:
            await redis_client.close()
        if pg_pool is not None:
            await pg_pool.close()

    app = FastAPI(
        title="Tracking Gateway",
        description="Live aircraft and vessel tracks by entity or area",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.state.sessions = sessions
    app.state.service = service
    if service is not None:
        service.notifier.delivery = sessions

    @app.get("/health")
    async def health():
        return {"status": "ok", "sessions": len(sessions)}

    @app.get("/api/sources")
    async def list_sources():
        """Health/status of every provider ingester"""
        return app.state.service.sources_status()

    @app.get("/api/stats")
    async def stats():
        return app.state.service.get_stats()

    @app.websocket("/ws/tracking")
    async def websocket_tracking(websocket: WebSocket):
        await websocket.accept()
        session_id = uuid.uuid4().hex
        service: TrackingService = app.state.service

        sessions.register(session_id, websocket)
        service.notifier.registry.touch(session_id)
        logger.info(f"WebSocket session {session_id} connected. Total sessions: {len(sessions)}")

        try:
            await websocket.send_json({"type": "session", "status": "connected", "key": session_id})
            while True:
                message = await websocket.receive_json()
                if not isinstance(message, dict):
                    await websocket.send_json({"type": "error", "status": "invalid", "message": "expected a JSON object"})
                    continue
                await websocket.send_json(handle_action(service, session_id, message))

        except WebSocketDisconnect:
            logger.info(f"WebSocket session {session_id} disconnected")
        except Exception as e:
            logger.error(f"WebSocket error for {session_id}: {e}")
        finally:
            sessions.unregister(session_id)
            service.notifier.disconnect(session_id)

    return app


def main():
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - GATEWAY - %(levelname)s - %(message)s"
    )
    load_dotenv()
    settings = TrackingSettings()

    parser = argparse.ArgumentParser(description="Tracking Gateway")
    parser.add_argument("--host", default=settings.gateway_host)
    parser.add_argument("--port", type=int, default=settings.gateway_port)
    parser.add_argument("--dry-run", action="store_true", help="Run without Redis/PostgreSQL")
    args = parser.parse_args()

    uvicorn.run(create_app(settings=settings, dry_run=args.dry_run), host=args.host, port=args.port)


if __name__ == "__main__":
    main()

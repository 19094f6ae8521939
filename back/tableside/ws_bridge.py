"""
WebSocket Bridge

Subscribes to Redis pub/sub channels and broadcasts change events to
connected WebSocket clients.
- Session channel: tableside:session:{session_id} (guests at one table)
- Venue channel: tableside:venue:{venue_id} (staff console)

Events are not replayed. Every new connection is told to re-fetch first.
"""
import asyncio
import json
import logging
from contextlib import asynccontextmanager
from typing import Optional

import httpx
import redis.asyncio as redis
from fastapi import FastAPI, WebSocket, WebSocketDisconnect, Query
from fastapi.middleware.cors import CORSMiddleware

from .propagation import CHANNEL_PREFIX, session_topic, venue_topic
from .security import decode_access_token
from .settings import settings

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


# Key: "session:{session_id}" or "venue:{venue_id}"
connections: dict[str, set[WebSocket]] = {}


async def validate_table_token(table_token: str) -> Optional[dict]:
    """Validate table token by calling backend API."""
    try:
        async with httpx.AsyncClient(timeout=5.0) as client:
            response = await client.get(f"{settings.api_url}/internal/validate-table/{table_token}")
            if response.status_code == 200:
                return response.json()
            return None
    except httpx.HTTPError as e:
        logger.error(f"Error validating table token {table_token}: {e}", exc_info=True)
        return None


def validate_jwt_token(token: str) -> Optional[dict]:
    """Validate JWT token and extract venue_id."""
    payload = decode_access_token(token)
    if payload is None:
        return None
    return {"venue_id": payload["venue_id"], "email": payload["sub"]}


def topic_from_channel(channel: str) -> Optional[str]:
    prefix = f"{CHANNEL_PREFIX}:"
    if not channel.startswith(prefix):
        return None
    topic = channel[len(prefix):]
    kind, _, entity_id = topic.partition(":")
    if kind not in ("session", "venue") or not entity_id:
        return None
    return topic


def register(topic: str, websocket: WebSocket) -> None:
    connections.setdefault(topic, set()).add(websocket)


def unregister(topic: str, websocket: WebSocket) -> None:
    """Safe to call more than once."""
    sockets = connections.get(topic)
    if sockets is None:
        return
    sockets.discard(websocket)
    if not sockets:
        del connections[topic]


async def broadcast(topic: str, data: str) -> int:
    """Send to every socket on the topic; dead sockets are dropped. Returns deliveries."""
    delivered = 0
    dead_connections = set()
    for ws in list(connections.get(topic, ())):
        try:
            await ws.send_text(data)
            delivered += 1
        except Exception:
            dead_connections.add(ws)
    for ws in dead_connections:
        unregister(topic, ws)
    return delivered


async def redis_listener():
    """Subscribe to Redis and broadcast to WebSocket clients."""
    while True:
        try:
            r = redis.from_url(settings.redis_url)
            pubsub = r.pubsub()
            await pubsub.psubscribe(f"{CHANNEL_PREFIX}:session:*", f"{CHANNEL_PREFIX}:venue:*")

            async for message in pubsub.listen():
                if message["type"] != "pmessage":
                    continue
                topic = topic_from_channel(message["channel"].decode())
                if topic is None:
                    continue
                await broadcast(topic, message["data"].decode())

        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Redis connection error: {e}", exc_info=True)
            await asyncio.sleep(5)  # Retry after 5 seconds


@asynccontextmanager
async def lifespan(app: FastAPI):
    task = asyncio.create_task(redis_listener())
    yield
    task.cancel()


app = FastAPI(title="Tableside WS Bridge", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.get("/health")
def health():
    session_count = sum(len(c) for t, c in connections.items() if t.startswith("session:"))
    venue_count = sum(len(c) for t, c in connections.items() if t.startswith("venue:"))
    return {
        "status": "ok",
        "session_connections": session_count,
        "venue_connections": venue_count,
        "total_connections": session_count + venue_count,
    }


async def _hold(websocket: WebSocket, topic: str) -> None:
    register(topic, websocket)
    # No catch-up log: the client must re-fetch state before trusting live events
    await websocket.send_text(json.dumps({"type": "connected", "topic": topic, "resync": True}))
    try:
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        pass
    finally:
        unregister(topic, websocket)


@app.websocket("/ws/table/{table_token}")
async def websocket_table_endpoint(websocket: WebSocket, table_token: str):
    """Guests - validates the table token and follows the table's active session."""
    client_host = websocket.client.host if websocket.client else "unknown"
    await websocket.accept()

    table_info = await validate_table_token(table_token)
    if not table_info:
        logger.warning(f"Invalid table token from {client_host}")
        await websocket.close(code=1008, reason="Invalid table token")
        return
    if not table_info.get("session_id"):
        await websocket.close(code=1008, reason="No active session")
        return

    await _hold(websocket, session_topic(table_info["session_id"]))


@app.websocket("/ws/venue/{venue_id}")
async def websocket_venue_endpoint(
    websocket: WebSocket,
    venue_id: int,
    token: Optional[str] = Query(None)
):
    """Staff console - requires JWT authentication."""
    client_host = websocket.client.host if websocket.client else "unknown"
    await websocket.accept()

    if not token:
        logger.warning(f"WebSocket /ws/venue/{venue_id}: Missing token from {client_host}")
        await websocket.close(code=1008, reason="Missing authentication token")
        return

    token_info = validate_jwt_token(token)
    if not token_info:
        logger.warning(f"WebSocket /ws/venue/{venue_id}: Invalid token from {client_host}")
        await websocket.close(code=1008, reason="Invalid authentication token")
        return

    if token_info["venue_id"] != venue_id:
        logger.warning(
            f"WebSocket /ws/venue/{venue_id}: Venue mismatch from {client_host} "
            f"(token has {token_info['venue_id']})"
        )
        await websocket.close(code=1008, reason="Venue ID mismatch")
        return

    logger.info(f"WebSocket /ws/venue/{venue_id}: authenticated {token_info['email']} from {client_host}")
    await _hold(websocket, venue_topic(venue_id))

"""
FastAPI application for synchronized watch rooms.
Hosts the room event channel (chat, shared video state, peer signaling).
"""
import logging
import time
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Request, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse, PlainTextResponse
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from pydantic import ValidationError
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.util import get_remote_address
from slowapi.errors import RateLimitExceeded
from starlette.middleware.base import BaseHTTPMiddleware

from config import DEBUG, HOST, PORT, PRODUCTION_DOMAIN, WS_MAX_EVENTS_PER_SECOND
from room_manager import room_manager
from room_models import (
    JoinEvent,
    LeaveEvent,
    PostMessageEvent,
    PostVideoStateEvent,
    SignalEvent,
    inbound_event,
)
from security import (
    normalize_room_code,
    sanitize_chat_text,
    sanitize_display_name,
)
from utils.code_generator import ensure_unique_code

# Configure logging
logging.basicConfig(level=logging.DEBUG if DEBUG else logging.INFO)
logger = logging.getLogger(__name__)

# Rate limiter setup
limiter = Limiter(key_func=get_remote_address)


# ============ LIFESPAN CONTEXT ============
@asynccontextmanager
async def lifespan(app):
    logger.info("Syncwatch started successfully")
    yield
    logger.info(f"Syncwatch shutting down ({len(room_manager.rooms)} rooms dropped)")


app = FastAPI(title="Syncwatch", docs_url=None, redoc_url=None, lifespan=lifespan)
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

# CORS Configuration - production origins only when a domain is configured
if PRODUCTION_DOMAIN:
    ALLOWED_ORIGINS = [
        f"https://{PRODUCTION_DOMAIN}",
        f"https://www.{PRODUCTION_DOMAIN}",
    ] + (["http://localhost:3000", "http://127.0.0.1:3000"] if DEBUG else [])
    ALLOWED_HOSTS = [PRODUCTION_DOMAIN, f"*.{PRODUCTION_DOMAIN}"] + (["localhost", "127.0.0.1"] if DEBUG else [])
else:
    ALLOWED_ORIGINS = ["*"]
    ALLOWED_HOSTS = ["*"]

app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    allow_credentials=bool(PRODUCTION_DOMAIN),
    allow_methods=["GET", "POST"],
    allow_headers=["*"],
)


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        response = await call_next(request)
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        if PRODUCTION_DOMAIN and not DEBUG:
            response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"
        return response

app.add_middleware(SecurityHeadersMiddleware)

# Trusted Host Middleware - prevent host header attacks
app.add_middleware(TrustedHostMiddleware, allowed_hosts=ALLOWED_HOSTS)


@app.get("/", response_class=PlainTextResponse)
async def index():
    return "Watch Party Server is running"


@app.get("/health")
async def health():
    return {"status": "ok", "rooms": len(room_manager.rooms)}


@app.post("/room/create")
@limiter.limit("5/minute")  # Rate limit room code suggestions
async def create_room(request: Request):
    """
    Suggest an unused room code.
    The room itself is created by the first join.
    """
    return JSONResponse({"room_code": ensure_unique_code(room_manager.rooms)})


@app.get("/room/{room_code}/info")
@limiter.limit("30/minute")
async def get_room_info(request: Request, room_code: str):
    """Get room status information."""
    code = normalize_room_code(room_code)
    room = room_manager.get_room(code) if code else None
    if not room:
        raise HTTPException(status_code=404, detail="Room not found")
    return JSONResponse(room_manager.info(room))


# ============ ROOM EVENT HANDLERS ============

async def handle_join(websocket: WebSocket, room_code: str, event: JoinEvent):
    await room_manager.join(
        room_code,
        event.participant_id,
        sanitize_display_name(event.display_name),
        websocket,
    )


async def handle_leave(websocket: WebSocket, room_code: str, event: LeaveEvent):
    if not await room_manager.leave(room_code, event.participant_id, websocket):
        logger.debug(f"Leave for {event.participant_id} in {room_code} ignored")


async def handle_video_state(websocket: WebSocket, room_code: str, event: PostVideoStateEvent):
    patch = event.video_state.changes()
    member = room_manager.participant_for(websocket, room_code)
    if member is not None:
        patch["last_updated_by"] = member.participant_id
    await room_manager.update_video_state(room_code, patch)


async def handle_message(websocket: WebSocket, room_code: str, event: PostMessageEvent):
    member = room_manager.participant_for(websocket, room_code)
    if member is None:
        logger.warning(f"Chat message from a non-member of room {room_code} dropped")
        return
    text = sanitize_chat_text(event.text)
    if text:
        await room_manager.post_message(room_code, member.participant_id, member.display_name, text)


async def handle_signal(websocket: WebSocket, room_code: str, event: SignalEvent):
    member = room_manager.participant_for(websocket, room_code)
    if member is None:
        logger.warning(f"Signal from a non-member of room {room_code} dropped")
        return
    await room_manager.relay_signal(room_code, member.participant_id, event.to, event.signal)


EVENT_HANDLERS = {
    "join": handle_join,
    "leave": handle_leave,
    "post_video_state": handle_video_state,
    "post_message": handle_message,
    "signal": handle_signal,
}


@app.websocket("/ws")
async def websocket_room(websocket: WebSocket):
    """
    WebSocket endpoint for the room event channel.
    One connection may join several rooms; closing it leaves all of them.
    """
    await websocket.accept()
    event_timestamps = []

    try:
        while True:
            data = await websocket.receive_text()

            # Flood guard
            now = time.monotonic()
            event_timestamps = [t for t in event_timestamps if now - t < 1.0]
            if len(event_timestamps) >= WS_MAX_EVENTS_PER_SECOND:
                logger.warning("Event rate exceeded, dropping event")
                continue
            event_timestamps.append(now)

            try:
                event = inbound_event.validate_json(data)
            except ValidationError as e:
                logger.debug(f"Malformed event dropped: {e.error_count()} errors")
                continue

            room_code = normalize_room_code(event.room_code)
            if room_code is None:
                continue

            await EVENT_HANDLERS[event.type](websocket, room_code, event)

    except WebSocketDisconnect:
        logger.debug("Room connection closed")
    except Exception:
        logger.exception("Room connection failed")
    finally:
        await room_manager.disconnect(websocket)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host=HOST, port=PORT)

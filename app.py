from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager
from typing import Optional
from pydantic import ValidationError
from routers.users import users_router
from relay import PresenceRelay, RelayError, RelayFullError
from schemas.events import ErrorNotice, SendMessageEvent, TypingEvent, UserJoinEvent, envelope, parse_inbound
from constants import CORS_ORIGINS, IDLE_TIMEOUT_SECONDS, LOG_FILE, LOG_LEVEL
from logging_config import get_logger, setup_logging
import asyncio

# Setup logging
setup_logging(log_level=LOG_LEVEL, log_file=LOG_FILE)
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # One relay per process; it owns the registry of connected clients
    app.state.relay = PresenceRelay()
    app.state.idle_timeout = IDLE_TIMEOUT_SECONDS
    logger.info("Presence relay started")
    try:
        yield
    finally:
        await app.state.relay.shutdown()


app = FastAPI(lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(users_router)

logger.info("FastAPI application initialized")


@app.get("/")
async def root():
    return {
        "message": "Real-time Chat Server is running!",
        "online_users": len(await app.state.relay.snapshot()),
    }


async def reply_error(relay: PresenceRelay, connection_id: str, code: str, detail: str):
    await relay.send_to(connection_id, envelope("error", ErrorNotice(code=code, detail=detail)))


async def receive_frame(websocket: WebSocket) -> Optional[str]:
    """Return the next text frame, or None for a frame without text.

    Raises WebSocketDisconnect when the client goes away.
    """
    message = await websocket.receive()
    if message["type"] == "websocket.disconnect":
        raise WebSocketDisconnect(message.get("code", 1000), message.get("reason"))
    return message.get("text")


async def dispatch_event(relay: PresenceRelay, connection_id: str, data: str):
    """Validate one inbound frame and route it to the matching relay operation.

    Rejected events are dropped and answered with an ``error`` event to the
    sender only; the connection stays open.
    """
    try:
        event = parse_inbound(data)
        if isinstance(event, UserJoinEvent):
            await relay.join(connection_id, event.payload)
        elif isinstance(event, SendMessageEvent):
            await relay.send_message(connection_id, event.payload.message)
        elif isinstance(event, TypingEvent):
            await relay.set_typing(connection_id, event.payload.isTyping)
        else:
            raise TypeError(f"Unhandled inbound event type: {type(event).__name__}")
    except ValidationError as e:
        detail = "; ".join(error["msg"] for error in e.errors())
        logger.warning(f"Rejected malformed event from connection {connection_id}: {detail}")
        await reply_error(relay, connection_id, "invalid_event", detail)
    except RelayError as e:
        logger.warning(f"Rejected event from connection {connection_id}: {e}")
        await reply_error(relay, connection_id, e.code, str(e))


@app.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket):
    """WebSocket endpoint for the chat relay.

    Frames are JSON envelopes ``{"event": ..., "payload": ...}``. A client is
    connected on accept and becomes visible to others after ``user_join``.
    """
    relay: PresenceRelay = websocket.app.state.relay
    idle_timeout = websocket.app.state.idle_timeout
    client_host = websocket.client.host if websocket.client else "unknown"
    connection_id = None
    logger.info(f"WebSocket connection attempt from {client_host}")

    try:
        connection_id = await relay.connect(websocket.send_text)
    except RelayFullError:
        logger.info(f"WebSocket connection rejected for {client_host}: relay is full")
        await websocket.close(code=1013, reason="Relay is full")
        return

    try:
        await websocket.accept()
        logger.info(f"WebSocket connection accepted: {connection_id} from {client_host}")

        message_count = 0
        while True:
            try:
                if idle_timeout:
                    data = await asyncio.wait_for(receive_frame(websocket), timeout=idle_timeout)
                else:
                    data = await receive_frame(websocket)
            except asyncio.TimeoutError:
                logger.info(f"Closing idle connection {connection_id} after {idle_timeout}s")
                await websocket.close(code=1000, reason="Idle timeout")
                break
            except WebSocketDisconnect:
                logger.info(f"WebSocket disconnected normally for connection {connection_id}")
                break

            message_count += 1
            if data is None:
                logger.warning(f"Rejected non-text frame from connection {connection_id}")
                await reply_error(relay, connection_id, "invalid_event", "Only JSON text frames are accepted")
                continue
            logger.debug(f"Received event #{message_count} from connection {connection_id}")
            await dispatch_event(relay, connection_id, data)

    except Exception as e:
        logger.error(f"WebSocket error for connection {connection_id}: {e}", exc_info=True)
        try:
            await websocket.close(code=1011)
        except Exception as close_error:
            logger.debug(f"Error closing WebSocket {connection_id}: {close_error}")
    finally:
        await relay.disconnect(connection_id)

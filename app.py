from fastapi import FastAPI, WebSocket
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager
from routers.rooms import rooms_router
from routers.refinement import refinement_router
from routers.retro import retro_router
from backend import RedisDirectory, create_redis_client
from broker import SessionBroker
from notifier import EmailNotifier
from errors import InvalidInput, RoomServiceError, StoreFailure, register_exception_handlers
from schemas.events import (
    CreateActionEvent,
    InboundEvent,
    JoinRoomEvent,
    PostCommentEvent,
    RoomEvent,
    SubmitPredictionEvent,
    error_event,
)
import asyncio
import uuid
import json
from constants import LOG_FILE, LOG_LEVEL
from logging_config import get_logger, setup_logging

# Setup logging
setup_logging(log_level=LOG_LEVEL, log_file=LOG_FILE)
logger = get_logger(__name__)


class WebSocketConnection:
    """Connection handle the broker sends room events through."""

    def __init__(self, websocket: WebSocket):
        self.websocket = websocket
        self.connection_id = str(uuid.uuid4())

    async def send(self, message: dict):
        await self.websocket.send_text(json.dumps(message))


async def on_join_room(broker: SessionBroker, connection: WebSocketConnection, message: dict):
    event = JoinRoomEvent.model_validate(message)
    await broker.join(connection, event.invite_code, event.name, event.email)


async def on_leave_room(broker: SessionBroker, connection: WebSocketConnection, message: dict):
    event = RoomEvent.model_validate(message)
    await broker.leave(connection, event.room_id)


async def on_submit_prediction(broker: SessionBroker, connection: WebSocketConnection, message: dict):
    event = SubmitPredictionEvent.model_validate(message)
    # Identified submitters get one prediction each instead of one per role
    participant = broker.contact_of(connection, event.room_id)
    await broker.submit_prediction(event.room_id, event.role, event.value, participant=participant)


async def on_reveal_results(broker: SessionBroker, connection: WebSocketConnection, message: dict):
    event = RoomEvent.model_validate(message)
    await broker.reveal_results(event.room_id)


async def on_reset_session(broker: SessionBroker, connection: WebSocketConnection, message: dict):
    event = RoomEvent.model_validate(message)
    await broker.reset_session(event.room_id)


async def on_post_comment(broker: SessionBroker, connection: WebSocketConnection, message: dict):
    event = PostCommentEvent.model_validate(message)
    await broker.broadcast_comment(event.room_id, event.comment)


async def on_create_action(broker: SessionBroker, connection: WebSocketConnection, message: dict):
    event = CreateActionEvent.model_validate(message)
    await broker.create_action_item(event.room_id, event.user_name, event.description)


EVENT_HANDLERS = {
    "join_room": on_join_room,
    "leave_room": on_leave_room,
    "submit_prediction": on_submit_prediction,
    "reveal_results": on_reveal_results,
    "reset_session": on_reset_session,
    "post_comment": on_post_comment,
    "create_action": on_create_action,
}


async def handle_event(broker: SessionBroker, connection: WebSocketConnection, data: str):
    """Parse one client frame and run its handler. Raises RoomServiceError on rejected events."""
    try:
        message = json.loads(data)
    except json.JSONDecodeError:
        raise InvalidInput("Invalid message format")
    if not isinstance(message, dict):
        raise InvalidInput("Invalid message format")

    event_type = InboundEvent.model_validate(message).type
    handler = EVENT_HANDLERS.get(event_type) if isinstance(event_type, str) else None
    if handler is None:
        raise InvalidInput("Unknown event type")
    logger.debug(f"Handling {event_type} from connection {connection.connection_id}")
    await handler(broker, connection, message)


async def send_error(connection: WebSocketConnection, message: str):
    try:
        await connection.send(error_event(message))
    except Exception as e:
        logger.debug(f"Could not deliver error to connection {connection.connection_id}: {e}")


def create_app(broker: SessionBroker = None) -> FastAPI:
    """Build the application.

    Without an explicit broker, one backed by Redis and SMTP is built at
    startup and closed at shutdown.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned_directory = None
        if getattr(app.state, "broker", None) is None:
            owned_directory = RedisDirectory(create_redis_client())
            await owned_directory.ping()
            app.state.broker = SessionBroker(owned_directory, notifier=EmailNotifier())
            logger.info("Session broker started")
        try:
            yield
        finally:
            await app.state.broker.close()
            if owned_directory is not None:
                await owned_directory.close()
                app.state.broker = None

    app = FastAPI(lifespan=lifespan)
    if broker is not None:
        app.state.broker = broker

    # Configure CORS to allow all origins
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # Allow all origins
        allow_credentials=True,
        allow_methods=["*"],  # Allow all HTTP methods
        allow_headers=["*"],  # Allow all headers
    )

    register_exception_handlers(app)
    app.include_router(rooms_router)
    app.include_router(refinement_router)
    app.include_router(retro_router)

    @app.websocket("/ws")
    async def websocket_endpoint(websocket: WebSocket):
        """Event stream for one client.

        Frames are JSON objects with a `type` field. Rejected events are
        answered with an `error` event; the socket stays open.
        """
        broker: SessionBroker = websocket.app.state.broker
        await websocket.accept()
        connection = WebSocketConnection(websocket)
        logger.info(f"WebSocket connection accepted: {connection.connection_id}")

        try:
            message_count = 0
            while True:
                frame = await websocket.receive()
                if frame["type"] == "websocket.disconnect":
                    logger.info(f"WebSocket disconnected normally for connection {connection.connection_id}")
                    break
                message_count += 1
                logger.debug(f"Received message #{message_count} from connection {connection.connection_id}")

                data = frame.get("text")
                if data is None:
                    # Binary frames carry no event
                    await send_error(connection, "Invalid message format")
                    continue
                try:
                    await handle_event(broker, connection, data)
                except RoomServiceError as e:
                    await send_error(connection, e.message)
                except Exception as e:
                    logger.error(f"Error handling message from connection {connection.connection_id}: {e}", exc_info=True)
                    await send_error(connection, StoreFailure.default_message)
        finally:
            # Cleanup on disconnect, even when the handler itself is cancelled
            await asyncio.shield(broker.schedule_disconnect(connection))

    logger.info("FastAPI application initialized")
    return app


app = create_app()

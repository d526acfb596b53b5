from contextlib import asynccontextmanager
from typing import Optional
from datetime import datetime, timezone
import uuid

from fastapi import FastAPI, Query, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from pydantic import ValidationError
import structlog

from .connection_manager import ConnectionManager
from .schema.events import EventType, MarkdownEvent, UserMessage
from assistant_relay.application.api.route.session import router as session_router
from assistant_relay.application.runtime import RelayRuntime
from assistant_relay.infrastructure.config.settings import Settings
from assistant_relay.infrastructure.security.token_validator import TokenValidator

logger = structlog.get_logger(__name__)


def create_app(settings: Settings, runtime: Optional[RelayRuntime] = None) -> FastAPI:
    """Build the chat server around one relay runtime"""

    connection_manager = ConnectionManager()
    runtime = runtime or RelayRuntime(settings)
    token_validator = TokenValidator(settings.server.api_token)

    async def broadcast_proactive(text: str) -> None:
        delivered = await connection_manager.broadcast(MarkdownEvent(payload=text, proactive=True))
        logger.info("Proactive message delivered", connections=delivered)

    runtime.scheduler.notify = broadcast_proactive

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await runtime.start()
        logger.info("WebSocket server started")
        try:
            yield
        finally:
            for connection_id in connection_manager.get_active_connections():
                await connection_manager.disconnect(connection_id)
            await runtime.stop()
            logger.info("WebSocket server shutdown")

    app = FastAPI(title="Assistant Relay", lifespan=lifespan)
    app.state.runtime = runtime
    app.state.connections = connection_manager
    app.state.token_validator = token_validator

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(session_router)

    @app.websocket("/ws/chat")
    async def chat_websocket(websocket: WebSocket, token: Optional[str] = Query(None)):
        """Main WebSocket endpoint for the user's chat client"""

        if not token_validator.verify(token):
            await websocket.close(code=1008, reason="Invalid token")
            return

        connection_id = str(uuid.uuid4())
        await connection_manager.connect(websocket, connection_id)

        try:
            while True:
                data = await websocket.receive_json()

                if not isinstance(data, dict) or data.get("type") != EventType.USER_MESSAGE:
                    await connection_manager.send_error(
                        connection_id, "Unsupported event", error_code="unsupported_event"
                    )
                    continue

                try:
                    message = UserMessage(**data)
                except ValidationError as e:
                    await connection_manager.send_error(
                        connection_id, f"Invalid message: {e.errors()[0]['msg']}", error_code="invalid_message"
                    )
                    continue

                reply = await runtime.relay.handle_message(
                    message.content,
                    image_path=message.image_path,
                    team_mode=message.team_mode
                )

                if reply.ok:
                    await connection_manager.send_event(
                        connection_id,
                        MarkdownEvent(payload=reply.text, details=reply.details)
                    )
                else:
                    await connection_manager.send_error(
                        connection_id, f"Engine error: {reply.error}", error_code="engine_error"
                    )

        except WebSocketDisconnect:
            logger.info("Client disconnected", connection_id=connection_id)
        except ValueError as e:
            logger.warning("Malformed frame, closing connection", connection_id=connection_id, error=str(e))
        finally:
            await connection_manager.disconnect(connection_id)

    @app.get("/health")
    async def health_check():
        """Health check endpoint; also re-probes the context store"""
        store_available = await runtime.store.health_check()
        return {
            "status": "healthy",
            "store_available": store_available,
            "active_connections": len(connection_manager.active_connections),
            "timestamp": datetime.now(timezone.utc).isoformat()
        }

    return app

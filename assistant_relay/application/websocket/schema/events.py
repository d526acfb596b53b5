from typing import Dict, Any, Optional, Literal
from pydantic import BaseModel, Field
from datetime import datetime, timezone
from enum import Enum


class EventType(str, Enum):
    """WebSocket event types"""
    MARKDOWN = "markdown"
    ERROR = "error"
    CONNECTION = "connection"
    USER_MESSAGE = "user_message"


class BaseEvent(BaseModel):
    """Base event model for all WebSocket messages"""
    type: EventType
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class MarkdownEvent(BaseEvent):
    """Assistant text, either a reply or a proactive message"""
    type: Literal[EventType.MARKDOWN] = EventType.MARKDOWN
    payload: str
    proactive: bool = False
    details: Optional[Dict[str, Any]] = None


class ErrorEvent(BaseEvent):
    """Error event"""
    type: Literal[EventType.ERROR] = EventType.ERROR
    payload: Dict[str, Any]
    error_code: Optional[str] = None


class ConnectionEvent(BaseEvent):
    """Connection status event"""
    type: Literal[EventType.CONNECTION] = EventType.CONNECTION
    status: Literal["connected", "disconnected"]
    connection_id: str


class UserMessage(BaseEvent):
    """User message event"""
    type: Literal[EventType.USER_MESSAGE] = EventType.USER_MESSAGE
    content: str = Field(min_length=1)
    image_path: Optional[str] = None
    team_mode: bool = False

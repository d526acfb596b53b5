from typing import Dict, Any, List, Optional, Literal, Union
from pydantic import BaseModel, Field
from datetime import datetime, timezone
from enum import Enum


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class EngineModel(str, Enum):
    """Engine capability/cost tier"""
    OPUS = "opus"
    SONNET = "sonnet"
    HAIKU = "haiku"


class PermissionMode(str, Enum):
    """Tool-use gating, enforced by the engine"""
    ASK = "default"
    AUTO_EDIT = "acceptEdits"
    PLAN_FIRST = "plan"
    UNRESTRICTED = "bypass"


class ThinkingDepth(str, Enum):
    """Reasoning depth preference"""
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class TokenUsage(BaseModel):
    """Lifetime and per-session token counters"""
    total_input: int = Field(default=0, ge=0)
    total_output: int = Field(default=0, ge=0)
    session_input: int = Field(default=0, ge=0)
    session_output: int = Field(default=0, ge=0)
    last_updated_at: datetime = Field(default_factory=utcnow)


class SessionState(BaseModel):
    """Durable conversational state, one record per deployment"""
    continuation_token: Optional[str] = Field(None, description="Engine session id; None starts fresh")
    model: EngineModel = Field(default=EngineModel.OPUS)
    permission_mode: PermissionMode = Field(default=PermissionMode.ASK)
    thinking_depth: ThinkingDepth = Field(default=ThinkingDepth.MEDIUM)
    verbose: bool = False
    token_usage: TokenUsage = Field(default_factory=TokenUsage)
    current_project_id: Optional[str] = Field(None, description="Key into the project registry")
    last_activity_at: datetime = Field(default_factory=utcnow)

    def get_state_summary(self) -> Dict[str, Any]:
        """Get a summary of the current state"""
        return {
            "has_session": self.continuation_token is not None,
            "session": self.continuation_token[:8] if self.continuation_token else None,
            "model": self.model.value,
            "permission_mode": self.permission_mode.value,
            "thinking_depth": self.thinking_depth.value,
            "verbose": self.verbose,
            "current_project_id": self.current_project_id,
            "last_activity_at": self.last_activity_at.isoformat()
        }


class SessionSnapshot(BaseModel):
    """What an invocation was started against; used for compare-and-swap commits"""
    epoch: int
    continuation_token: Optional[str] = None
    model: EngineModel
    permission_mode: PermissionMode
    current_project_id: Optional[str] = None


class TokenUsageSummary(BaseModel):
    """Derived usage and cost figures"""
    model: EngineModel
    session_input: int
    session_output: int
    session_total: int
    session_cost: float
    input: int
    output: int
    total: int
    cost: float
    last_updated_at: datetime


class EngineRequest(BaseModel):
    """One engine invocation"""
    prompt: str
    resume: bool = False
    continuation_token: Optional[str] = None
    model: Optional[EngineModel] = None
    permission_mode: Optional[PermissionMode] = None
    working_dir: str
    image_path: Optional[str] = None
    team_mode: bool = False


class EngineInvocationResult(BaseModel):
    """Outcome of an engine invocation; error set means failure"""
    content: str = ""
    continuation_token: Optional[str] = None
    error: Optional[str] = None
    tokens_in: int = 0
    tokens_out: int = 0
    duration_ms: float = 0.0

    @property
    def ok(self) -> bool:
        return self.error is None


class MemoryKind(str, Enum):
    """Memory record types in the store"""
    FACT = "fact"
    GOAL = "goal"
    COMPLETED_GOAL = "completed_goal"


class MemoryRecord(BaseModel):
    """Typed memory row"""
    id: Optional[str] = None
    kind: MemoryKind
    content: str
    deadline: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    created_at: Optional[datetime] = None


class MessageRole(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


class StoredMessage(BaseModel):
    """Message log row"""
    id: Optional[str] = None
    role: MessageRole
    content: str
    channel: str = "relay"
    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: Optional[datetime] = None


class RememberIntent(BaseModel):
    """[REMEMBER: text]"""
    kind: Literal["remember"] = "remember"
    raw: str
    content: str


class GoalIntent(BaseModel):
    """[GOAL: text | DEADLINE: text]"""
    kind: Literal["goal"] = "goal"
    raw: str
    content: str
    deadline: Optional[str] = None


class DoneIntent(BaseModel):
    """[DONE: search text]"""
    kind: Literal["done"] = "done"
    raw: str
    search: str


MemoryIntent = Union[RememberIntent, GoalIntent, DoneIntent]


class IntentOutcome(BaseModel):
    """Result of dispatching one memory intent to the store"""
    intent: MemoryIntent = Field(discriminator="kind")
    status: Literal["stored", "completed", "no_match", "failed", "skipped"]
    error: Optional[str] = None


class ProcessedResponse(BaseModel):
    """Engine response with memory tags stripped"""
    text: str
    outcomes: List[IntentOutcome] = Field(default_factory=list)


class ProactiveDecision(BaseModel):
    """Parsed YES/NO decision from the engine"""
    should_act: bool
    message: Optional[str] = None
    reason: str

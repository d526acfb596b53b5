"""Shared fixtures and in-memory collaborators for relay tests."""

from typing import Any, Awaitable, Callable, Dict, List, Optional, Union
import asyncio
from datetime import datetime, timezone
from pathlib import Path

import pytest

from assistant_relay.domain.context.context_manager import ContextManager
from assistant_relay.domain.context.memory.intent_processor import MemoryIntentProcessor
from assistant_relay.domain.context.prompt_builder import PromptBuilder
from assistant_relay.domain.context.state.project_registry import ProjectRegistry
from assistant_relay.domain.context.state.state_manager import SessionStateManager
from assistant_relay.domain.context.workspace_loader import WorkspaceLoader
from assistant_relay.domain.models.session_state import (
    EngineInvocationResult, EngineRequest, MemoryKind, MemoryRecord, MessageRole, StoredMessage
)
from assistant_relay.domain.orchestration.relay_service import RelayService
from assistant_relay.infrastructure.config.settings import Settings, load_settings
from assistant_relay.infrastructure.store.supabase_client import StoreError


ScriptedResult = Union[
    EngineInvocationResult,
    Callable[[EngineRequest], Awaitable[EngineInvocationResult]]
]


class FakeGateway:
    """Engine stand-in returning scripted results in order"""

    def __init__(self, results: Optional[List[ScriptedResult]] = None):
        self.results = list(results or [])
        self.requests: List[EngineRequest] = []

    def queue(self, result: ScriptedResult) -> None:
        self.results.append(result)

    async def invoke(self, request: EngineRequest) -> EngineInvocationResult:
        self.requests.append(request)
        result = self.results.pop(0) if self.results else EngineInvocationResult(content="ok")
        if callable(result):
            result = await result(request)
        return result.model_copy()


class FakeStore:
    """In-memory context store with the client's interface"""

    def __init__(self, available: bool = True):
        self.available = available
        self.fail_writes = False
        self.fail_reads = False
        self.calls: List[tuple] = []
        self.messages: List[StoredMessage] = []
        self.records: List[MemoryRecord] = []
        self.search_results: List[StoredMessage] = []
        self._ids = 0

    def _next_id(self) -> str:
        self._ids += 1
        return f"rec-{self._ids}"

    def add_goal(self, content: str, deadline: Optional[datetime] = None) -> MemoryRecord:
        record = MemoryRecord(
            id=self._next_id(),
            kind=MemoryKind.GOAL,
            content=content,
            deadline=deadline,
            created_at=datetime.now(timezone.utc)
        )
        self.records.append(record)
        return record

    def add_fact(self, content: str) -> MemoryRecord:
        record = MemoryRecord(id=self._next_id(), kind=MemoryKind.FACT, content=content)
        self.records.append(record)
        return record

    def _check_write(self) -> None:
        if self.fail_writes:
            raise StoreError("write failed")

    async def save_message(self, role: MessageRole, content: str, metadata: Optional[Dict[str, Any]] = None) -> None:
        self._check_write()
        self.calls.append(("save_message", MessageRole(role).value, content))
        self.messages.append(StoredMessage(role=role, content=content, metadata=metadata or {}))

    async def insert_fact(self, content: str) -> None:
        self._check_write()
        self.calls.append(("insert_fact", content))
        self.add_fact(content)

    async def insert_goal(self, content: str, deadline: Optional[str] = None) -> None:
        self._check_write()
        self.calls.append(("insert_goal", content, deadline))
        self.add_goal(content)

    async def complete_goal(self, search_text: str) -> Optional[str]:
        self._check_write()
        self.calls.append(("complete_goal", search_text))
        for record in reversed(self.records):
            if record.kind == MemoryKind.GOAL and search_text.lower() in record.content.lower():
                record.kind = MemoryKind.COMPLETED_GOAL
                record.completed_at = datetime.now(timezone.utc)
                return record.id
        return None

    async def get_facts(self) -> List[MemoryRecord]:
        if self.fail_reads:
            raise StoreError("read failed")
        return [r for r in reversed(self.records) if r.kind == MemoryKind.FACT]

    async def get_active_goals(self) -> List[MemoryRecord]:
        if self.fail_reads:
            raise StoreError("read failed")
        return [r for r in reversed(self.records) if r.kind == MemoryKind.GOAL]

    async def get_recent_messages(self, limit: int = 20) -> List[StoredMessage]:
        if self.fail_reads:
            raise StoreError("read failed")
        return list(reversed(self.messages))[:limit]

    async def search_messages(self, query: str, limit: int = 5) -> List[StoredMessage]:
        self.calls.append(("search_messages", query))
        return self.search_results[:limit]

    async def health_check(self) -> bool:
        return self.available

    async def close(self) -> None:
        pass

    def call_names(self) -> List[str]:
        return [call[0] for call in self.calls]


class FakeProcess:
    """Stands in for asyncio.subprocess.Process"""

    def __init__(self, stdout: bytes = b"", stderr: bytes = b"", returncode: int = 0, hang: bool = False):
        self._stdout = stdout
        self._stderr = stderr
        self._exit_code = returncode
        self.returncode: Optional[int] = None
        self.hang = hang
        self.killed = False
        self.pid = 4242

    async def communicate(self):
        if self.hang:
            await asyncio.sleep(3600)
        self.returncode = self._exit_code
        return self._stdout, self._stderr

    def kill(self):
        self.killed = True
        self.returncode = -9

    async def wait(self):
        return self.returncode


def relay_environ(tmp_path: Path, **overrides: str) -> Dict[str, str]:
    environ = {
        "RELAY_API_TOKEN": "test-token",
        "SUPABASE_URL": "https://store.example.test",
        "SUPABASE_ANON_KEY": "anon-key",
        "WORKSPACE_DIR": str(tmp_path / "workspace"),
        "PROJECTS_DIR": str(tmp_path / "projects"),
        "DATA_DIR": str(tmp_path / "data"),
        "ENABLE_PROACTIVE": "false",
    }
    environ.update(overrides)
    return environ


@pytest.fixture
def make_environ(tmp_path) -> Callable[..., Dict[str, str]]:
    return lambda **overrides: relay_environ(tmp_path, **overrides)


@pytest.fixture
def settings(tmp_path) -> Settings:
    return load_settings(relay_environ(tmp_path))


@pytest.fixture
def store() -> FakeStore:
    return FakeStore()


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def workspace(tmp_path) -> WorkspaceLoader:
    return WorkspaceLoader(tmp_path / "workspace")


@pytest.fixture
def state(tmp_path) -> SessionStateManager:
    """Uninitialized; tests await state.initialize() themselves"""
    return SessionStateManager(tmp_path / "data")


@pytest.fixture
def context_manager(workspace, store) -> ContextManager:
    return ContextManager(workspace=workspace, builder=PromptBuilder(user_name="Sam"), store=store)


@pytest.fixture
def relay(state, context_manager, gateway, store, tmp_path) -> RelayService:
    return RelayService(
        state=state,
        context_manager=context_manager,
        gateway=gateway,
        intents=MemoryIntentProcessor(store),
        projects=ProjectRegistry(tmp_path / "data", default_dir=tmp_path / "workspace")
    )

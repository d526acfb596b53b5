from typing import List, Optional
import asyncio
import structlog

from assistant_relay.domain.models.session_state import MemoryRecord, MessageRole
from assistant_relay.infrastructure.store.supabase_client import ContextStoreClient, StoreError
from .prompt_builder import PromptBuilder
from .workspace_loader import WorkspaceLoader

logger = structlog.get_logger(__name__)


def format_memory_context(facts: List[MemoryRecord], goals: List[MemoryRecord]) -> str:
    """Render facts and goals for the prompt"""

    parts: List[str] = []

    if facts:
        parts.append("FACTS:")
        parts.extend(f"- {fact.content}" for fact in facts)

    if goals:
        if parts:
            parts.append("")
        parts.append("GOALS:")
        for goal in goals:
            deadline = f" (by {goal.deadline.date().isoformat()})" if goal.deadline else ""
            parts.append(f"- {goal.content}{deadline}")

    return "\n".join(parts)


class ContextManager:
    """Assembles workspace, store and history context into one engine prompt"""

    def __init__(
        self,
        workspace: WorkspaceLoader,
        builder: PromptBuilder,
        store: Optional[ContextStoreClient] = None,
        history_limit: int = 5
    ):
        self.workspace = workspace
        self.builder = builder
        self.store = store
        self.history_limit = history_limit

    @property
    def store_available(self) -> bool:
        return self.store is not None and self.store.available

    async def build_prompt(self, user_message: str, include_history: bool = True) -> str:
        """Gather every context source concurrently and build the prompt"""

        logger.info("Building context", message_chars=len(user_message))

        docs, memory_context, history = await asyncio.gather(
            self.workspace.load(),
            self.get_memory_context(),
            self.get_relevant_history(user_message) if include_history else self._nothing(),
        )

        return self.builder.build(
            user_message,
            docs,
            store_context=memory_context,
            relevant_history=history
        )

    async def get_memory_context(self) -> str:
        """Facts and open goals as text; empty when the store is down"""

        if not self.store_available:
            return ""

        try:
            facts, goals = await asyncio.gather(
                self.store.get_facts(),
                self.store.get_active_goals(),
            )
        except StoreError as e:
            logger.error("Error getting memory context", error=str(e))
            return ""

        return format_memory_context(facts, goals)

    async def get_active_goals(self) -> List[MemoryRecord]:
        if not self.store_available:
            return []
        try:
            return await self.store.get_active_goals()
        except StoreError as e:
            logger.error("Error getting goals", error=str(e))
            return []

    async def get_relevant_history(self, query: str) -> str:
        """Semantically closest past messages; empty when nothing is found"""

        if not self.store_available:
            return ""

        messages = await self.store.search_messages(query, limit=self.history_limit)
        if not messages:
            return ""

        lines = ["RELEVANT PAST MESSAGES:"]
        lines.extend(f"[{message.role.value}]: {message.content}" for message in messages)
        return "\n".join(lines)

    async def save_message(self, role: MessageRole, content: str, **metadata) -> bool:
        """Append to the message log; failures are logged and reported as False"""

        if not self.store_available:
            return False
        try:
            await self.store.save_message(role, content, metadata)
        except StoreError as e:
            logger.error("Error saving message", role=MessageRole(role).value, error=str(e))
            return False
        return True

    @staticmethod
    async def _nothing() -> str:
        return ""

from typing import Any, Dict, List, Optional
import uuid

import structlog
from pydantic import BaseModel, Field

from assistant_relay.domain.context.context_manager import ContextManager
from assistant_relay.domain.context.memory.intent_processor import MemoryIntentProcessor
from assistant_relay.domain.context.state.project_registry import ProjectRegistry
from assistant_relay.domain.context.state.state_manager import SessionStateManager
from assistant_relay.domain.engine.gateway import EngineGateway
from assistant_relay.domain.models.session_state import EngineRequest, IntentOutcome, MessageRole

logger = structlog.get_logger(__name__)


class RelayReply(BaseModel):
    """What goes back to the chat client for one inbound message"""
    text: str = ""
    error: Optional[str] = None
    intents: List[IntentOutcome] = Field(default_factory=list)
    details: Optional[Dict[str, Any]] = None

    @property
    def ok(self) -> bool:
        return self.error is None


class RelayService:
    """Runs one conversational turn: enrich, invoke, commit, post-process"""

    def __init__(
        self,
        state: SessionStateManager,
        context_manager: ContextManager,
        gateway: EngineGateway,
        intents: MemoryIntentProcessor,
        projects: ProjectRegistry
    ):
        self.state = state
        self.context_manager = context_manager
        self.gateway = gateway
        self.intents = intents
        self.projects = projects

    async def handle_message(
        self,
        text: str,
        image_path: Optional[str] = None,
        team_mode: bool = False
    ) -> RelayReply:
        """
        Relay one user message to the engine.

        The whole read-token/invoke/commit sequence runs inside the session's
        turn lock, so a second message waits for the first one's token.
        """

        turn_id = uuid.uuid4().hex[:12]
        with structlog.contextvars.bound_contextvars(turn_id=turn_id):
            user_message = f"[Image: {image_path}]\n\n{text}" if image_path else text
            logger.info("Inbound message", chars=len(text), image=bool(image_path))

            await self.context_manager.save_message(
                MessageRole.USER, f"[Image]: {text}" if image_path else text
            )

            async with self.state.turn() as snapshot:
                prompt = await self.context_manager.build_prompt(user_message)

                result = await self.gateway.invoke(EngineRequest(
                    prompt=prompt,
                    resume=snapshot.continuation_token is not None,
                    continuation_token=snapshot.continuation_token,
                    model=snapshot.model,
                    permission_mode=snapshot.permission_mode,
                    working_dir=self.projects.resolve_working_dir(snapshot.current_project_id),
                    image_path=image_path,
                    team_mode=team_mode
                ))

                if not result.ok:
                    # Leave state untouched so the next message retries from the same point
                    return RelayReply(error=result.error)

                committed = await self.state.commit_invocation(snapshot, result)

            processed = await self.intents.process(result.content)
            await self.context_manager.save_message(MessageRole.ASSISTANT, processed.text)
            await self.state.touch()

            reply = RelayReply(text=processed.text, intents=processed.outcomes)
            if self.state.get_state().verbose:
                reply.details = {
                    "duration_ms": round(result.duration_ms),
                    "tokens_in": result.tokens_in,
                    "tokens_out": result.tokens_out,
                    "session": result.continuation_token[:8] if result.continuation_token else None,
                    "committed": committed,
                }
            return reply

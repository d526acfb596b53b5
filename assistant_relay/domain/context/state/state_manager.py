from typing import AsyncIterator, Dict, Optional, Tuple
import asyncio
import os
from contextlib import asynccontextmanager
from pathlib import Path

import structlog
from pydantic import ValidationError

from assistant_relay.domain.models.session_state import (
    EngineInvocationResult, EngineModel, PermissionMode, SessionSnapshot,
    SessionState, ThinkingDepth, TokenUsage, TokenUsageSummary, utcnow
)
from assistant_relay.infrastructure.observability.logging import relay_logger, token_prefix

logger = structlog.get_logger(__name__)

SESSION_FILE_NAME = "session.json"

# USD per million tokens (input, output)
MODEL_PRICING: Dict[EngineModel, Tuple[float, float]] = {
    EngineModel.OPUS: (15.00, 75.00),
    EngineModel.SONNET: (3.00, 15.00),
    EngineModel.HAIKU: (0.80, 4.00),
}


class SessionNotInitializedError(RuntimeError):
    """State accessed before initialize() completed"""


def estimate_cost(model: EngineModel, tokens_in: int, tokens_out: int) -> float:
    input_price, output_price = MODEL_PRICING[model]
    return (tokens_in * input_price + tokens_out * output_price) / 1_000_000


class SessionStateManager:
    """
    Single owner of the durable SessionState.

    Every mutator runs under one asyncio lock and rewrites the whole session
    file. A separate turn lock serializes the read-token/invoke/commit
    sequence, and an in-memory epoch lets late results be detected and
    discarded instead of overwriting newer state.
    """

    def __init__(self, data_dir: Path, default_model: EngineModel = EngineModel.OPUS):
        self.data_dir = Path(data_dir)
        self.state_file = self.data_dir / SESSION_FILE_NAME
        self.default_model = default_model
        self._state: Optional[SessionState] = None
        self._epoch = 0
        self._lock = asyncio.Lock()
        self._turn_lock = asyncio.Lock()

    async def initialize(self) -> SessionState:
        """Load persisted state, or create defaults if there is none"""

        await asyncio.to_thread(self.data_dir.mkdir, parents=True, exist_ok=True)

        async with self._lock:
            self._state = await asyncio.to_thread(self._load)
            logger.info(
                "Session state loaded",
                session=token_prefix(self._state.continuation_token),
                model=self._state.model.value
            )
            return self._state.model_copy(deep=True)

    def _load(self) -> SessionState:
        try:
            raw = self.state_file.read_text(encoding="utf-8")
        except FileNotFoundError:
            return SessionState(model=self.default_model)

        try:
            return SessionState.model_validate_json(raw)
        except ValidationError as e:
            logger.error("Session file unreadable, starting with defaults", error=str(e))
            return SessionState(model=self.default_model)

    def _require(self) -> SessionState:
        if self._state is None:
            raise SessionNotInitializedError("Session not initialized. Call initialize() first.")
        return self._state

    def get_state(self) -> SessionState:
        """Copy of the current state"""
        return self._require().model_copy(deep=True)

    def snapshot(self) -> SessionSnapshot:
        """Capture what an invocation is about to be started against"""

        state = self._require()
        return SessionSnapshot(
            epoch=self._epoch,
            continuation_token=state.continuation_token,
            model=state.model,
            permission_mode=state.permission_mode,
            current_project_id=state.current_project_id
        )

    def is_current(self, snapshot: SessionSnapshot) -> bool:
        """True while nothing has been committed since the snapshot was taken"""
        self._require()
        return snapshot.epoch == self._epoch

    @asynccontextmanager
    async def turn(self) -> AsyncIterator[SessionSnapshot]:
        """Critical section for one conversational turn"""

        async with self._turn_lock:
            yield self.snapshot()

    async def _persist(self) -> bool:
        """Write the full record; failures are logged, in-memory state stays authoritative"""

        payload = self._require().model_dump_json(indent=2)
        try:
            await asyncio.to_thread(self._write, payload)
        except OSError as e:
            logger.error("Failed to persist session state", file=str(self.state_file), error=str(e))
            return False
        return True

    def _write(self, payload: str) -> None:
        tmp = self.state_file.with_suffix(".json.tmp")
        tmp.write_text(payload, encoding="utf-8")
        os.replace(tmp, self.state_file)

    # ------------------------------------------------------------------
    # Mutators
    # ------------------------------------------------------------------

    async def set_continuation_token(self, token: Optional[str]) -> None:
        async with self._lock:
            state = self._require()
            state.continuation_token = token
            state.last_activity_at = utcnow()
            self._epoch += 1
            persisted = await self._persist()
        relay_logger.log_state_mutation("continuation_token", token_prefix(token), persisted)

    async def commit_invocation(
        self,
        snapshot: SessionSnapshot,
        result: EngineInvocationResult
    ) -> bool:
        """
        Apply a successful invocation's token and usage, compare-and-swap style.

        Returns:
            False if anything was committed after the snapshot was taken;
            the result is discarded and state is left as it is.
        """

        async with self._lock:
            state = self._require()
            if snapshot.epoch != self._epoch:
                logger.warning(
                    "Discarding stale invocation result",
                    snapshot_epoch=snapshot.epoch,
                    current_epoch=self._epoch,
                    session=token_prefix(result.continuation_token)
                )
                return False

            token = result.continuation_token
            is_new_session = token is not None and token != snapshot.continuation_token
            if is_new_session:
                state.continuation_token = token

            self._add_usage(state, result.tokens_in, result.tokens_out, is_new_session)
            state.last_activity_at = utcnow()
            self._epoch += 1
            persisted = await self._persist()

        relay_logger.log_state_mutation("continuation_token", token_prefix(token), persisted)
        return True

    async def set_project(self, project_id: Optional[str]) -> None:
        async with self._lock:
            self._require().current_project_id = project_id
            persisted = await self._persist()
        relay_logger.log_state_mutation("current_project_id", project_id, persisted)

    async def set_permission_mode(self, mode: PermissionMode) -> None:
        async with self._lock:
            self._require().permission_mode = PermissionMode(mode)
            persisted = await self._persist()
        relay_logger.log_state_mutation("permission_mode", PermissionMode(mode).value, persisted)

    async def set_model(self, model: EngineModel) -> None:
        async with self._lock:
            self._require().model = EngineModel(model)
            persisted = await self._persist()
        relay_logger.log_state_mutation("model", EngineModel(model).value, persisted)

    async def set_thinking_depth(self, depth: ThinkingDepth) -> None:
        async with self._lock:
            self._require().thinking_depth = ThinkingDepth(depth)
            persisted = await self._persist()
        relay_logger.log_state_mutation("thinking_depth", ThinkingDepth(depth).value, persisted)

    async def set_verbose(self, verbose: bool) -> None:
        async with self._lock:
            self._require().verbose = bool(verbose)
            persisted = await self._persist()
        relay_logger.log_state_mutation("verbose", bool(verbose), persisted)

    async def clear(self) -> None:
        """Forget the continuation token so the next turn starts fresh"""

        async with self._lock:
            state = self._require()
            state.continuation_token = None
            state.last_activity_at = utcnow()
            self._epoch += 1
            persisted = await self._persist()
        relay_logger.log_state_mutation("continuation_token", None, persisted)

    async def touch(self) -> None:
        async with self._lock:
            self._require().last_activity_at = utcnow()
            await self._persist()

    async def record_usage(self, tokens_in: int, tokens_out: int, is_new_session: bool) -> None:
        async with self._lock:
            self._add_usage(self._require(), tokens_in, tokens_out, is_new_session)
            await self._persist()

    @staticmethod
    def _add_usage(state: SessionState, tokens_in: int, tokens_out: int, is_new_session: bool) -> None:
        usage = state.token_usage
        session_input = 0 if is_new_session else usage.session_input
        session_output = 0 if is_new_session else usage.session_output
        state.token_usage = TokenUsage(
            total_input=usage.total_input + tokens_in,
            total_output=usage.total_output + tokens_out,
            session_input=session_input + tokens_in,
            session_output=session_output + tokens_out,
            last_updated_at=utcnow()
        )

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_token_usage_summary(self) -> TokenUsageSummary:
        """Session and lifetime totals with cost at the active model's prices"""

        state = self._require()
        usage = state.token_usage
        return TokenUsageSummary(
            model=state.model,
            session_input=usage.session_input,
            session_output=usage.session_output,
            session_total=usage.session_input + usage.session_output,
            session_cost=estimate_cost(state.model, usage.session_input, usage.session_output),
            input=usage.total_input,
            output=usage.total_output,
            total=usage.total_input + usage.total_output,
            cost=estimate_cost(state.model, usage.total_input, usage.total_output),
            last_updated_at=usage.last_updated_at
        )

from typing import List, Optional
import re

import structlog

from assistant_relay.domain.models.session_state import (
    DoneIntent, GoalIntent, IntentOutcome, MemoryIntent, ProcessedResponse, RememberIntent
)
from assistant_relay.infrastructure.observability.logging import relay_logger
from assistant_relay.infrastructure.store.supabase_client import ContextStoreClient, StoreError

logger = structlog.get_logger(__name__)

REMEMBER_TAG = re.compile(r"\[REMEMBER:\s*(.+?)\]", re.IGNORECASE)
GOAL_TAG = re.compile(r"\[GOAL:\s*(.+?)(?:\s*\|\s*DEADLINE:\s*(.+?))?\]", re.IGNORECASE)
DONE_TAG = re.compile(r"\[DONE:\s*(.+?)\]", re.IGNORECASE)


def parse_memory_intents(response: str) -> List[MemoryIntent]:
    """All memory tags in dispatch order: REMEMBER, then GOAL, then DONE"""

    intents: List[MemoryIntent] = []
    for match in REMEMBER_TAG.finditer(response):
        intents.append(RememberIntent(raw=match.group(0), content=match.group(1).strip()))
    for match in GOAL_TAG.finditer(response):
        deadline = match.group(2).strip() if match.group(2) else None
        intents.append(GoalIntent(raw=match.group(0), content=match.group(1).strip(), deadline=deadline))
    for match in DONE_TAG.finditer(response):
        intents.append(DoneIntent(raw=match.group(0), search=match.group(1).strip()))
    return intents


class MemoryIntentProcessor:
    """Turns memory tags in engine output into store writes and strips them"""

    def __init__(self, store: Optional[ContextStoreClient]):
        self.store = store

    async def process(self, response: str) -> ProcessedResponse:
        """
        Dispatch every tag, then return the response without them.

        Store writes are best effort: each outcome is reported on the result
        and logged, and a failed write never prevents the text from being
        returned. Malformed tags do not match and pass through unchanged.
        """

        clean = response
        outcomes: List[IntentOutcome] = []

        for intent in parse_memory_intents(response):
            outcomes.append(await self._dispatch(intent))
            clean = clean.replace(intent.raw, "", 1)

        return ProcessedResponse(text=clean.strip(), outcomes=outcomes)

    async def _dispatch(self, intent: MemoryIntent) -> IntentOutcome:
        if self.store is None or not self.store.available:
            relay_logger.log_memory_intent(intent.kind, "skipped")
            return IntentOutcome(intent=intent, status="skipped", error="store unavailable")

        try:
            if isinstance(intent, RememberIntent):
                await self.store.insert_fact(intent.content)
                outcome = IntentOutcome(intent=intent, status="stored")
            elif isinstance(intent, GoalIntent):
                await self.store.insert_goal(intent.content, intent.deadline)
                outcome = IntentOutcome(intent=intent, status="stored")
            else:
                goal_id = await self.store.complete_goal(intent.search)
                if goal_id is None:
                    logger.warning("No open goal matches completion", search=intent.search)
                    outcome = IntentOutcome(intent=intent, status="no_match")
                else:
                    outcome = IntentOutcome(intent=intent, status="completed")
        except StoreError as e:
            logger.error("Memory intent not persisted", kind=intent.kind, error=str(e))
            outcome = IntentOutcome(intent=intent, status="failed", error=str(e))

        relay_logger.log_memory_intent(
            intent.kind,
            outcome.status,
            content=getattr(intent, "content", None) or getattr(intent, "search", None),
            error=outcome.error
        )
        return outcome

"""
Proactive decision protocol.

The engine is asked to answer in a fixed three-line format:

    DECISION: YES|NO
    MESSAGE: <text or "none">
    REASON: <text>

Parsing fails closed: anything other than an explicit YES with a real
message means "do not act". This path runs on a timer with nobody to
approve it.
"""

from typing import List, Optional
from datetime import datetime
import re

import structlog
from pydantic import BaseModel, Field

from assistant_relay.domain.context.context_manager import ContextManager
from assistant_relay.domain.engine.gateway import EngineGateway
from assistant_relay.domain.models.session_state import EngineModel, EngineRequest, ProactiveDecision

logger = structlog.get_logger(__name__)

DECISION_LINE = re.compile(r"^\s*DECISION:\s*(\S+)\s*$", re.IGNORECASE | re.MULTILINE)
MESSAGE_FIELD = re.compile(r"^\s*MESSAGE:\s*(.*?)(?=^\s*REASON:|\Z)", re.IGNORECASE | re.MULTILINE | re.DOTALL)
REASON_FIELD = re.compile(r"^\s*REASON:\s*(.*)", re.IGNORECASE | re.MULTILINE | re.DOTALL)

NO_MESSAGE = "none"


class DecisionContext(BaseModel):
    """What the engine is told when asked whether to reach out"""
    now: datetime
    timezone: str
    active_goals: List[str] = Field(default_factory=list)
    sent_today: str = ""


def time_of_day(now: datetime) -> str:
    if now.hour < 12:
        return "morning"
    if now.hour < 17:
        return "afternoon"
    return "evening"


def build_decision_prompt(context: DecisionContext) -> str:
    goals = ", ".join(context.active_goals) or "None"
    lines = [
        "You are a proactive AI assistant. Decide if you should check in with the user.",
        "",
        "CONTEXT:",
        f"- Current time: {context.now.strftime('%Y-%m-%d %H:%M')} ({time_of_day(context.now)})",
        f"- Active goals: {goals}",
        f"- Timezone: {context.timezone}",
        "",
        "RULES:",
        "1. Don't be annoying - max 2-3 check-ins per day",
        "2. Only check in if there's a REASON (goal deadline, important context)",
        "3. Be brief and helpful, not intrusive",
        "4. Consider time of day (don't interrupt deep work hours)",
        "",
        "RESPOND IN THIS FORMAT:",
        "DECISION: YES or NO",
        'MESSAGE: [Your brief message if YES, or "none" if NO]',
        "REASON: [Why you decided this]",
    ]
    if context.sent_today.strip():
        lines += ["", "ALREADY SENT TODAY:", context.sent_today.strip()]
    return "\n".join(lines)


def parse_decision(text: str) -> ProactiveDecision:
    """Parse engine output; missing or non-YES decisions never act"""

    text = text or ""
    decision_match = DECISION_LINE.search(text)
    message_match = MESSAGE_FIELD.search(text)
    reason_match = REASON_FIELD.search(text)

    decision = decision_match.group(1).upper() if decision_match else None
    message: Optional[str] = message_match.group(1).strip() if message_match else None
    if not message or message.lower() == NO_MESSAGE:
        message = None
    reason = reason_match.group(1).strip() if reason_match else ""

    if decision != "YES":
        return ProactiveDecision(
            should_act=False,
            message=None,
            reason=reason or ("decision missing" if decision is None else f"decision was {decision}")
        )

    if message is None:
        return ProactiveDecision(should_act=False, message=None, reason=reason or "no message")

    return ProactiveDecision(should_act=True, message=message, reason=reason or "no reason given")


class DecisionProtocol:
    """Asks the engine a stateless YES/NO question about reaching out"""

    def __init__(
        self,
        gateway: EngineGateway,
        context_manager: ContextManager,
        working_dir: str,
        model: Optional[EngineModel] = None
    ):
        self.gateway = gateway
        self.context_manager = context_manager
        self.working_dir = working_dir
        self.model = model

    async def decide(self, context: DecisionContext) -> ProactiveDecision:
        prompt = await self.context_manager.build_prompt(
            build_decision_prompt(context), include_history=False
        )

        # Decisions are never resumed
        result = await self.gateway.invoke(EngineRequest(
            prompt=prompt,
            resume=False,
            model=self.model,
            working_dir=self.working_dir
        ))

        if not result.ok:
            logger.error("Proactive decision failed", error=result.error)
            return ProactiveDecision(should_act=False, reason=f"engine error: {result.error}")

        decision = parse_decision(result.content)
        logger.info("Proactive decision", should_act=decision.should_act, reason=decision.reason[:120])
        return decision

from typing import Awaitable, Callable, Optional
from datetime import datetime, time, timezone, tzinfo

import structlog
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from assistant_relay.domain.context.context_manager import ContextManager
from assistant_relay.domain.context.state.state_manager import SessionStateManager
from assistant_relay.domain.context.workspace_loader import WorkspaceLoader
from assistant_relay.domain.engine.gateway import EngineGateway
from assistant_relay.domain.models.session_state import EngineRequest
from .decision import DecisionContext, DecisionProtocol

logger = structlog.get_logger(__name__)

Notifier = Callable[[str], Awaitable[None]]

CHECKIN_JOB = "smart_checkin"
BRIEFING_JOB = "morning_briefing"


def in_quiet_hours(hour: int, start: int, end: int) -> bool:
    """Quiet window [start, end) in local hours, wrapping past midnight"""
    if start == end:
        return False
    if start < end:
        return start <= hour < end
    return hour >= start or hour < end


def parse_briefing_time(value: Optional[str]) -> Optional[time]:
    if not value:
        return None
    hour, minute = value.split(":")
    return time(int(hour), int(minute))


class ProactiveScheduler:
    """Smart check-ins and the daily briefing, driven by APScheduler jobs"""

    def __init__(
        self,
        protocol: DecisionProtocol,
        gateway: EngineGateway,
        context_manager: ContextManager,
        workspace: WorkspaceLoader,
        state: SessionStateManager,
        notify: Notifier,
        tz: tzinfo = timezone.utc,
        user_name: str = "User",
        checkin_interval_minutes: int = 30,
        briefing_time: Optional[str] = "09:00",
        quiet_hours_start: int = 23,
        quiet_hours_end: int = 8
    ):
        self.protocol = protocol
        self.gateway = gateway
        self.context_manager = context_manager
        self.workspace = workspace
        self.state = state
        self.notify = notify
        self.tz = tz
        self.user_name = user_name
        self.checkin_interval_minutes = checkin_interval_minutes
        self.briefing_time = parse_briefing_time(briefing_time)
        self.quiet_hours_start = quiet_hours_start
        self.quiet_hours_end = quiet_hours_end

        self._scheduler: Optional[AsyncIOScheduler] = None

    def now(self) -> datetime:
        return datetime.now(self.tz)

    def build_scheduler(self) -> AsyncIOScheduler:
        """Scheduler with one interval job for check-ins and one cron job for the briefing"""

        scheduler = AsyncIOScheduler(timezone=self.tz)
        job_defaults = {"coalesce": True, "max_instances": 1, "misfire_grace_time": 300}

        # First check-in waits a full interval
        if self.checkin_interval_minutes > 0:
            scheduler.add_job(
                self._run_checkin,
                trigger=IntervalTrigger(minutes=self.checkin_interval_minutes, timezone=self.tz),
                id=CHECKIN_JOB,
                name=CHECKIN_JOB,
                replace_existing=True,
                **job_defaults
            )

        if self.briefing_time is not None:
            scheduler.add_job(
                self._run_briefing,
                trigger=CronTrigger(
                    hour=self.briefing_time.hour, minute=self.briefing_time.minute, timezone=self.tz
                ),
                id=BRIEFING_JOB,
                name=BRIEFING_JOB,
                replace_existing=True,
                **job_defaults
            )

        return scheduler

    def start(self) -> None:
        """Start the jobs; must be called from inside the running event loop"""

        if self._scheduler is not None:
            return
        self._scheduler = self.build_scheduler()
        self._scheduler.start()
        logger.info(
            "Proactive scheduler started",
            checkin_interval_minutes=self.checkin_interval_minutes,
            briefing_time=self.briefing_time.strftime("%H:%M") if self.briefing_time else None,
            jobs=[job.id for job in self._scheduler.get_jobs()]
        )

    async def stop(self) -> None:
        if self._scheduler is not None:
            # Cancels in-flight job tasks, which in turn kills any running engine process
            self._scheduler.shutdown(wait=False)
            self._scheduler = None
            logger.info("Proactive scheduler stopped")

    @property
    def running(self) -> bool:
        return self._scheduler is not None and self._scheduler.running

    async def _run_checkin(self) -> None:
        try:
            await self.smart_checkin(self.now())
        except Exception as e:
            logger.error("Proactive task failed", job=CHECKIN_JOB, error=str(e), exc_info=True)

    async def _run_briefing(self) -> None:
        try:
            await self.morning_briefing(self.now())
        except Exception as e:
            logger.error("Proactive task failed", job=BRIEFING_JOB, error=str(e), exc_info=True)

    async def smart_checkin(self, now: datetime) -> bool:
        """Let the engine decide whether to reach out; True if a message was sent"""

        if in_quiet_hours(now.hour, self.quiet_hours_start, self.quiet_hours_end):
            logger.info("Smart check-in: quiet hours, skipping")
            return False

        snapshot = self.state.snapshot()
        goals = await self.context_manager.get_active_goals()
        decision = await self.protocol.decide(DecisionContext(
            now=now,
            timezone=str(self.tz),
            active_goals=[goal.content for goal in goals],
            sent_today=await self.workspace.load_today_log(now)
        ))

        if not decision.should_act:
            logger.info("Smart check-in: no action needed")
            return False

        if not self.state.is_current(snapshot):
            logger.info("Smart check-in superseded by conversation, discarding")
            return False

        await self.notify(decision.message)
        await self.workspace.append_to_today_log(f"[Smart Check-in]\n{decision.message}", now=now)
        return True

    async def morning_briefing(self, now: datetime) -> bool:
        logger.info("Generating morning briefing")

        goals = await self.context_manager.get_active_goals()
        goal_lines = "; ".join(
            goal.content + (f" (deadline: {goal.deadline.date().isoformat()})" if goal.deadline else "")
            for goal in goals
        ) or "None"

        task = "\n".join([
            f"Generate a brief morning briefing for {self.user_name}.",
            "",
            "CONTEXT:",
            f"- Date: {now.strftime('%A, %B %d')}",
            f"- Timezone: {self.tz}",
            f"- Active goals: {goal_lines}",
            "",
            "Create a concise briefing (2-3 sentences max) that:",
            "1. Greets them appropriately for the time",
            "2. Highlights any urgent goals or deadlines today",
            "3. Sets a positive, focused tone for the day",
            "",
            "Keep it brief and actionable. No fluff.",
        ])

        prompt = await self.context_manager.build_prompt(task, include_history=False)
        result = await self.gateway.invoke(EngineRequest(
            prompt=prompt,
            resume=False,
            working_dir=self.workspace.get_workspace_dir()
        ))

        if not result.ok:
            logger.error("Morning briefing failed", error=result.error)
            return False

        briefing = result.content.strip()
        if not briefing:
            return False

        await self.notify(briefing)
        await self.workspace.append_to_today_log(f"[Morning Briefing]\n{briefing}", now=now)
        return True

from typing import Awaitable, Callable, Optional
import asyncio

import structlog

from assistant_relay.domain.context.context_manager import ContextManager
from assistant_relay.domain.context.memory.intent_processor import MemoryIntentProcessor
from assistant_relay.domain.context.prompt_builder import PromptBuilder
from assistant_relay.domain.context.state.project_registry import ProjectRegistry
from assistant_relay.domain.context.state.state_manager import SessionStateManager
from assistant_relay.domain.context.workspace_loader import WorkspaceLoader
from assistant_relay.domain.engine.gateway import EngineGateway
from assistant_relay.domain.orchestration.relay_service import RelayService
from assistant_relay.domain.proactive.decision import DecisionProtocol
from assistant_relay.domain.proactive.scheduler import ProactiveScheduler
from assistant_relay.infrastructure.config.settings import Settings
from assistant_relay.infrastructure.store.supabase_client import ContextStoreClient

logger = structlog.get_logger(__name__)


async def _discard(text: str) -> None:
    logger.info("Proactive message with no listener", chars=len(text))


class RelayRuntime:
    """Builds every relay component from settings and owns their lifecycle"""

    def __init__(
        self,
        settings: Settings,
        gateway: Optional[EngineGateway] = None,
        store: Optional[ContextStoreClient] = None,
        notify: Optional[Callable[[str], Awaitable[None]]] = None
    ):
        self.settings = settings
        tz = settings.user.tzinfo

        self.store = store or ContextStoreClient(settings.store.url, settings.store.api_key)
        self.gateway = gateway or EngineGateway(
            binary=settings.engine.path,
            timeout_seconds=settings.engine.timeout_seconds,
            agent_teams_enabled=settings.engine.agent_teams_enabled
        )

        self.workspace = WorkspaceLoader(settings.workspace.dir, tz=tz)
        self.context_manager = ContextManager(
            workspace=self.workspace,
            builder=PromptBuilder(user_name=settings.user.name, tz=tz),
            store=self.store
        )
        self.state = SessionStateManager(settings.workspace.data_dir, default_model=settings.engine.model)
        self.projects = ProjectRegistry(
            settings.workspace.data_dir,
            default_dir=settings.workspace.dir,
            projects_root=settings.workspace.projects_dir
        )
        self.intents = MemoryIntentProcessor(self.store)

        self.relay = RelayService(
            state=self.state,
            context_manager=self.context_manager,
            gateway=self.gateway,
            intents=self.intents,
            projects=self.projects
        )

        self.scheduler = ProactiveScheduler(
            protocol=DecisionProtocol(
                gateway=self.gateway,
                context_manager=self.context_manager,
                working_dir=str(settings.workspace.dir)
            ),
            gateway=self.gateway,
            context_manager=self.context_manager,
            workspace=self.workspace,
            state=self.state,
            notify=notify or _discard,
            tz=tz,
            user_name=settings.user.name,
            checkin_interval_minutes=settings.proactive.checkin_interval_minutes,
            briefing_time=settings.proactive.briefing_time,
            quiet_hours_start=settings.proactive.quiet_hours_start,
            quiet_hours_end=settings.proactive.quiet_hours_end
        )

    async def start(self) -> None:
        """Prepare local state, probe the store, and start background jobs"""

        await self.workspace.initialize()
        await asyncio.to_thread(self.settings.workspace.projects_dir.mkdir, parents=True, exist_ok=True)
        await self.state.initialize()
        await asyncio.to_thread(self.projects.load)

        if await self.store.health_check():
            logger.info("Context store reachable")
        else:
            logger.warning("Context store unreachable, memory features disabled until a health check succeeds")

        if self.settings.proactive.enabled:
            self.scheduler.start()

        logger.info(
            "Relay started",
            workspace=str(self.settings.workspace.dir),
            model=self.state.get_state().model.value
        )

    async def stop(self) -> None:
        await self.scheduler.stop()
        await self.store.close()
        logger.info("Relay stopped")

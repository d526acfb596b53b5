from typing import Optional
import asyncio
from datetime import datetime, timezone, tzinfo
from pathlib import Path
import structlog
from pydantic import BaseModel

logger = structlog.get_logger(__name__)

PERSONA_FILE = "SOUL.md"
WORKSPACE_GUIDE_FILE = "AGENTS.md"
ENVIRONMENT_NOTES_FILE = "TOOLS.md"
CURATED_MEMORY_FILE = "memory/MEMORY.md"

MEMORY_HEADER = (
    "# Long-Term Memory\n\n"
    "This file contains your curated long-term memory.\n"
    "Update it with important insights, decisions, and learnings.\n\n"
)


class WorkspaceDocs(BaseModel):
    """Continuity documents read fresh for every invocation"""
    persona: str = ""
    workspace_guide: str = ""
    environment_notes: str = ""
    curated_memory: str = ""


class WorkspaceLoader:
    """Reads persona, environment notes and curated memory from the workspace"""

    def __init__(self, workspace_dir: Path, template_dir: Optional[Path] = None, tz: tzinfo = timezone.utc):
        self.workspace_dir = Path(workspace_dir)
        self.tz = tz
        self.memory_dir = self.workspace_dir / "memory"
        self.template_dir = template_dir

    async def initialize(self) -> None:
        """Create workspace layout and seed missing documents"""

        await asyncio.to_thread(self._initialize_sync)

    def _initialize_sync(self) -> None:
        self.memory_dir.mkdir(parents=True, exist_ok=True)

        if self.template_dir:
            for name in (WORKSPACE_GUIDE_FILE, ENVIRONMENT_NOTES_FILE, PERSONA_FILE):
                target = self.workspace_dir / name
                template = self.template_dir / name
                if not target.exists() and template.is_file():
                    target.write_text(template.read_text(encoding="utf-8"), encoding="utf-8")
                    logger.info("Seeded workspace document", file=name)

        memory_file = self.workspace_dir / CURATED_MEMORY_FILE
        if not memory_file.exists():
            memory_file.write_text(MEMORY_HEADER, encoding="utf-8")

        self._today_log_path()

    async def load(self) -> WorkspaceDocs:
        """Load all workspace documents; missing or unreadable files are empty"""

        persona, guide, notes, memory = await asyncio.gather(
            self._read_or_empty(PERSONA_FILE),
            self._read_or_empty(WORKSPACE_GUIDE_FILE),
            self._read_or_empty(ENVIRONMENT_NOTES_FILE),
            self._read_or_empty(CURATED_MEMORY_FILE),
        )

        return WorkspaceDocs(
            persona=persona,
            workspace_guide=guide,
            environment_notes=notes,
            curated_memory=memory
        )

    async def _read_or_empty(self, relative_path: str) -> str:
        path = self.workspace_dir / relative_path
        try:
            return await asyncio.to_thread(path.read_text, encoding="utf-8")
        except FileNotFoundError:
            return ""
        except OSError as e:
            logger.warning("Unreadable workspace document", file=relative_path, error=str(e))
            return ""

    def local_now(self, now: Optional[datetime] = None) -> datetime:
        """Wall-clock time in the user's zone; the daily log is keyed on this date"""
        if now is None:
            return datetime.now(self.tz)
        return now.astimezone(self.tz) if now.tzinfo else now

    def _today_log_path(self, now: Optional[datetime] = None) -> Path:
        today = self.local_now(now).strftime("%Y-%m-%d")
        path = self.memory_dir / f"{today}.md"
        if not path.exists():
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(f"# Daily Log - {today}\n\n", encoding="utf-8")
        return path

    async def append_to_today_log(self, content: str, now: Optional[datetime] = None) -> None:
        """Append a timestamped entry to today's daily log"""

        def append() -> None:
            moment = self.local_now(now)
            path = self._today_log_path(moment)
            with path.open("a", encoding="utf-8") as handle:
                handle.write(f"\n## {moment.strftime('%H:%M:%S')}\n{content}\n")

        try:
            await asyncio.to_thread(append)
        except OSError as e:
            logger.error("Failed to append to daily log", error=str(e))

    async def load_today_log(self, now: Optional[datetime] = None) -> str:
        try:
            return await asyncio.to_thread(lambda: self._today_log_path(now).read_text(encoding="utf-8"))
        except OSError:
            return ""

    def get_workspace_dir(self) -> str:
        return str(self.workspace_dir)

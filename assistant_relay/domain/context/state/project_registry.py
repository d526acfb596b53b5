from typing import Dict, List, Optional
import json
from pathlib import Path

import structlog
from pydantic import BaseModel, ValidationError

logger = structlog.get_logger(__name__)

PROJECTS_FILE_NAME = "projects.json"


class Project(BaseModel):
    id: str
    name: str
    path: str


class ProjectRegistry:
    """Read-only view of projects.json, resolving project ids to working directories"""

    def __init__(self, data_dir: Path, default_dir: Path, projects_root: Optional[Path] = None):
        self.projects_file = Path(data_dir) / PROJECTS_FILE_NAME
        self.default_dir = Path(default_dir)
        # Relative project paths live under this directory
        self.projects_root = Path(projects_root) if projects_root else None
        self.projects: Dict[str, Project] = {}

    def load(self) -> None:
        try:
            entries = json.loads(self.projects_file.read_text(encoding="utf-8"))
        except FileNotFoundError:
            entries = []
        except (OSError, ValueError) as e:
            logger.error("Project registry unreadable", error=str(e))
            entries = []

        self.projects = {}
        for entry in entries if isinstance(entries, list) else []:
            try:
                project = Project(**entry)
            except (TypeError, ValidationError):
                logger.warning("Skipping malformed project entry", entry=entry)
                continue
            self.projects[project.id] = project

        logger.info("Loaded projects", count=len(self.projects))

    def get(self, project_id: str) -> Optional[Project]:
        return self.projects.get(project_id)

    def list_projects(self) -> List[Project]:
        return list(self.projects.values())

    def resolve_working_dir(self, project_id: Optional[str]) -> str:
        """Project path, or the default directory when unset or unknown"""

        if project_id:
            project = self.projects.get(project_id)
            if project:
                path = Path(project.path).expanduser()
                if not path.is_absolute() and self.projects_root is not None:
                    path = self.projects_root / path
                return str(path)
            logger.warning("Unknown project, using default directory", project_id=project_id)
        return str(self.default_dir)

"""
Settings loader - environment variables into validated pydantic models.

Every required value is checked up front so a misconfigured deployment fails
before it serves a single request.
"""

import os
import re
from pathlib import Path
from typing import Dict, List, Mapping, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, Field, ValidationError, field_validator

from assistant_relay.domain.models.session_state import EngineModel


class ConfigurationError(Exception):
    """Raised when required settings are missing or malformed"""

    def __init__(self, problems: List[str]):
        self.problems = problems
        super().__init__("; ".join(problems))


class EngineSettings(BaseModel):
    """External reasoning engine invocation"""
    path: str = Field(default="claude", description="Engine binary")
    model: EngineModel = Field(default=EngineModel.OPUS)
    timeout_seconds: float = Field(default=300.0, gt=0)
    agent_teams_enabled: bool = Field(default=True)


class StoreSettings(BaseModel):
    """Remote persistent store"""
    url: str
    api_key: str

    @field_validator("url")
    @classmethod
    def check_url(cls, value: str) -> str:
        if not re.match(r"^https?://[^/\s]+", value):
            raise ValueError("store URL must be an http(s) URL")
        return value.rstrip("/")


class UserSettings(BaseModel):
    """The single end user"""
    name: str = "User"
    timezone: str = "UTC"

    @field_validator("timezone")
    @classmethod
    def check_timezone(cls, value: str) -> str:
        try:
            ZoneInfo(value)
        except (ZoneInfoNotFoundError, ValueError):
            raise ValueError(f"unknown timezone '{value}'")
        return value

    @property
    def tzinfo(self) -> ZoneInfo:
        return ZoneInfo(self.timezone)


class WorkspaceSettings(BaseModel):
    """On-disk locations"""
    dir: Path
    projects_dir: Path
    data_dir: Path


class ProactiveSettings(BaseModel):
    """Timer-driven proactive behaviour"""
    enabled: bool = True
    checkin_interval_minutes: int = Field(default=30, ge=0)
    briefing_time: Optional[str] = "09:00"
    quiet_hours_start: int = Field(default=23, ge=0, le=23)
    quiet_hours_end: int = Field(default=8, ge=0, le=23)

    @field_validator("briefing_time")
    @classmethod
    def check_briefing_time(cls, value: Optional[str]) -> Optional[str]:
        if not value:
            return None
        match = re.match(r"^(\d{2}):(\d{2})$", value)
        if not match or int(match.group(1)) > 23 or int(match.group(2)) > 59:
            raise ValueError("briefing time must be HH:MM")
        return value


class ServerSettings(BaseModel):
    host: str = "0.0.0.0"
    port: int = 8000
    api_token: str


class Settings(BaseModel):
    """Complete relay configuration"""
    engine: EngineSettings
    store: StoreSettings
    user: UserSettings
    workspace: WorkspaceSettings
    proactive: ProactiveSettings
    server: ServerSettings
    log_level: str = "INFO"
    log_format: str = "json"


def _expand_path(value: str) -> Path:
    return Path(value).expanduser()


def _as_bool(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


def load_settings(environ: Optional[Mapping[str, str]] = None) -> Settings:
    """
    Build Settings from environment variables.

    Args:
        environ: Mapping to read from, defaults to os.environ

    Returns:
        Validated settings

    Raises:
        ConfigurationError: If anything required is missing or malformed
    """

    env = os.environ if environ is None else environ
    problems: List[str] = []

    def required(name: str) -> str:
        value = env.get(name, "")
        if not value:
            problems.append(f"missing required environment variable {name}")
        return value

    def optional(name: str, default: str = "") -> str:
        return env.get(name) or default

    def integer(name: str, default: str) -> int:
        raw = optional(name, default)
        try:
            return int(raw)
        except ValueError:
            problems.append(f"{name} must be an integer, got '{raw}'")
            return int(default)

    raw: Dict[str, dict] = {
        "engine": {
            "path": optional("ENGINE_PATH", "claude"),
            "model": optional("ENGINE_MODEL", "opus").lower(),
            "timeout_seconds": integer("ENGINE_TIMEOUT", "300"),
            "agent_teams_enabled": _as_bool(optional("ENABLE_AGENT_TEAMS", "true")),
        },
        "store": {
            "url": required("SUPABASE_URL"),
            "api_key": required("SUPABASE_ANON_KEY"),
        },
        "user": {
            "name": optional("USER_NAME", "User"),
            "timezone": optional("USER_TIMEZONE", "UTC"),
        },
        "workspace": {
            "dir": _expand_path(optional("WORKSPACE_DIR", "~/.assistant-relay/workspace")),
            "projects_dir": _expand_path(optional("PROJECTS_DIR", "~/.assistant-relay/projects")),
            "data_dir": _expand_path(optional("DATA_DIR", "~/.assistant-relay/data")),
        },
        "proactive": {
            "enabled": _as_bool(optional("ENABLE_PROACTIVE", "true")),
            "checkin_interval_minutes": integer("CHECKIN_INTERVAL", "30"),
            "briefing_time": env.get("BRIEFING_TIME", "09:00"),
            "quiet_hours_start": integer("QUIET_HOURS_START", "23"),
            "quiet_hours_end": integer("QUIET_HOURS_END", "8"),
        },
        "server": {
            "host": optional("HOST", "0.0.0.0"),
            "port": integer("PORT", "8000"),
            "api_token": required("RELAY_API_TOKEN"),
        },
    }

    if problems:
        raise ConfigurationError(problems)

    try:
        return Settings(
            log_level=optional("LOG_LEVEL", "INFO").upper(),
            log_format=optional("LOG_FORMAT", "json").lower(),
            **raw
        )
    except ValidationError as e:
        raise ConfigurationError([
            f"{'.'.join(str(part) for part in error['loc'])}: {error['msg']}"
            for error in e.errors()
        ]) from e

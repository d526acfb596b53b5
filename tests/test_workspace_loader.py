"""Tests for workspace documents and the daily log."""

from datetime import datetime, timezone
from zoneinfo import ZoneInfo

import pytest

from assistant_relay.domain.context.context_manager import format_memory_context
from assistant_relay.domain.context.state.project_registry import ProjectRegistry
from assistant_relay.domain.context.workspace_loader import (
    CURATED_MEMORY_FILE, MEMORY_HEADER, PERSONA_FILE, WorkspaceLoader
)
from assistant_relay.domain.models.session_state import MemoryKind, MemoryRecord


@pytest.mark.asyncio
async def test_initialize_seeds_memory_and_daily_log(tmp_path):
    loader = WorkspaceLoader(tmp_path / "ws")

    await loader.initialize()

    assert (tmp_path / "ws" / CURATED_MEMORY_FILE).read_text() == MEMORY_HEADER
    today = datetime.now().strftime("%Y-%m-%d")
    assert (tmp_path / "ws" / "memory" / f"{today}.md").read_text().startswith(f"# Daily Log - {today}")


@pytest.mark.asyncio
async def test_initialize_keeps_existing_memory(tmp_path):
    (tmp_path / "memory").mkdir()
    (tmp_path / CURATED_MEMORY_FILE).write_text("I already know things")

    await WorkspaceLoader(tmp_path).initialize()

    assert (tmp_path / CURATED_MEMORY_FILE).read_text() == "I already know things"


@pytest.mark.asyncio
async def test_initialize_copies_templates(tmp_path):
    templates = tmp_path / "templates"
    templates.mkdir()
    (templates / PERSONA_FILE).write_text("Warm and direct.")

    loader = WorkspaceLoader(tmp_path / "ws", template_dir=templates)
    await loader.initialize()

    assert (await loader.load()).persona == "Warm and direct."


@pytest.mark.asyncio
async def test_missing_documents_load_as_empty(tmp_path):
    docs = await WorkspaceLoader(tmp_path / "nowhere").load()

    assert docs.persona == ""
    assert docs.workspace_guide == ""
    assert docs.environment_notes == ""
    assert docs.curated_memory == ""


@pytest.mark.asyncio
async def test_documents_are_read_fresh(tmp_path):
    loader = WorkspaceLoader(tmp_path)
    (tmp_path / PERSONA_FILE).write_text("v1")
    assert (await loader.load()).persona == "v1"

    (tmp_path / PERSONA_FILE).write_text("v2")
    assert (await loader.load()).persona == "v2"


@pytest.mark.asyncio
async def test_append_to_today_log(tmp_path):
    loader = WorkspaceLoader(tmp_path)
    moment = datetime(2026, 2, 3, 8, 15, 0)

    await loader.append_to_today_log("[Morning Briefing]\nGood morning!", now=moment)

    log = (tmp_path / "memory" / "2026-02-03.md").read_text()
    assert log.startswith("# Daily Log - 2026-02-03")
    assert "\n## 08:15:00\n[Morning Briefing]\nGood morning!\n" in log


@pytest.mark.asyncio
async def test_daily_log_is_keyed_on_user_local_date(tmp_path):
    loader = WorkspaceLoader(tmp_path, tz=ZoneInfo("America/Los_Angeles"))
    # 00:30 UTC on the 20th is still the evening of the 19th in Los Angeles
    moment = datetime(2026, 10, 20, 0, 30, tzinfo=timezone.utc)

    await loader.append_to_today_log("[Smart Check-in]\nHow is the draft going?", now=moment)

    assert (tmp_path / "memory" / "2026-10-19.md").exists()
    assert not (tmp_path / "memory" / "2026-10-20.md").exists()
    assert "## 17:30:00" in await loader.load_today_log(moment)


def test_format_memory_context():
    facts = [MemoryRecord(kind=MemoryKind.FACT, content="likes tea")]
    goals = [
        MemoryRecord(kind=MemoryKind.GOAL, content="ship v2", deadline=datetime(2026, 6, 1)),
        MemoryRecord(kind=MemoryKind.GOAL, content="read more"),
    ]

    assert format_memory_context(facts, goals) == (
        "FACTS:\n- likes tea\n\nGOALS:\n- ship v2 (by 2026-06-01)\n- read more"
    )
    assert format_memory_context([], []) == ""


def test_project_registry_skips_malformed_entries(tmp_path):
    (tmp_path / "projects.json").write_text(
        '[{"id": "a", "name": "A", "path": "/srv/a"}, {"id": "b"}, "junk"]'
    )
    registry = ProjectRegistry(tmp_path, default_dir=tmp_path / "ws")
    registry.load()

    assert [project.id for project in registry.list_projects()] == ["a"]
    assert registry.resolve_working_dir("a") == "/srv/a"
    assert registry.resolve_working_dir("missing") == str(tmp_path / "ws")
    assert registry.resolve_working_dir(None) == str(tmp_path / "ws")


def test_project_registry_without_file(tmp_path):
    registry = ProjectRegistry(tmp_path, default_dir=tmp_path)
    registry.load()
    assert registry.list_projects() == []

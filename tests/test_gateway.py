"""Tests for the engine subprocess gateway."""

import asyncio
import os
import sys

import pytest

from assistant_relay.domain.engine.gateway import (
    AGENT_TEAMS_ENV, NESTED_INVOCATION_ENV, EngineGateway, build_args, build_env,
    estimate_tokens, extract_session_token, resolve_token, strip_session_marker
)
from assistant_relay.domain.models.session_state import EngineModel, EngineRequest, PermissionMode

from conftest import FakeProcess


def make_request(tmp_path, **kwargs):
    defaults = {"prompt": "hello", "working_dir": str(tmp_path)}
    defaults.update(kwargs)
    return EngineRequest(**defaults)


@pytest.fixture
def spawned(monkeypatch):
    """Patch process creation; returns the list of spawn calls"""

    calls = []

    def install(process):
        async def fake_exec(*args, **kwargs):
            calls.append((args, kwargs))
            return process

        monkeypatch.setattr(asyncio, "create_subprocess_exec", fake_exec)
        return calls

    return install


def test_resolve_token_prefers_extracted():
    assert resolve_token("old", "new") == "new"
    assert resolve_token(None, "new") == "new"


def test_resolve_token_keeps_previous_when_nothing_extracted():
    assert resolve_token("T1", None) == "T1"
    assert resolve_token(None, None) is None


def test_extract_and_strip_session_marker():
    stdout = "Here you go.\nSession ID: 3f2a-b9c1\n"
    assert extract_session_token(stdout) == "3f2a-b9c1"
    assert strip_session_marker(stdout) == "Here you go."
    assert extract_session_token("no marker here") is None


def test_strip_removes_marker_lines_only():
    text = "Line one\n  session id: abc  \nLine two mentions Session ID: in passing"
    assert strip_session_marker(text) == "Line one\nLine two mentions Session ID: in passing"
    assert extract_session_token(text) == "abc"


def test_inline_marker_is_neither_extracted_nor_stripped():
    text = "Done. Session ID: abc-123"
    assert extract_session_token(text) is None
    assert strip_session_marker(text) == text


def test_estimate_tokens():
    assert estimate_tokens("") == 0
    assert estimate_tokens("abcd") == 1
    assert estimate_tokens("abcde") == 2


def test_build_args_fresh_invocation(tmp_path):
    args = build_args(make_request(tmp_path, model=EngineModel.SONNET))
    assert args == ["-p", "hello", "--model", "sonnet", "--output-format", "text"]


def test_build_args_resume_requires_token(tmp_path):
    assert "--resume" not in build_args(make_request(tmp_path, resume=True))

    args = build_args(make_request(tmp_path, resume=True, continuation_token="T1"))
    assert args[args.index("--resume") + 1] == "T1"


def test_build_args_never_resumes_when_flag_off(tmp_path):
    args = build_args(make_request(tmp_path, resume=False, continuation_token="T1"))
    assert "--resume" not in args


@pytest.mark.parametrize("mode,expected", [
    (PermissionMode.ASK, None),
    (PermissionMode.AUTO_EDIT, "acceptEdits"),
    (PermissionMode.PLAN_FIRST, "plan"),
    (PermissionMode.UNRESTRICTED, "bypass"),
])
def test_build_args_permission_mode(tmp_path, mode, expected):
    args = build_args(make_request(tmp_path, permission_mode=mode))
    if expected is None:
        assert "--mode" not in args
    else:
        assert args[args.index("--mode") + 1] == expected


def test_build_args_team_mode_needs_capability(tmp_path):
    request = make_request(tmp_path, team_mode=True)
    assert "--teammate-mode" not in build_args(request, agent_teams_enabled=False)
    assert build_args(request, agent_teams_enabled=True)[-2:] == ["--teammate-mode", "in-process"]


def test_build_env_clears_nesting_marker():
    env = build_env({"PATH": "/bin", NESTED_INVOCATION_ENV: "1"})
    assert NESTED_INVOCATION_ENV not in env
    assert env["PATH"] == "/bin"
    assert AGENT_TEAMS_ENV not in env

    assert build_env({}, agent_teams_enabled=True)[AGENT_TEAMS_ENV] == "1"


@pytest.mark.asyncio
async def test_invoke_success_extracts_token_and_strips_marker(tmp_path, spawned):
    calls = spawned(FakeProcess(stdout=b"All done.\nSession ID: abc-123\n"))
    gateway = EngineGateway(binary="engine")

    result = await gateway.invoke(make_request(tmp_path, model=EngineModel.OPUS))

    assert result.ok
    assert result.content == "All done."
    assert result.continuation_token == "abc-123"
    assert result.tokens_in == estimate_tokens("hello")
    assert result.tokens_out == estimate_tokens("All done.")
    assert result.duration_ms >= 0

    args, kwargs = calls[0]
    assert args[0] == "engine"
    assert kwargs["cwd"] == str(tmp_path)
    assert kwargs["stdin"] == asyncio.subprocess.DEVNULL
    assert NESTED_INVOCATION_ENV not in kwargs["env"]


@pytest.mark.asyncio
async def test_invoke_without_marker_keeps_previous_token(tmp_path, spawned):
    spawned(FakeProcess(stdout=b"Continuing where we left off."))
    gateway = EngineGateway()

    result = await gateway.invoke(
        make_request(tmp_path, resume=True, continuation_token="T1")
    )

    assert result.continuation_token == "T1"
    assert result.content == "Continuing where we left off."


@pytest.mark.asyncio
async def test_invoke_nonzero_exit_reports_stderr(tmp_path, spawned):
    spawned(FakeProcess(stderr=b"rate limited\n", returncode=1))

    result = await EngineGateway().invoke(make_request(tmp_path, continuation_token="T1"))

    assert not result.ok
    assert result.content == ""
    assert result.error == "rate limited"
    assert result.continuation_token is None


@pytest.mark.asyncio
async def test_invoke_nonzero_exit_without_stderr(tmp_path, spawned):
    spawned(FakeProcess(stdout=b"partial", returncode=2))

    result = await EngineGateway().invoke(make_request(tmp_path))

    assert result.error == "Engine exited with code 2"
    assert result.content == ""


@pytest.mark.asyncio
async def test_invoke_timeout_kills_process(tmp_path, spawned):
    process = FakeProcess(hang=True)
    spawned(process)

    result = await EngineGateway(timeout_seconds=0.05).invoke(make_request(tmp_path))

    assert result.error == "Engine timed out after 0.05 seconds"
    assert process.killed


@pytest.mark.asyncio
async def test_invoke_team_mode_sets_capability_env(tmp_path, spawned):
    calls = spawned(FakeProcess(stdout=b"ok"))

    await EngineGateway(agent_teams_enabled=True).invoke(make_request(tmp_path, team_mode=True))

    args, kwargs = calls[0]
    assert kwargs["env"][AGENT_TEAMS_ENV] == "1"
    assert "--teammate-mode" in args


@pytest.mark.asyncio
async def test_invoke_missing_binary_is_an_error_result(tmp_path):
    gateway = EngineGateway(binary=str(tmp_path / "no-such-engine"))

    result = await gateway.invoke(make_request(tmp_path))

    assert not result.ok
    assert result.error.startswith("Engine could not be started")


@pytest.mark.asyncio
async def test_cancelled_invoke_kills_process(tmp_path, spawned):
    process = FakeProcess(hang=True)
    spawned(process)

    task = asyncio.create_task(EngineGateway(timeout_seconds=None).invoke(make_request(tmp_path)))
    await asyncio.sleep(0.05)
    task.cancel()

    with pytest.raises(asyncio.CancelledError):
        await task
    assert process.killed


@pytest.mark.asyncio
@pytest.mark.skipif(sys.platform == "win32", reason="needs a POSIX shell")
async def test_cancelled_invoke_leaves_no_engine_running(tmp_path):
    pid_file = tmp_path / "engine.pid"
    engine = tmp_path / "engine.sh"
    engine.write_text(f"#!/bin/sh\necho $$ > {pid_file}\nexec sleep 30\n")
    engine.chmod(0o755)

    task = asyncio.create_task(EngineGateway(binary=str(engine)).invoke(make_request(tmp_path)))
    for _ in range(100):
        if pid_file.exists() and pid_file.read_text().strip():
            break
        await asyncio.sleep(0.05)
    pid = int(pid_file.read_text())

    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    with pytest.raises(ProcessLookupError):
        os.kill(pid, 0)

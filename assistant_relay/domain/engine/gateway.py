"""
Engine gateway - runs the external reasoning engine as a child process.

The gateway is stateless: every call builds its argument list from the
request, waits for the process to finish, and maps whatever happened
(non-zero exit, spawn failure, timeout) onto an EngineInvocationResult.
Nothing raised by the child process escapes invoke().
"""

from typing import Dict, List, Mapping, Optional, Tuple
import asyncio
import math
import os
import re
import time

import structlog

from assistant_relay.domain.models.session_state import (
    EngineInvocationResult, EngineRequest, PermissionMode
)
from assistant_relay.infrastructure.observability.logging import relay_logger

logger = structlog.get_logger(__name__)

# Set by the engine in its own children; must be cleared to allow nesting
NESTED_INVOCATION_ENV = "CLAUDECODE"
AGENT_TEAMS_ENV = "CLAUDE_CODE_EXPERIMENTAL_AGENT_TEAMS"

# Only a line holding nothing but the marker counts, for extraction and stripping alike
SESSION_MARKER_LINE = re.compile(
    r"^[^\S\n]*Session ID:[^\S\n]*([\w-]+)[^\S\n]*$\n?", re.IGNORECASE | re.MULTILINE
)


def resolve_token(previous: Optional[str], extracted: Optional[str]) -> Optional[str]:
    """A freshly reported token wins; otherwise the previous one sticks"""
    return extracted or previous


def extract_session_token(stdout: str) -> Optional[str]:
    match = SESSION_MARKER_LINE.search(stdout)
    return match.group(1) if match else None


def strip_session_marker(stdout: str) -> str:
    return SESSION_MARKER_LINE.sub("", stdout).strip()


def estimate_tokens(text: str) -> int:
    """Rough token count; the text output format reports no usage"""
    return math.ceil(len(text) / 4) if text else 0


def build_args(request: EngineRequest, agent_teams_enabled: bool = False) -> List[str]:
    """Engine command-line arguments, binary excluded"""

    args = ["-p", request.prompt]

    if request.resume and request.continuation_token:
        args.extend(["--resume", request.continuation_token])

    if request.model:
        args.extend(["--model", request.model.value])

    if request.permission_mode and request.permission_mode != PermissionMode.ASK:
        args.extend(["--mode", request.permission_mode.value])

    args.extend(["--output-format", "text"])

    if agent_teams_enabled and request.team_mode:
        args.extend(["--teammate-mode", "in-process"])

    return args


def build_env(base: Mapping[str, str], agent_teams_enabled: bool = False) -> Dict[str, str]:
    env = dict(base)
    env.pop(NESTED_INVOCATION_ENV, None)
    if agent_teams_enabled:
        env[AGENT_TEAMS_ENV] = "1"
    return env


class EngineGateway:
    """Invokes the engine binary and captures its buffered output"""

    def __init__(
        self,
        binary: str = "claude",
        timeout_seconds: Optional[float] = 300.0,
        agent_teams_enabled: bool = False
    ):
        self.binary = binary
        self.timeout_seconds = timeout_seconds
        self.agent_teams_enabled = agent_teams_enabled

    async def invoke(self, request: EngineRequest) -> EngineInvocationResult:
        """Run one engine invocation; never raises for process failures"""

        args = build_args(request, self.agent_teams_enabled)
        started = time.monotonic()

        logger.debug(
            "Spawning engine",
            binary=self.binary,
            working_dir=request.working_dir,
            resume=request.resume,
            image=request.image_path,
            prompt_chars=len(request.prompt)
        )

        try:
            exit_code, stdout, stderr = await self._run(args, request.working_dir)
        except asyncio.TimeoutError:
            result = EngineInvocationResult(
                error=f"Engine timed out after {self.timeout_seconds:g} seconds"
            )
        except (OSError, ValueError) as e:
            result = EngineInvocationResult(error=f"Engine could not be started: {e}")
        else:
            result = self._to_result(request, exit_code, stdout, stderr)

        result.duration_ms = (time.monotonic() - started) * 1000
        relay_logger.log_engine_invocation(
            model=request.model.value if request.model else None,
            resume=request.resume,
            duration_ms=result.duration_ms,
            success=result.ok,
            continuation_token=result.continuation_token,
            error=result.error
        )
        return result

    async def _run(self, args: List[str], working_dir: str) -> Tuple[int, str, str]:
        proc = await asyncio.create_subprocess_exec(
            self.binary,
            *args,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=working_dir,
            env=build_env(os.environ, self.agent_teams_enabled),
        )

        try:
            stdout, stderr = await asyncio.wait_for(
                proc.communicate(), timeout=self.timeout_seconds
            )
        except asyncio.TimeoutError:
            logger.warning("Engine timed out, killing process", pid=proc.pid)
            raise
        finally:
            # Timeout or cancellation must not leave the engine running
            if proc.returncode is None:
                try:
                    proc.kill()
                except ProcessLookupError:
                    pass
                await proc.wait()

        return (
            proc.returncode,
            stdout.decode("utf-8", errors="replace"),
            stderr.decode("utf-8", errors="replace"),
        )

    def _to_result(
        self,
        request: EngineRequest,
        exit_code: int,
        stdout: str,
        stderr: str
    ) -> EngineInvocationResult:
        if exit_code != 0:
            error = stderr.strip() or f"Engine exited with code {exit_code}"
            logger.error("Engine failed", exit_code=exit_code, stderr=stderr[:500])
            return EngineInvocationResult(error=error)

        content = strip_session_marker(stdout)
        return EngineInvocationResult(
            content=content,
            continuation_token=resolve_token(
                request.continuation_token, extract_session_token(stdout)
            ),
            tokens_in=estimate_tokens(request.prompt),
            tokens_out=estimate_tokens(content)
        )

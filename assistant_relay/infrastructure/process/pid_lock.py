from typing import Optional
import os
from pathlib import Path

import structlog

logger = structlog.get_logger(__name__)

LOCK_FILE_NAME = "relay.pid"


class AlreadyRunningError(RuntimeError):
    """Another live relay process holds the lock"""

    def __init__(self, pid: int):
        self.pid = pid
        super().__init__(f"Relay already running (PID {pid})")


def is_process_running(pid: int) -> bool:
    """Check if a process is running."""
    try:
        os.kill(pid, 0)
        return True
    except PermissionError:
        # Exists but belongs to another user
        return True
    except OSError:
        return False


class InstanceLock:
    """PID file guaranteeing a single relay per data directory"""

    def __init__(self, data_dir: Path):
        self.lock_file = Path(data_dir) / LOCK_FILE_NAME
        self._held = False

    def read_pid(self) -> Optional[int]:
        try:
            return int(self.lock_file.read_text().strip())
        except (FileNotFoundError, ValueError):
            return None

    def acquire(self) -> None:
        self.lock_file.parent.mkdir(parents=True, exist_ok=True)

        pid = self.read_pid()
        if pid is not None and pid != os.getpid():
            if is_process_running(pid):
                raise AlreadyRunningError(pid)
            logger.warning("Taking over stale lock", stale_pid=pid)

        self.lock_file.write_text(str(os.getpid()))
        self._held = True
        logger.info("Instance lock acquired", pid=os.getpid(), lock_file=str(self.lock_file))

    def release(self) -> None:
        if not self._held:
            return
        # Only remove a lock that is still ours
        if self.read_pid() == os.getpid():
            self.lock_file.unlink(missing_ok=True)
        self._held = False
        logger.info("Instance lock released")

    def __enter__(self) -> "InstanceLock":
        self.acquire()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()

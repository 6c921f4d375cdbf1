"""Inter-process lock for queue files, built on atomic mkdir."""

import logging
import os
import shutil
import time
from pathlib import Path

logger = logging.getLogger(__name__)


class QueueFileLock:
    """
    Lock guarding a queue file against concurrent writers.

    The CLI and a running coordinator may touch the same queue; mkdir is
    atomic, and the owner's PID is stored so a lock left by a dead process can
    be broken.
    """

    def __init__(self, target: Path, timeout: float = 10.0, poll_interval: float = 0.05):
        self.target = Path(target)
        self.lock_path = self.target.with_name(self.target.name + ".lock")
        self.pid_file = self.lock_path / "pid"
        self.timeout = timeout
        self.poll_interval = poll_interval
        self._acquired = False

    def try_acquire(self) -> bool:
        if self.lock_path.exists() and self._is_stale():
            logger.info(f"Breaking stale lock on {self.target.name}")
            self._remove()
        try:
            self.lock_path.parent.mkdir(parents=True, exist_ok=True)
            self.lock_path.mkdir(exist_ok=False)
        except FileExistsError:
            return False
        self.pid_file.write_text(str(os.getpid()))
        self._acquired = True
        return True

    def acquire(self) -> None:
        deadline = time.monotonic() + self.timeout
        while not self.try_acquire():
            if time.monotonic() >= deadline:
                raise TimeoutError(f"Timed out waiting for lock on {self.target}")
            time.sleep(self.poll_interval)

    def release(self) -> None:
        if self._acquired:
            self._remove()
            self._acquired = False

    def _is_stale(self) -> bool:
        try:
            pid = int(self.pid_file.read_text().strip())
        except (OSError, ValueError):
            # Owner may still be between mkdir and writing its pid
            return False
        if pid == os.getpid():
            return False
        try:
            os.kill(pid, 0)
        except ProcessLookupError:
            return True
        except PermissionError:
            return False
        return False

    def _remove(self) -> None:
        try:
            shutil.rmtree(self.lock_path)
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning(f"Failed to remove lock {self.lock_path}: {e}")

    def __enter__(self):
        self.acquire()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.release()
        return False

from __future__ import annotations

import fcntl
import os
import threading
import time
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

from afkcode.leasing.errors import LockTimeoutError

LOCK_FILE_NAME = ".gimme.lock"


class ClaimLock:
    """Mutual exclusion for claim and release across threads and processes.

    A ``threading.Lock`` serialises callers in this process; an advisory ``flock`` on
    ``.gimme.lock`` in the checklist root serialises other afkcode processes.
    """

    def __init__(self, base_path: Path, timeout_seconds: float = 30.0) -> None:
        root = base_path if base_path.is_dir() else base_path.parent
        self.lock_path = root / LOCK_FILE_NAME
        self.timeout_seconds = timeout_seconds
        self._thread_lock = threading.Lock()

    @contextmanager
    def hold(self) -> Iterator[None]:
        if not self._thread_lock.acquire(timeout=self.timeout_seconds):
            raise LockTimeoutError(
                f"Timed out waiting for claim lock after {self.timeout_seconds:.1f}s"
            )
        try:
            fd = os.open(self.lock_path, os.O_RDWR | os.O_CREAT, 0o644)
            try:
                self._flock(fd)
                try:
                    yield
                finally:
                    fcntl.flock(fd, fcntl.LOCK_UN)
            finally:
                os.close(fd)
        finally:
            self._thread_lock.release()

    def _flock(self, fd: int) -> None:
        start = time.monotonic()
        while True:
            try:
                fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
                return
            except BlockingIOError as exc:
                if time.monotonic() - start > self.timeout_seconds:
                    raise LockTimeoutError(
                        f"Timed out waiting for {self.lock_path} after "
                        f"{self.timeout_seconds:.1f}s"
                    ) from exc
                time.sleep(0.05)

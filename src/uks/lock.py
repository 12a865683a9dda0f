"""Cross-process writer lock built on an exclusive-create marker file.

The marker holds the decimal pid of the holder. A marker left behind by a
dead process is reclaimed immediately; one held by a live process is reclaimed
only once its mtime is older than the timeout.

    lock = FileLock(storage_dir / ".lock")
    if not lock.acquire():
        ...            # busy
    try:
        ...
    finally:
        lock.release()

or, raising LockError when busy:

    with FileLock(path):
        ...
"""

from __future__ import annotations

import contextlib
import logging
import os
import time
from pathlib import Path
from types import TracebackType

from uks.errors import LockError

logger = logging.getLogger("uks.lock")


def pid_alive(pid: int) -> bool:
    """Probe a pid with signal 0 (no effect on the target)."""
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # Exists, owned by someone else.
        return True
    except OSError:
        return False
    return True


class FileLock:
    """Exclusive-create lock marker shared by independent processes."""

    def __init__(
        self,
        path: Path | str,
        *,
        timeout_ms: int = 5000,
        retries: int = 3,
        retry_delay_ms: int = 100,
    ) -> None:
        self.path = Path(path)
        self.timeout_ms = timeout_ms
        self.retries = retries
        self.retry_delay_ms = retry_delay_ms

    def _read_pid(self) -> int | None:
        """Pid recorded in the marker; None if unparsable. FileNotFoundError propagates."""
        content = self.path.read_text().strip()
        try:
            return int(content)
        except ValueError:
            return None

    def _try_create(self) -> bool:
        try:
            fd = os.open(self.path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError:
            return False
        except OSError as exc:
            msg = f"Failed to acquire lock: {exc}"
            raise LockError(msg, {"path": str(self.path)}) from exc
        with os.fdopen(fd, "w") as f:
            f.write(str(os.getpid()))
        return True

    def acquire(self, max_retries: int | None = None) -> bool:
        """Try to take the lock. Returns False once the retry budget is spent."""
        attempts = self.retries if max_retries is None else max_retries
        self.path.parent.mkdir(parents=True, exist_ok=True)
        for _ in range(attempts):
            if self._try_create():
                return True
            try:
                if self.path.stat().st_size == 0:
                    # Holder created the marker but has not written its pid yet
                    pid = None
                    stale = False
                else:
                    pid = self._read_pid()
                    stale = pid is None or not pid_alive(pid)
                if stale:
                    logger.info("removing stale lock %s (pid %s not running)", self.path, pid)
                    with contextlib.suppress(FileNotFoundError):
                        self.path.unlink()
                    continue
                age_ms = (time.time() - self.path.stat().st_mtime) * 1000
                if age_ms > self.timeout_ms:
                    logger.info("removing abandoned lock %s (pid %s, %.0f ms old)", self.path, pid, age_ms)
                    with contextlib.suppress(FileNotFoundError):
                        self.path.unlink()
                    continue
            except FileNotFoundError:
                # Released between our create attempt and the read
                continue
            time.sleep(self.retry_delay_ms / 1000)
        logger.warning("could not acquire %s after %d attempts", self.path, attempts)
        return False

    def release(self) -> None:
        """Delete the marker only if it still records our own pid."""
        # Missing marker: already released, or reclaimed by someone else
        with contextlib.suppress(OSError):
            if self._read_pid() == os.getpid():
                self.path.unlink()

    def owned(self) -> bool:
        try:
            return self._read_pid() == os.getpid()
        except OSError:
            return False

    def __enter__(self) -> FileLock:
        if not self.acquire():
            msg = "Failed to acquire lock: storage is busy."
            raise LockError(msg, {"path": str(self.path)})
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.release()

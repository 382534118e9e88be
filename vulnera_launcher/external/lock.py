import os
import sys
import time
import logging
import threading
from pathlib import Path
from contextlib import contextmanager
from typing import Generator, Optional
from vulnera_launcher import settings
from vulnera_launcher.exceptions import InstallCancelled, InstallFailure

log = logging.getLogger(__name__)


class InstallLock:
    """
    Cross-process exclusive lock scoped to one install directory.

    Uses fcntl.flock() on Unix and msvcrt.locking() on Windows against a lock
    file inside the directory. Each acquisition opens its own descriptor, so
    threads of one process also exclude each other. The lock file records the
    owner PID for diagnostics and is never deleted.
    """

    def __init__(
        self,
        lock_path: Path,
        timeout: float = settings.LOCK_TIMEOUT,
        poll_interval: float = settings.LOCK_POLL_INTERVAL,
    ) -> None:
        self.lock_path = Path(lock_path)
        self.timeout = timeout
        self.poll_interval = poll_interval

    @staticmethod
    def _try_lock(fd: int) -> bool:
        try:
            if sys.platform == "win32":
                import msvcrt
                msvcrt.locking(fd, msvcrt.LK_NBLCK, 1)
            else:
                import fcntl
                fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
            return True
        except OSError:
            return False

    @staticmethod
    def _unlock(fd: int) -> None:
        if sys.platform == "win32":
            import msvcrt
            os.lseek(fd, 0, os.SEEK_SET)
            msvcrt.locking(fd, msvcrt.LK_UNLCK, 1)
        else:
            import fcntl
            fcntl.flock(fd, fcntl.LOCK_UN)

    def read_owner_pid(self) -> Optional[int]:
        """Returns the PID recorded by the last holder, if readable."""
        try:
            return int(self.lock_path.read_text().strip() or 0) or None
        except (IOError, ValueError):
            return None

    @contextmanager
    def hold(self, cancel_event: Optional[threading.Event] = None) -> Generator[None, None, None]:
        """
        Blocks until the lock is held, then yields.

        :param cancel_event: When set while waiting, the wait is abandoned.
        :raises InstallCancelled: If cancel_event was set before the lock was acquired.
        :raises InstallFailure: If the lock could not be acquired within the timeout.
        """
        self.lock_path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(str(self.lock_path), os.O_CREAT | os.O_RDWR)
        acquired = False
        try:
            deadline = time.monotonic() + self.timeout
            announced = False
            while not self._try_lock(fd):
                if cancel_event is not None and cancel_event.is_set():
                    raise InstallCancelled(f"Cancelled while waiting for install lock '{self.lock_path}'.")
                if time.monotonic() >= deadline:
                    raise InstallFailure(
                        f"Timed out after {self.timeout}s waiting for install lock '{self.lock_path}' "
                        f"(held by PID {self.read_owner_pid()})."
                    )
                if not announced:
                    log.info(f"Install directory is locked by PID {self.read_owner_pid()}. Waiting...")
                    announced = True
                time.sleep(self.poll_interval)
            acquired = True

            os.ftruncate(fd, 0)
            os.lseek(fd, 0, os.SEEK_SET)
            os.write(fd, str(os.getpid()).encode())
            log.debug(f"Acquired install lock '{self.lock_path}'.")
            yield
        finally:
            if acquired:
                try:
                    self._unlock(fd)
                except OSError as e:
                    log.warning(f"Failed to release install lock '{self.lock_path}': {e}")
            os.close(fd)

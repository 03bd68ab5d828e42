"""
narrowssh.lock
--------------
Concurrency guard: exclusive advisory locks between narrowssh processes.

A lock on `<path>` is an flock(2) on `<path>.lock`. Acquisition polls with a
deadline instead of blocking forever; a holder that dies releases the lock
with its file descriptors.
"""

from __future__ import annotations
from contextlib import ExitStack, contextmanager
from typing import Callable, Iterator, Optional, TypeVar
import fcntl, os, time

from .errors import LockBusy, LockIoError
from .logger import get_logger
from .paths import Owner, open_private, prepare_directory

log = get_logger("narrowssh.lock")

DEFAULT_TIMEOUT = 10.0
POLL_INTERVAL = 0.05

T = TypeVar("T")


class FileLock:
    """Context manager for an exclusive, time-bounded lock keyed on `path`."""

    def __init__(self, path: str, timeout: float = DEFAULT_TIMEOUT, poll_interval: float = POLL_INTERVAL,
                 owner: Optional[Owner] = None):
        self.path = str(path)
        self.lock_path = f"{self.path}.lock"
        self.timeout = timeout
        self.poll_interval = poll_interval
        self.owner = owner
        self._fd: Optional[int] = None

    @property
    def locked(self) -> bool:
        return self._fd is not None

    def acquire(self) -> None:
        if self._fd is not None:
            raise LockIoError(f"{self.lock_path} is already held by this FileLock")
        try:
            prepare_directory(os.path.dirname(self.lock_path) or ".", self.owner)
            # never through a symlink; with an owner, checked and handed over
            fd = open_private(self.lock_path, self.owner)
        except OSError as exc:
            raise LockIoError(f"cannot open lock file {self.lock_path}: {exc}") from exc

        deadline = time.monotonic() + self.timeout
        while True:
            try:
                fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
                break
            except BlockingIOError:
                if time.monotonic() >= deadline:
                    os.close(fd)
                    raise LockBusy(
                        f"{self.path} is locked by another narrowssh process "
                        f"(waited {self.timeout:g}s); try again later"
                    ) from None
                time.sleep(self.poll_interval)
            except OSError as exc:
                os.close(fd)
                raise LockIoError(f"cannot lock {self.lock_path}: {exc}") from exc

        self._fd = fd
        log.debug(f"[LOCK] acquired {self.lock_path}")

    def release(self) -> None:
        if self._fd is None:
            return
        fd, self._fd = self._fd, None
        try:
            fcntl.flock(fd, fcntl.LOCK_UN)
        finally:
            os.close(fd)
        log.debug(f"[LOCK] released {self.lock_path}")

    def __enter__(self) -> "FileLock":
        self.acquire()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.release()
        return False  # Don't suppress exceptions


def with_lock(path: str, scope: Callable[[], T], timeout: float = DEFAULT_TIMEOUT) -> T:
    with FileLock(path, timeout=timeout):
        return scope()


@contextmanager
def locked(*paths: str, timeout: float = DEFAULT_TIMEOUT,
           owner: Optional[Owner] = None) -> Iterator[None]:
    """Hold several locks at once, acquired in the order given."""
    with ExitStack() as stack:
        for path in paths:
            stack.enter_context(FileLock(path, timeout=timeout, owner=owner))
        yield

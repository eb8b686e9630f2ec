"""Per-PR mutual exclusion for publish record stores.

Two parallel runs on the same PR must not both find "no record" and both
publish. Inside one process a threading.Lock per key is enough; runs in
separate processes sharing one database additionally take an flock on a
per-key lock file.
"""

from __future__ import annotations

import fcntl
import os
import re
import threading
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator


class LockTimeout(Exception):
    """Lock acquisition timed out."""


def lock_name(platform: str, repo: str, pr_number: int) -> str:
    """Filesystem-safe name for one PR/MR key."""
    safe_repo = re.sub(r"[^A-Za-z0-9_.-]", "__", repo)
    return f"{platform}-{safe_repo}-{pr_number}"


class KeyedLock:
    """A lazily created threading.Lock per key."""

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: dict[str, threading.Lock] = {}

    @contextmanager
    def hold(self, key: str, timeout: float | None = None) -> Iterator[None]:
        with self._guard:
            lock = self._locks.setdefault(key, threading.Lock())
        if not lock.acquire(timeout=-1 if timeout is None else timeout):
            raise LockTimeout(f"Could not acquire lock for {key} within {timeout}s")
        try:
            yield
        finally:
            lock.release()


@contextmanager
def file_lock(lock_file: Path, timeout: float, poll_interval: float = 0.2) -> Iterator[None]:
    """Hold an exclusive flock on ``lock_file`` for the duration of the block.

    Lock files are left in place after release: deleting them would let two
    processes hold "exclusive" locks on different inodes with the same path.
    """
    lock_file.parent.mkdir(parents=True, exist_ok=True)
    fd = open(lock_file, "w")
    try:
        start = time.monotonic()
        while True:
            try:
                fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
                break
            except BlockingIOError:
                if time.monotonic() - start > timeout:
                    raise LockTimeout(f"Could not acquire {lock_file.name} within {timeout}s")
                time.sleep(poll_interval)
        try:
            fd.write(f"{os.getpid()}\n")
            fd.flush()
            yield
        finally:
            fcntl.flock(fd, fcntl.LOCK_UN)
    finally:
        fd.close()

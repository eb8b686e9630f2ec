"""Abstract store interface.

Every publish record backend (SQLite, Gist, in-memory) implements this
interface. The orchestrator depends on BaseStore, not on a concrete backend,
so backends are swappable without touching pipeline code.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from contextlib import contextmanager
from typing import TYPE_CHECKING, Iterator

from quickreview_store.locking import KeyedLock, lock_name

if TYPE_CHECKING:
    from quickreview_store.models import PublishRecord


class StoreError(Exception):
    """The record log could not be read or appended to."""


class BaseStore(ABC):
    """Append-only log of PublishRecords.

    Implementations must be safe to call from CI environments where no
    interactive credentials are available — all auth must happen via
    constructor arguments or environment variables resolved at init time.
    Read failures raise StoreError: answering "no record" when the log is
    unreachable would let a run publish twice.
    """

    def __init__(self, lock_timeout: float | None = None):
        self._keyed_lock = KeyedLock()
        self._lock_timeout = lock_timeout

    @abstractmethod
    def append(self, record: PublishRecord) -> None:
        """Persist a new record. Existing records are never modified."""

    @abstractmethod
    def list_records(self, repo: str, pr_number: int | None = None) -> list[PublishRecord]:
        """Return records for a repo in append order, optionally filtered by PR number."""

    def latest(self, platform: str, repo: str, pr_number: int, content_hash: str) -> PublishRecord | None:
        """Return the newest record for one idempotency key, or None."""
        matches = [
            r
            for r in self.list_records(repo, pr_number=pr_number)
            if r.platform == platform and r.content_hash == content_hash
        ]
        return matches[-1] if matches else None

    def latest_for_head(self, platform: str, repo: str, pr_number: int, head_sha: str) -> PublishRecord | None:
        """Return the newest complete record for a reviewed head SHA, or None."""
        matches = [
            r
            for r in self.list_records(repo, pr_number=pr_number)
            if r.platform == platform and r.head_sha == head_sha and r.complete
        ]
        return matches[-1] if matches else None

    @contextmanager
    def lock(self, platform: str, repo: str, pr_number: int) -> Iterator[None]:
        """Mutual exclusion for one PR/MR across concurrent runs."""
        with self._keyed_lock.hold(lock_name(platform, repo, pr_number), self._lock_timeout):
            yield

    def close(self) -> None:
        """Release any resources held by the store (connections, file handles).

        Optional — subclasses that need cleanup should override this.
        Default is a no-op so callers can always call close() safely.
        """

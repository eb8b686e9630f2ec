"""In-memory store — records live only as long as the process.

Used for dry runs and tests. Keeps full idempotency semantics within one
process (parallel runs via run_many share it), but nothing survives a
restart, so it does not protect against re-posting across invocations.
"""

from __future__ import annotations

import copy
import threading
from typing import TYPE_CHECKING

from quickreview_store.base import BaseStore

if TYPE_CHECKING:
    from quickreview_store.models import PublishRecord


class MemoryStore(BaseStore):
    def __init__(self, lock_timeout: float | None = None):
        super().__init__(lock_timeout=lock_timeout)
        self._records: list[PublishRecord] = []
        self._guard = threading.Lock()

    def append(self, record: PublishRecord) -> None:
        with self._guard:
            self._records.append(copy.deepcopy(record))

    def list_records(self, repo: str, pr_number: int | None = None) -> list[PublishRecord]:
        with self._guard:
            return [
                copy.deepcopy(r)
                for r in self._records
                if r.repo == repo and (pr_number is None or r.pr_number == pr_number)
            ]

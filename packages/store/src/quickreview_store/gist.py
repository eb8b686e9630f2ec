"""GistStore — zero-infrastructure team-shared publish records via GitHub Gist.

Why Gist as the team store:
- Zero infra: no DB to provision, no server to maintain.
- Built-in access control: Gist ACL == GitHub org membership.
- Append-only JSON: each run appends a record; every machine that reviews the
  same repositories sees the same idempotency log.

Data format: a single JSON file named `quickreview_records.json` inside the
Gist, holding a JSON array of PublishRecord dicts, newest entries appended.

Per-PR locking is in-process only: two machines racing on the same PR can
still both publish. Use SQLiteStore on a shared volume when that matters.
"""

from __future__ import annotations

import json
import logging
import os

from github import Auth, Github, GithubException

from quickreview_store.base import BaseStore, StoreError
from quickreview_store.models import PublishRecord, record_from_dict, record_to_dict

logger = logging.getLogger(__name__)

_GIST_FILENAME = "quickreview_records.json"


class GistStore(BaseStore):
    """Stores publish records in a GitHub Gist as an append-only JSON array.

    append() rewrites the Gist file with one more element; list_records()
    reads the full array and filters in memory — fine for hundreds or low
    thousands of records. The Gist ID is configured in .quickreview.yml under
    `gist_id`.
    """

    def __init__(self, gist_id: str, token: str, lock_timeout: float | None = 300):
        super().__init__(lock_timeout=lock_timeout)
        self._gist_id = gist_id
        self._gh = Github(auth=Auth.Token(token))

    def _get_gist(self):
        return self._gh.get_gist(self._gist_id)

    def append(self, record: PublishRecord) -> None:
        try:
            gist = self._get_gist()
            existing = self._read_records(gist)
            existing.append(record_to_dict(record))
            gist.edit(files={_GIST_FILENAME: {"content": json.dumps(existing, indent=2)}})
        except GithubException as e:
            msg = f"Could not append publish record to Gist {self._gist_id} ({e.status})"
            if os.environ.get("GITHUB_ACTIONS") == "true":
                msg += (
                    ". The built-in GITHUB_TOKEN does not have Gist permissions; "
                    "use a PAT with 'gist' scope stored as a repository secret."
                )
            raise StoreError(msg) from e

    def list_records(self, repo: str, pr_number: int | None = None) -> list[PublishRecord]:
        try:
            records = self._read_records(self._get_gist())
        except GithubException as e:
            raise StoreError(f"Could not read Gist {self._gist_id} ({e.status})") from e

        results = [record_from_dict(r) for r in records if r.get("repo") == repo]
        if pr_number is not None:
            results = [r for r in results if r.pr_number == pr_number]
        return results

    def _read_records(self, gist) -> list[dict]:
        """Read the current JSON array from the Gist file, or return []."""
        file_obj = gist.files.get(_GIST_FILENAME)
        if file_obj is None:
            return []
        try:
            data = json.loads(file_obj.content or "[]")
        except json.JSONDecodeError as e:
            raise StoreError(f"{_GIST_FILENAME} in Gist {self._gist_id} is not valid JSON") from e
        if not isinstance(data, list):
            raise StoreError(f"{_GIST_FILENAME} in Gist {self._gist_id} must hold a JSON array")
        return data

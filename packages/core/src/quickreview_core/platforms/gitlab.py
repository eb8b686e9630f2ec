"""GitLab merge requests via python-gitlab.

Credentials and the instance URL come from the python-gitlab configuration
file (``~/.python-gitlab.cfg`` or ``PYTHON_GITLAB_CFG``); ``gitlab_id`` picks
the section, ``None`` meaning its default.
"""

from __future__ import annotations

import logging

import gitlab
import requests
from gitlab.config import ConfigError
from gitlab.exceptions import GitlabError

from quickreview_core.diff import parse_hunks
from quickreview_core.errors import FetchIncomplete, FetchRejected
from quickreview_core.models import FileChange, LineComment, Platform, ReviewTarget, Verdict
from quickreview_core.platforms.base import BasePlatform, is_transient_status
from quickreview_core.pr_url import PrUrl

logger = logging.getLogger(__name__)


def _file_status(change: dict) -> str:
    if change.get("new_file"):
        return "added"
    if change.get("deleted_file"):
        return "removed"
    if change.get("renamed_file"):
        return "renamed"
    return "modified"


def get_client(gitlab_id: str | None = None, config_files: list[str] | None = None) -> gitlab.Gitlab:
    try:
        return gitlab.Gitlab.from_config(gitlab_id, config_files)
    except ConfigError as e:
        raise FetchRejected(
            f"GitLab is not configured ({e}). Add a section to ~/.python-gitlab.cfg "
            "or point PYTHON_GITLAB_CFG at one.",
            detail="config",
        ) from e


class GitLabPlatform(BasePlatform):
    platform = Platform.GITLAB
    api_errors = (GitlabError, requests.RequestException)

    def __init__(
        self,
        gitlab_id: str | None = None,
        config_files: list[str] | None = None,
        client: gitlab.Gitlab | None = None,
    ):
        self._gitlab_id = gitlab_id
        self._config_files = config_files
        self._gl = client
        self._mrs: dict[tuple[str, int], object] = {}

    @property
    def client(self) -> gitlab.Gitlab:
        if self._gl is None:
            self._gl = get_client(self._gitlab_id, self._config_files)
        return self._gl

    def _fetch(self, pr: PrUrl) -> ReviewTarget:
        project = self.client.projects.get(pr.repo_path)
        mr = project.mergerequests.get(pr.number)
        self._mrs[(pr.repo_path, pr.number)] = mr
        data = mr.changes()

        # GitLab caps the changes payload; it flags that either with
        # overflow or a "1000+" style count.
        if data.get("overflow") or str(data.get("changes_count") or "").endswith("+"):
            raise FetchIncomplete(
                f"{pr}: GitLab truncated the change list ({data.get('changes_count')} files)",
                detail="overflow",
            )

        raw_changes = data.get("changes", [])
        reported = str(data.get("changes_count") or "")
        if reported.isdigit() and len(raw_changes) < int(reported):
            empty = [c["new_path"] for c in raw_changes if not c.get("diff") and not c.get("binary")]
            if empty:
                raise FetchIncomplete(
                    f"{pr}: GitLab returned {len(raw_changes)} of {reported} changes, "
                    f"{len(empty)} without a diff",
                    detail="collapsed diffs",
                )

        changes = []
        for change in sorted(raw_changes, key=lambda c: c["new_path"]):
            if change.get("too_large"):
                raise FetchIncomplete(f"{pr}: GitLab omitted the diff for {change['new_path']}", detail="too large")
            path = change["new_path"]
            patch = change.get("diff") or ""
            old_path = change.get("old_path")
            changes.append(
                FileChange(
                    path=path,
                    status=_file_status(change),
                    patch=patch,
                    old_path=old_path if old_path != path else None,
                    hunks=parse_hunks(path, patch),
                )
            )

        diff_refs = data.get("diff_refs") or {}
        return ReviewTarget(
            platform=Platform.GITLAB,
            repo=pr.repo_path,
            number=pr.number,
            url=pr.url,
            title=data.get("title") or "",
            description=data.get("description") or "",
            files=tuple(changes),
            base_ref=data.get("target_branch", ""),
            head_ref=data.get("source_branch", ""),
            base_sha=diff_refs.get("base_sha", ""),
            head_sha=diff_refs.get("head_sha") or data.get("sha", ""),
            metadata={
                "start_sha": diff_refs.get("start_sha", ""),
                "clone_url": project.http_url_to_repo,
                "fetch_ref": f"refs/merge-requests/{pr.number}/head",
            },
        )

    def _post_summary(self, target: ReviewTarget, body: str, verdict: Verdict) -> str:
        mr = self._mr(target)
        note = mr.notes.create({"body": body})
        if verdict is Verdict.APPROVE:
            # Approval is a separate permission; the summary already carries
            # the verdict, so a refused approval does not fail the publish.
            try:
                mr.approve(sha=target.head_sha)
            except GitlabError as e:
                logger.warning("Could not approve %s!%d: %s", target.repo, target.number, e)
        return str(note.id)

    def _post_line_comment(self, target: ReviewTarget, comment: LineComment) -> str:
        change = target.file(comment.file)
        old_path = change.old_path if change is not None and change.old_path else comment.file
        discussion = self._mr(target).discussions.create(
            {
                "body": comment.body,
                "position": {
                    "position_type": "text",
                    "base_sha": target.base_sha,
                    "start_sha": target.metadata.get("start_sha") or target.base_sha,
                    "head_sha": target.head_sha,
                    "new_path": comment.file,
                    "old_path": old_path,
                    "new_line": comment.line,
                },
            }
        )
        return str(discussion.id)

    def _find_summary(self, target: ReviewTarget, marker: str) -> str | None:
        for note in self._mr(target).notes.list(iterator=True):
            if marker in (note.body or ""):
                return str(note.id)
        return None

    def _list_line_comments(self, target: ReviewTarget) -> list[tuple[str, int | None, str]]:
        existing = []
        for discussion in self._mr(target).discussions.list(iterator=True):
            for note in discussion.attributes.get("notes", []):
                position = note.get("position") or {}
                if not position.get("new_path"):
                    continue
                existing.append((position["new_path"], position.get("new_line"), note.get("body") or ""))
        return existing

    def _classify(self, exc: BaseException) -> tuple[bool, int | None]:
        if isinstance(exc, GitlabError):
            return is_transient_status(exc.response_code), exc.response_code
        return True, None

    def _mr(self, target: ReviewTarget):
        key = (target.repo, target.number)
        if key not in self._mrs:
            self._mrs[key] = self.client.projects.get(target.repo, lazy=True).mergerequests.get(target.number)
        return self._mrs[key]

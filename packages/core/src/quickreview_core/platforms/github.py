"""GitHub pull requests via PyGithub."""

from __future__ import annotations

import logging

import requests
from github import Auth, Github, GithubException, RateLimitExceededException

from quickreview_core.diff import parse_hunks
from quickreview_core.errors import FetchIncomplete
from quickreview_core.models import FileChange, LineComment, Platform, ReviewTarget, Verdict
from quickreview_core.platforms.base import BasePlatform, is_transient_status
from quickreview_core.pr_url import PrUrl

logger = logging.getLogger(__name__)

_PUBLIC_HOSTS = ("github.com", "www.github.com")

_REVIEW_EVENTS = {
    Verdict.APPROVE: "APPROVE",
    Verdict.REQUEST_CHANGES: "REQUEST_CHANGES",
    Verdict.COMMENT_ONLY: "COMMENT",
}


def get_client(token: str | None, host: str = "github.com") -> Github:
    base_url = "https://api.github.com" if host in _PUBLIC_HOSTS else f"https://{host}/api/v3"
    auth = Auth.Token(token) if token else None
    # The orchestrator owns retries, so PyGithub's GithubRetry stays off.
    return Github(auth=auth, base_url=base_url, retry=None)


class GitHubPlatform(BasePlatform):
    platform = Platform.GITHUB
    api_errors = (GithubException, requests.RequestException)

    def __init__(self, token: str | None, host: str = "github.com", client: Github | None = None):
        self._gh = client if client is not None else get_client(token, host)
        self._pulls: dict[tuple[str, int], object] = {}
        self._commits: dict[tuple[str, str], object] = {}

    def _fetch(self, pr: PrUrl) -> ReviewTarget:
        repo = self._gh.get_repo(pr.repo_path)
        pull = repo.get_pull(pr.number)
        self._pulls[(pr.repo_path, pr.number)] = pull

        # get_files() pages transparently but GitHub stops listing at 3000
        # files; changed_files is the authoritative count.
        files = sorted(pull.get_files(), key=lambda f: f.filename)
        if len(files) < pull.changed_files:
            raise FetchIncomplete(
                f"{pr}: GitHub listed {len(files)} of {pull.changed_files} changed files",
                detail="file list truncated",
            )

        changes = []
        for f in files:
            patch = f.patch or ""
            # Binary files have no patch and zero changes; a text file with
            # changes but no patch was too large for GitHub to inline.
            if not patch and f.changes:
                raise FetchIncomplete(f"{pr}: GitHub omitted the patch for {f.filename}", detail="patch too large")
            changes.append(
                FileChange(
                    path=f.filename,
                    status=f.status,
                    patch=patch,
                    old_path=f.previous_filename,
                    hunks=parse_hunks(f.filename, patch),
                )
            )

        return ReviewTarget(
            platform=Platform.GITHUB,
            repo=pr.repo_path,
            number=pr.number,
            url=pr.url,
            title=pull.title or "",
            description=pull.body or "",
            files=tuple(changes),
            base_ref=pull.base.ref,
            head_ref=pull.head.ref,
            base_sha=pull.base.sha,
            head_sha=pull.head.sha,
            metadata={
                # Works for fork PRs too: the base repo always carries refs/pull/N/head.
                "clone_url": repo.clone_url,
                "fetch_ref": f"refs/pull/{pr.number}/head",
            },
        )

    def _post_summary(self, target: ReviewTarget, body: str, verdict: Verdict) -> str:
        review = self._pull(target).create_review(
            commit=self._commit(target),
            body=body,
            event=_REVIEW_EVENTS[verdict],
        )
        return str(review.id)

    def _post_line_comment(self, target: ReviewTarget, comment: LineComment) -> str:
        created = self._pull(target).create_review_comment(
            body=comment.body,
            commit=self._commit(target),
            path=comment.file,
            line=comment.line,
            side="RIGHT",
        )
        return str(created.id)

    def _find_summary(self, target: ReviewTarget, marker: str) -> str | None:
        for review in self._pull(target).get_reviews():
            if marker in (review.body or ""):
                return str(review.id)
        return None

    def _list_line_comments(self, target: ReviewTarget) -> list[tuple[str, int | None, str]]:
        existing = []
        for c in self._pull(target).get_review_comments():
            # c.line is None once the line left the diff (e.g. after a
            # force-push); original_line still identifies where it was posted.
            line = c.line if c.line is not None else getattr(c, "original_line", None)
            existing.append((c.path, line, c.body or ""))
        return existing

    def _classify(self, exc: BaseException) -> tuple[bool, int | None]:
        if isinstance(exc, RateLimitExceededException):
            return True, exc.status
        if isinstance(exc, GithubException):
            # Secondary rate limits come back as 403 with an explanatory message.
            if exc.status == 403 and "rate limit" in str(exc.data).lower():
                return True, exc.status
            return is_transient_status(exc.status), exc.status
        return True, None

    def _pull(self, target: ReviewTarget):
        key = (target.repo, target.number)
        if key not in self._pulls:
            self._pulls[key] = self._gh.get_repo(target.repo).get_pull(target.number)
        return self._pulls[key]

    def _commit(self, target: ReviewTarget):
        key = (target.repo, target.head_sha)
        if key not in self._commits:
            self._commits[key] = self._gh.get_repo(target.repo).get_commit(target.head_sha)
        return self._commits[key]

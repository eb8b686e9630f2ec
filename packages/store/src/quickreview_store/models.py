"""Publish record data models.

Decoupled from quickreview_core so the store layer can be used on its own:
platform and verdict are stored as their plain string values.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone

STATUS_PUBLISHED = "published"
STATUS_PARTIAL = "partial"


@dataclass
class CommentRecord:
    """A single line comment as it was (or was meant to be) posted."""

    file: str
    line: int
    body: str


@dataclass
class PublishRecord:
    """One publication of one review result to one PR/MR.

    Records are append-only: a partial publication that is later completed
    gets a second, superseding record rather than an update.
    """

    platform: str  # "github" | "gitlab"
    repo: str
    pr_number: int
    content_hash: str
    status: str  # STATUS_PUBLISHED | STATUS_PARTIAL
    summary_id: str
    head_sha: str
    verdict: str  # "approve" | "request-changes" | "comment-only"
    recorded_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    posted_comments: list[CommentRecord] = field(default_factory=list)
    failed_comments: list[CommentRecord] = field(default_factory=list)

    @property
    def complete(self) -> bool:
        return self.status == STATUS_PUBLISHED

    @property
    def key(self) -> tuple[str, str, int, str]:
        return (self.platform, self.repo, self.pr_number, self.content_hash)


def comments_to_list(comments: list[CommentRecord]) -> list[dict]:
    return [{"file": c.file, "line": c.line, "body": c.body} for c in comments]


def comments_from_list(data: list[dict] | None) -> list[CommentRecord]:
    return [CommentRecord(file=c.get("file", ""), line=c.get("line", 0), body=c.get("body", "")) for c in data or []]


def record_to_dict(record: PublishRecord) -> dict:
    return {
        "platform": record.platform,
        "repo": record.repo,
        "pr_number": record.pr_number,
        "content_hash": record.content_hash,
        "status": record.status,
        "summary_id": record.summary_id,
        "head_sha": record.head_sha,
        "verdict": record.verdict,
        "recorded_at": record.recorded_at,
        "posted_comments": comments_to_list(record.posted_comments),
        "failed_comments": comments_to_list(record.failed_comments),
    }


def record_from_dict(d: dict) -> PublishRecord:
    return PublishRecord(
        platform=d.get("platform", ""),
        repo=d.get("repo", ""),
        pr_number=d.get("pr_number", 0),
        content_hash=d.get("content_hash", ""),
        status=d.get("status", STATUS_PUBLISHED),
        summary_id=d.get("summary_id", ""),
        head_sha=d.get("head_sha", ""),
        verdict=d.get("verdict", ""),
        recorded_at=d.get("recorded_at", ""),
        posted_comments=comments_from_list(d.get("posted_comments")),
        failed_comments=comments_from_list(d.get("failed_comments")),
    )

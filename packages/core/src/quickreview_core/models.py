"""Platform-agnostic data model shared by every pipeline stage.

Everything a stage hands to the next one is a frozen dataclass: a
ReviewTarget fetched once is never patched up later, and a ReviewResult is
hashed for idempotency, so neither may change after construction.
"""

from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Mapping

if TYPE_CHECKING:
    from quickreview_store.models import PublishRecord


class Platform(str, Enum):
    GITHUB = "github"
    GITLAB = "gitlab"


class Verdict(str, Enum):
    APPROVE = "approve"
    REQUEST_CHANGES = "request-changes"
    COMMENT_ONLY = "comment-only"


class Stage(str, Enum):
    FETCH = "fetch"
    CHECKOUT = "checkout"
    ANALYZE = "analyze"
    EXTRACT = "extract"
    PUBLISH = "publish"


@dataclass(frozen=True)
class Hunk:
    """One ``@@`` block of a file's unified diff."""

    path: str
    old_start: int
    old_count: int
    new_start: int
    new_count: int
    content: str = ""

    @property
    def new_end(self) -> int:
        return self.new_start + self.new_count - 1

    def covers(self, line: int) -> bool:
        # Review comments anchor to the new-file side; a pure deletion hunk
        # (new_count == 0) has no addressable line.
        return self.new_count > 0 and self.new_start <= line <= self.new_end


@dataclass(frozen=True)
class FileChange:
    path: str
    status: str  # "added" | "modified" | "removed" | "renamed"
    patch: str = ""
    old_path: str | None = None
    hunks: tuple[Hunk, ...] = ()


@dataclass(frozen=True)
class ReviewTarget:
    """A fully fetched PR/MR, normalized across platforms."""

    platform: Platform
    repo: str
    number: int
    url: str
    title: str
    description: str
    files: tuple[FileChange, ...]
    base_ref: str
    head_ref: str
    base_sha: str
    head_sha: str
    metadata: Mapping[str, Any] = field(default_factory=dict, compare=False, hash=False)

    @property
    def file_paths(self) -> list[str]:
        return [f.path for f in self.files]

    @property
    def hunks(self) -> list[Hunk]:
        return [h for f in self.files for h in f.hunks]

    @property
    def diff(self) -> str:
        blocks = []
        for f in self.files:
            if not f.patch:
                continue
            old = f.old_path or f.path
            blocks.append(f"diff --git a/{old} b/{f.path}\n--- a/{old}\n+++ b/{f.path}\n{f.patch.rstrip()}")
        return "\n".join(blocks)

    def file(self, path: str) -> FileChange | None:
        for f in self.files:
            if f.path == path:
                return f
        return None

    def covers(self, path: str, line: int) -> bool:
        change = self.file(path)
        return change is not None and any(h.covers(line) for h in change.hunks)


@dataclass(frozen=True)
class ToolCall:
    name: str
    arguments: Mapping[str, Any] = field(default_factory=dict, hash=False)
    result: str = ""


@dataclass(frozen=True)
class AssistantReply:
    """Verbatim assistant output: free text plus the tool-call trace."""

    text: str
    tool_calls: tuple[ToolCall, ...] = ()
    session_id: str = ""
    model: str = ""

    def excerpt(self, limit: int = 200) -> str:
        text = self.text.strip()
        return text if len(text) <= limit else text[:limit] + "..."


@dataclass(frozen=True, order=True)
class LineComment:
    file: str
    line: int
    body: str


@dataclass(frozen=True)
class DroppedComment:
    file: str
    line: int | None
    body: str
    reason: str  # "outside-diff" | "malformed" | "duplicate"


@dataclass(frozen=True)
class ReviewResult:
    summary: str
    comments: tuple[LineComment, ...] = ()
    verdict: Verdict = Verdict.COMMENT_ONLY
    head_sha: str = ""
    dropped: tuple[DroppedComment, ...] = ()

    def content_hash(self) -> str:
        """SHA-256 over the publishable content.

        The reviewed head SHA is part of the content, so the same review text
        on a new revision of the PR is a new publication. Dropped comments are
        never posted and so are left out.
        """
        payload = {
            "head_sha": self.head_sha,
            "summary": self.summary,
            "verdict": self.verdict.value,
            "comments": [[c.file, c.line, c.body] for c in self.comments],
        }
        encoded = json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False)
        return hashlib.sha256(encoded.encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class PublishOutcome:
    summary_id: str
    posted: tuple[LineComment, ...] = ()


# ---------------------------------------------------------------------- #
# Run outcomes                                                            #
# ---------------------------------------------------------------------- #


@dataclass
class RunOutcome:
    url: str

    @property
    def ok(self) -> bool:
        return True


@dataclass
class Published(RunOutcome):
    summary_id: str
    record: PublishRecord | None = None
    recorded: bool = True


@dataclass
class AlreadyPublished(RunOutcome):
    record: PublishRecord


@dataclass
class Previewed(RunOutcome):
    """Dry run: the review was produced but nothing was posted or recorded."""

    target: ReviewTarget
    result: ReviewResult


@dataclass
class Failed(RunOutcome):
    stage: Stage
    reason: str
    error: Exception | None = None
    attempts: int = 1

    @property
    def ok(self) -> bool:
        return False

    @property
    def detail(self) -> str:
        return getattr(self.error, "detail", "") or ""

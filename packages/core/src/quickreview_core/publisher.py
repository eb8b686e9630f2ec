"""Post a ReviewResult to its PR/MR: summary first, then line comments.

Publishing is at-most-once per content hash. The PublishRecord log checked
by the orchestrator covers completed runs; for a crash between posting and
recording, the summary carries a hidden marker and existing line comments
are read back, so a retried publish skips what is already there.
"""

from __future__ import annotations

import logging
from collections import Counter
from typing import TYPE_CHECKING, Iterable, Sequence

from quickreview_core.errors import PublishError, PublishPartial
from quickreview_core.models import LineComment, PublishOutcome, Verdict

if TYPE_CHECKING:
    from quickreview_core.models import ReviewResult, ReviewTarget
    from quickreview_core.platforms.base import BasePlatform
    from quickreview_store.models import PublishRecord

logger = logging.getLogger(__name__)

_VERDICT_TEXT = {
    Verdict.APPROVE: "Approved. The changes look good.",
    Verdict.REQUEST_CHANGES: "Changes requested.",
    Verdict.COMMENT_ONLY: "Comments only, no verdict.",
}


def summary_marker(result: ReviewResult) -> str:
    return f"<!-- quickreview:{result.content_hash()} -->"


def render_summary(result: ReviewResult) -> str:
    """Build the summary body posted as the top-level review/note."""
    lines = ["## Review summary\n", f"> {_VERDICT_TEXT[result.verdict]}\n", result.summary.strip() + "\n"]

    per_file = Counter(c.file for c in result.comments)
    lines.append(
        f"**{len(result.comments)}** comment(s) on **{len(per_file)}** file(s)"
        + (f" · {len(result.dropped)} finding(s) outside the diff not posted" if result.dropped else "")
        + "\n"
    )
    if per_file:
        lines.append("| File | Comments |")
        lines.append("|------|:--------:|")
        for path in sorted(per_file):
            lines.append(f"| `{path}` | {per_file[path]} |")

    lines.append(f"\n{summary_marker(result)}")
    return "\n".join(lines)


def already_commented(
    existing: Iterable[tuple[str, int | None, str]],
    comment: LineComment,
    queued: set[LineComment] | None = None,
) -> bool:
    """Check whether an identical comment is already on the PR for this file+line.

    Checks the platform's existing line comments and any comments queued in
    the current publish.
    """
    if queued is not None and comment in queued:
        return True
    text = comment.body.strip()
    for path, line, body in existing:
        if path == comment.file and line == comment.line and body.strip() == text:
            return True
    return False


class Publisher:
    def __init__(self, platform: BasePlatform):
        self.platform = platform

    def publish(self, target: ReviewTarget, result: ReviewResult) -> PublishOutcome:
        """Post ``result`` to ``target``.

        Raises PublishTransient / PublishRejected when nothing could be
        posted, and PublishPartial when the summary is up but some line
        comments failed.
        """
        marker = summary_marker(result)
        summary_id = self.platform.find_summary(target, marker)
        if summary_id is not None:
            logger.info("Summary for %s already posted as %s; not posting it again", target.url, summary_id)
        else:
            summary_id = self.platform.post_summary(target, render_summary(result), result.verdict)
            logger.info("Posted summary %s to %s (%s)", summary_id, target.url, result.verdict.value)

        posted = self._post_comments(target, result.comments, summary_id)
        return PublishOutcome(summary_id=summary_id, posted=tuple(posted))

    def publish_missing(self, target: ReviewTarget, result: ReviewResult, record: PublishRecord) -> PublishOutcome:
        """Finish a partial publication: post the comments ``record`` lacks, never the summary."""
        done = {(c.file, c.line, c.body) for c in record.posted_comments}
        missing = [c for c in result.comments if (c.file, c.line, c.body) not in done]
        logger.info(
            "Resuming partial publish on %s: %d of %d comment(s) missing",
            target.url,
            len(missing),
            len(result.comments),
        )
        already = [c for c in result.comments if (c.file, c.line, c.body) in done]
        posted = self._post_comments(target, missing, record.summary_id, already_posted=already)
        return PublishOutcome(summary_id=record.summary_id, posted=tuple(posted))

    def _post_comments(
        self,
        target: ReviewTarget,
        comments: Sequence[LineComment],
        summary_id: str,
        already_posted: Sequence[LineComment] = (),
    ) -> list[LineComment]:
        posted = list(already_posted)
        if not comments:
            return posted

        existing = self.platform.list_line_comments(target)
        queued: set[LineComment] = set()
        failed: list[LineComment] = []
        for comment in comments:
            if already_commented(existing, comment, queued):
                logger.debug("Skipping comment already on %s:%d", comment.file, comment.line)
                posted.append(comment)
                continue
            try:
                self.platform.post_line_comment(target, comment)
            except PublishError as e:
                logger.warning("Could not post comment on %s:%d: %s", comment.file, comment.line, e)
                failed.append(comment)
                continue
            queued.add(comment)
            posted.append(comment)

        if failed:
            raise PublishPartial(len(posted), failed, summary_id, posted)
        logger.info("Posted %d line comment(s) to %s", len(comments), target.url)
        return posted

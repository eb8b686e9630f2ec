"""Error taxonomy for the review pipeline.

Every failure a stage can produce is a QuickReviewError subclass carrying the
stage it belongs to, whether retrying can help, a short machine-readable
``reason`` and a free-form ``detail`` diagnostic (HTTP status, reply excerpt)
for operators.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Sequence

from quickreview_core.models import Stage

if TYPE_CHECKING:
    from quickreview_core.models import LineComment


class QuickReviewError(Exception):
    stage: Stage | None = None
    retryable: bool = False
    reason: str = "error"
    # Set by the orchestrator's retry loop.
    attempts: int = 1
    exhausted: bool = False

    def __init__(self, message: str, detail: str = ""):
        super().__init__(message)
        self.detail = detail


class InvalidTarget(QuickReviewError):
    """The URL does not name exactly one GitHub PR or GitLab MR."""

    reason = "invalid-target"


class CheckoutError(QuickReviewError):
    stage = Stage.CHECKOUT
    reason = "checkout-failed"


# --- fetch ------------------------------------------------------------- #


class FetchError(QuickReviewError):
    stage = Stage.FETCH


class FetchTransient(FetchError):
    retryable = True
    reason = "transient"


class FetchIncomplete(FetchError):
    reason = "incomplete"


class FetchRejected(FetchError):
    reason = "rejected"


# --- analyze ----------------------------------------------------------- #


class AnalyzeError(QuickReviewError):
    stage = Stage.ANALYZE
    retryable = True


class AnalyzeTimeout(AnalyzeError):
    reason = "timeout"


class AnalyzeUnavailable(AnalyzeError):
    reason = "unavailable"


class PromptTemplateError(AnalyzeError):
    """The user prompt template cannot be rendered; retrying cannot help."""

    retryable = False
    reason = "bad-template"


# --- extract ----------------------------------------------------------- #


class ExtractError(QuickReviewError):
    stage = Stage.EXTRACT


class ExtractUnparseable(ExtractError):
    reason = "unparseable"


# --- publish ----------------------------------------------------------- #


class PublishError(QuickReviewError):
    stage = Stage.PUBLISH


class PublishTransient(PublishError):
    retryable = True
    reason = "transient"


class PublishRejected(PublishError):
    reason = "rejected"


class PublishPartial(PublishError):
    """The summary is up but some line comments could not be posted."""

    reason = "partial"

    def __init__(
        self,
        posted_count: int,
        failed_comments: Sequence[LineComment],
        summary_id: str,
        posted: Sequence[LineComment] = (),
    ):
        failed = ", ".join(f"{c.file}:{c.line}" for c in failed_comments)
        super().__init__(
            f"{len(failed_comments)} line comment(s) failed after {posted_count} were posted",
            detail=f"failed: {failed}",
        )
        self.posted_count = posted_count
        self.failed_comments = list(failed_comments)
        self.summary_id = summary_id
        self.posted = list(posted)

"""Base platform implementing the Template Method pattern.

Both hosting platforms share the same capability set:
    fetch()             → _fetch()              ← platform-specific
    post_summary()      → _post_summary()       ← platform-specific
    post_line_comment() → _post_line_comment()  ← platform-specific
    find_summary(), list_line_comments()        ← read-back for idempotency

Subclasses talk to their SDK and report what went wrong through
_classify(); the public methods here turn SDK exceptions into the pipeline's
FetchError / PublishError taxonomy, so neither the orchestrator nor the
publisher ever sees a PyGithub or python-gitlab exception.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, ClassVar

from quickreview_core.errors import (
    FetchError,
    FetchRejected,
    FetchTransient,
    PublishError,
    PublishRejected,
    PublishTransient,
)

if TYPE_CHECKING:
    from quickreview_core.models import LineComment, Platform, ReviewTarget, Verdict
    from quickreview_core.pr_url import PrUrl

logger = logging.getLogger(__name__)


def is_transient_status(status: int | None) -> bool:
    """No status (network failure), 429 and 5xx are worth retrying."""
    return status is None or status == 429 or status >= 500


class BasePlatform(ABC):
    platform: ClassVar[Platform]
    # SDK exception types the public methods translate; anything else is a bug
    # and propagates untouched.
    api_errors: ClassVar[tuple[type[BaseException], ...]] = ()

    # ------------------------------------------------------------------ #
    # Public interface                                                     #
    # ------------------------------------------------------------------ #

    def fetch(self, pr: PrUrl) -> ReviewTarget:
        """Return the complete ReviewTarget for ``pr``.

        Raises FetchIncomplete rather than returning a partial diff.
        """
        try:
            target = self._fetch(pr)
        except FetchError:
            raise
        except self.api_errors as e:
            transient, status = self._classify(e)
            cls = FetchTransient if transient else FetchRejected
            raise cls(f"Fetching {pr} failed: {e}", detail=self._status_detail(status)) from e
        logger.info(
            "Fetched %s: %d file(s), %d hunk(s) at %s",
            pr,
            len(target.files),
            len(target.hunks),
            target.head_sha[:7],
        )
        return target

    def post_summary(self, target: ReviewTarget, body: str, verdict: Verdict) -> str:
        return self._publish_call("posting summary", self._post_summary, target, body, verdict)

    def post_line_comment(self, target: ReviewTarget, comment: LineComment) -> str:
        return self._publish_call(
            f"posting comment on {comment.file}:{comment.line}", self._post_line_comment, target, comment
        )

    def find_summary(self, target: ReviewTarget, marker: str) -> str | None:
        """Return the id of an already posted summary containing ``marker``."""
        return self._publish_call("looking up existing summary", self._find_summary, target, marker)

    def list_line_comments(self, target: ReviewTarget) -> list[tuple[str, int | None, str]]:
        """Return (file, line, body) for every line comment already on the PR/MR."""
        return self._publish_call("listing existing comments", self._list_line_comments, target)

    # ------------------------------------------------------------------ #
    # Abstract: implement in each platform                                #
    # ------------------------------------------------------------------ #

    @abstractmethod
    def _fetch(self, pr: PrUrl) -> ReviewTarget:
        """Load and normalize the PR/MR. Raise FetchIncomplete on truncated data."""

    @abstractmethod
    def _post_summary(self, target: ReviewTarget, body: str, verdict: Verdict) -> str:
        """Post the review summary and return its platform id."""

    @abstractmethod
    def _post_line_comment(self, target: ReviewTarget, comment: LineComment) -> str:
        """Post one anchored comment and return its platform id."""

    @abstractmethod
    def _find_summary(self, target: ReviewTarget, marker: str) -> str | None:
        ...

    @abstractmethod
    def _list_line_comments(self, target: ReviewTarget) -> list[tuple[str, int | None, str]]:
        ...

    @abstractmethod
    def _classify(self, exc: BaseException) -> tuple[bool, int | None]:
        """Return (transient, http_status) for an SDK exception."""

    # ------------------------------------------------------------------ #
    # Shared implementations                                               #
    # ------------------------------------------------------------------ #

    def _publish_call(self, action: str, fn, *args):
        try:
            return fn(*args)
        except PublishError:
            raise
        except self.api_errors as e:
            transient, status = self._classify(e)
            cls = PublishTransient if transient else PublishRejected
            raise cls(f"{self.platform.value}: {action} failed: {e}", detail=self._status_detail(status)) from e

    @staticmethod
    def _status_detail(status: int | None) -> str:
        return f"HTTP {status}" if status is not None else "no response"

"""The review pipeline: fetch → checkout → analyze → extract → publish.

ReviewOrchestrator.run() executes one PR/MR strictly in that order and
reports a RunOutcome; typed stage failures become Failed outcomes rather
than exceptions. Only a malformed URL raises (InvalidTarget), before any
network call.

Publishing is guarded by the store: the per-PR lock is held from the
record lookup until the new record is appended, so two runs producing the
same review can never both post it.
"""

from __future__ import annotations

import logging
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, Iterable, Sequence, TypeVar

from quickreview_core.assistant.anthropic import AnthropicAssistant
from quickreview_core.assistant.base import BaseAssistant
from quickreview_core.assistant.openai import OpenAIAssistant
from quickreview_core.assistant.prompts import check_template
from quickreview_core.checkout import local_checkout
from quickreview_core.config import load_prompt_template
from quickreview_core.errors import PromptTemplateError, PublishPartial, QuickReviewError
from quickreview_core.extractor import extract
from quickreview_core.models import (
    AlreadyPublished,
    Failed,
    LineComment,
    Platform,
    Previewed,
    Published,
    ReviewResult,
    ReviewTarget,
    RunOutcome,
    Stage,
)
from quickreview_core.platforms.base import BasePlatform
from quickreview_core.platforms.github import GitHubPlatform
from quickreview_core.platforms.gitlab import GitLabPlatform
from quickreview_core.pr_url import PrUrl, parse_pr_url
from quickreview_core.publisher import Publisher
from quickreview_store.base import BaseStore, StoreError
from quickreview_store.locking import LockTimeout
from quickreview_store.models import STATUS_PARTIAL, STATUS_PUBLISHED, CommentRecord, PublishRecord

logger = logging.getLogger(__name__)

T = TypeVar("T")

_API_KEYS = {"anthropic": "anthropic_api_key", "openai": "openai_api_key"}

# Analyze is retried once at most: a second session costs as much as the first.
_ANALYZE_ATTEMPTS = 2


def get_platform(pr: PrUrl, config: dict) -> BasePlatform:
    if pr.platform is Platform.GITHUB:
        return GitHubPlatform(token=config.get("github_token"), host=pr.host)
    return GitLabPlatform(gitlab_id=config.get("gitlab_id"), config_files=config.get("gitlab_config_files"))


def check_assistant_config(config: dict) -> str | None:
    """Validate the assistant settings and return the loaded prompt template.

    Raises ValueError for an unknown assistant, a missing API key, or a
    prompt template that is missing or cannot be rendered.
    """
    name = config.get("assistant")
    if name not in _API_KEYS:
        raise ValueError(f"Unknown assistant: {name!r}. Choose 'anthropic' or 'openai'.")
    if not config.get(_API_KEYS[name]):
        raise ValueError(f"{_API_KEYS[name].upper()} is not set")
    try:
        template = load_prompt_template(config)
        if template:
            check_template(template)
    except (OSError, PromptTemplateError) as e:
        raise ValueError(str(e)) from e
    return template


def get_assistant(config: dict) -> BaseAssistant:
    template = check_assistant_config(config)
    kwargs = {
        "model": config.get("model"),
        "timeout": config.get("analyze_timeout", 600),
        "max_turns": config.get("max_turns", 12),
        "prompt_template": template,
    }
    if config["assistant"] == "anthropic":
        return AnthropicAssistant(api_key=config["anthropic_api_key"], **kwargs)
    return OpenAIAssistant(api_key=config["openai_api_key"], **kwargs)


def _comment_records(comments: Iterable[LineComment]) -> list[CommentRecord]:
    return [CommentRecord(file=c.file, line=c.line, body=c.body) for c in comments]


class ReviewOrchestrator:
    """Runs the pipeline for one PR/MR at a time.

    ``platform``, ``assistant`` and ``publisher`` default to the ones the
    configuration selects; tests inject fakes. An orchestrator is not shared
    between threads: run_many() builds one per URL.
    """

    def __init__(
        self,
        config: dict,
        store: BaseStore,
        platform: BasePlatform | None = None,
        assistant: BaseAssistant | None = None,
        publisher: Publisher | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.config = config
        self.store = store
        self._platform = platform
        self.assistant = assistant if assistant is not None else get_assistant(config)
        self._publisher = publisher
        self._sleep = sleep

    def run(self, url: str) -> RunOutcome:
        pr = parse_pr_url(url, self.config["github_hosts"], self.config["gitlab_hosts"])
        logger.info("Reviewing %s", pr)
        try:
            return self._run(pr)
        except QuickReviewError as e:
            reason = f"{e.reason}-exhausted" if e.exhausted else e.reason
            logger.error("%s failed at %s (%s): %s", pr, e.stage.value if e.stage else "?", reason, e)
            return Failed(url=pr.url, stage=e.stage, reason=reason, error=e, attempts=e.attempts)

    def _run(self, pr: PrUrl) -> RunOutcome:
        platform = self._platform if self._platform is not None else get_platform(pr, self.config)
        target = self._retry(Stage.FETCH, lambda: platform.fetch(pr), self.config.get("fetch_attempts", 3))

        dry_run = bool(self.config.get("dry_run"))
        if self.config.get("skip_reviewed_heads") and not dry_run:
            reviewed = self._reviewed_head(target)
            if reviewed is not None:
                logger.info("%s: head %s already reviewed; skipping", pr, target.head_sha[:7])
                return AlreadyPublished(url=pr.url, record=reviewed)

        with local_checkout(target, self.config) as workdir:
            reply = self._retry(Stage.ANALYZE, lambda: self.assistant.analyze(workdir, target), _ANALYZE_ATTEMPTS)

        result = extract(reply, target)

        if dry_run:
            return Previewed(url=pr.url, target=target, result=result)
        return self._publish(target, result, platform)

    def _publish(self, target: ReviewTarget, result: ReviewResult, platform: BasePlatform) -> RunOutcome:
        publisher = self._publisher if self._publisher is not None else Publisher(platform)
        attempts = self.config.get("publish_attempts", 3)
        key = (target.platform.value, target.repo, target.number)
        content_hash = result.content_hash()

        try:
            with self.store.lock(*key):
                try:
                    previous = self.store.latest(*key, content_hash)
                except StoreError as e:
                    logger.error("Could not look up publish records for %s: %s", target.url, e)
                    return Failed(url=target.url, stage=Stage.PUBLISH, reason="record-lookup-failed", error=e)

                if previous is not None and previous.complete:
                    logger.info("%s: this review was already published (%s)", target.url, previous.recorded_at)
                    return AlreadyPublished(url=target.url, record=previous)

                try:
                    if previous is not None:
                        outcome = self._retry(
                            Stage.PUBLISH, lambda: publisher.publish_missing(target, result, previous), attempts
                        )
                    else:
                        outcome = self._retry(Stage.PUBLISH, lambda: publisher.publish(target, result), attempts)
                except PublishPartial as e:
                    self._record(target, result, STATUS_PARTIAL, e.summary_id, e.posted, e.failed_comments)
                    raise

                record, recorded = self._record(target, result, STATUS_PUBLISHED, outcome.summary_id, outcome.posted)
        except LockTimeout as e:
            logger.error("Timed out waiting for the publish lock on %s", target.url)
            return Failed(url=target.url, stage=Stage.PUBLISH, reason="lock-timeout", error=e)

        return Published(url=target.url, summary_id=outcome.summary_id, record=record, recorded=recorded)

    def _record(
        self,
        target: ReviewTarget,
        result: ReviewResult,
        status: str,
        summary_id: str,
        posted: Sequence[LineComment],
        failed: Sequence[LineComment] = (),
    ) -> tuple[PublishRecord, bool]:
        record = PublishRecord(
            platform=target.platform.value,
            repo=target.repo,
            pr_number=target.number,
            content_hash=result.content_hash(),
            status=status,
            summary_id=summary_id,
            head_sha=target.head_sha,
            verdict=result.verdict.value,
            posted_comments=_comment_records(posted),
            failed_comments=_comment_records(failed),
        )
        try:
            self.store.append(record)
        except StoreError as e:
            # The review is already on the PR; only the local log is behind.
            logger.error("Published to %s but could not record it: %s", target.url, e)
            return record, False
        return record, True

    def _reviewed_head(self, target: ReviewTarget) -> PublishRecord | None:
        try:
            return self.store.latest_for_head(target.platform.value, target.repo, target.number, target.head_sha)
        except StoreError as e:
            logger.warning("Could not check for an earlier review of %s: %s", target.url, e)
            return None

    def _retry(self, stage: Stage, fn: Callable[[], T], attempts: int) -> T:
        """Call ``fn`` up to ``attempts`` times, backing off exponentially.

        Only retryable errors are retried; anything else propagates at once
        with its attempt count set.
        """
        attempts = max(1, attempts)
        for attempt in range(attempts):
            try:
                return fn()
            except QuickReviewError as e:
                e.attempts = attempt + 1
                if not e.retryable:
                    raise
                if attempt == attempts - 1:
                    e.exhausted = True
                    logger.error("%s failed after %d attempts: %s", stage.value, attempts, e)
                    raise
                delay = self.config.get("backoff_base", 1.0) * 2**attempt
                logger.warning(
                    "%s error (attempt %d/%d): %s. Retrying in %.1fs...",
                    stage.value,
                    attempt + 1,
                    attempts,
                    e,
                    delay,
                )
                self._sleep(delay)
        raise AssertionError("unreachable")


def run_many(
    urls: Sequence[str],
    config: dict,
    store: BaseStore,
    max_workers: int | None = None,
    orchestrator_factory: Callable[[], ReviewOrchestrator] | None = None,
) -> list[RunOutcome]:
    """Review several PRs/MRs in parallel; outcomes come back in input order.

    Every URL and the assistant settings are validated first, so a malformed
    URL (InvalidTarget) or a bad configuration (ValueError) stops the batch
    before any review starts.
    """
    for url in urls:
        parse_pr_url(url, config["github_hosts"], config["gitlab_hosts"])
    if not urls:
        return []
    if orchestrator_factory is None:
        check_assistant_config(config)

    factory = orchestrator_factory or (lambda: ReviewOrchestrator(config, store))
    workers = max(1, min(max_workers or config.get("max_workers", 4), len(urls)))

    def _run_one(url: str) -> RunOutcome:
        return factory().run(url)

    with ThreadPoolExecutor(max_workers=workers) as pool:
        return list(pool.map(_run_one, urls))

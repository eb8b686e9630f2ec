"""Tests for the review orchestrator.

The platform, assistant and publisher are MagicMocks; the store is a real
MemoryStore so idempotency is checked against actual records.
"""

from unittest.mock import MagicMock

import pytest

from quickreview_core.assistant.base import BaseAssistant
from quickreview_core.config import load_config
from quickreview_core.diff import parse_hunks
from quickreview_core.errors import (
    AnalyzeTimeout,
    AnalyzeUnavailable,
    FetchIncomplete,
    FetchRejected,
    FetchTransient,
    InvalidTarget,
    PromptTemplateError,
    PublishPartial,
    PublishTransient,
)
from quickreview_core.models import (
    AlreadyPublished,
    AssistantReply,
    Failed,
    FileChange,
    LineComment,
    Platform,
    Previewed,
    Published,
    PublishOutcome,
    ReviewTarget,
    Stage,
)
from quickreview_core.pipeline import ReviewOrchestrator, check_assistant_config, get_assistant, run_many
from quickreview_store.base import StoreError
from quickreview_store.locking import LockTimeout
from quickreview_store.memory import MemoryStore
from quickreview_store.models import STATUS_PARTIAL, STATUS_PUBLISHED

URL = "https://github.com/owner/repo/pull/7"
PATCH = "@@ -40,5 +40,6 @@\n a\n-b\n+c\n+d\n e\n f\n g"
REPLY_TEXT = "Summary: LGTM\nfile.rs:42: consider renaming x"
COMMENT = LineComment("file.rs", 42, "consider renaming x")


def _make_target(head_sha="c" * 40, number=7):
    return ReviewTarget(
        platform=Platform.GITHUB,
        repo="owner/repo",
        number=number,
        url=f"https://github.com/owner/repo/pull/{number}",
        title="Rename",
        description="",
        files=(FileChange("file.rs", "modified", PATCH, hunks=parse_hunks("file.rs", PATCH)),),
        base_ref="main",
        head_ref="feature",
        base_sha="b" * 40,
        head_sha=head_sha,
    )


def _reply(text=REPLY_TEXT):
    return AssistantReply(text=text, session_id="s", model="m")


def _make_config(tmp_path, **overrides):
    config = load_config(str(tmp_path / "missing.yml"))
    config.update(overrides)
    return config


def _make_publisher():
    publisher = MagicMock()
    publisher.publish.return_value = PublishOutcome(summary_id="r1", posted=(COMMENT,))
    publisher.publish_missing.return_value = PublishOutcome(summary_id="r1", posted=(COMMENT,))
    return publisher


def _make_orchestrator(tmp_path, store, target=None, reply=None, publisher=None, **config_overrides):
    platform = MagicMock()
    platform.fetch.return_value = target or _make_target()
    assistant = MagicMock()
    assistant.analyze.return_value = reply or _reply()
    orch = ReviewOrchestrator(
        _make_config(tmp_path, **config_overrides),
        store,
        platform=platform,
        assistant=assistant,
        publisher=publisher or _make_publisher(),
        sleep=MagicMock(),
    )
    return orch


class TestHappyPath:
    def test_publishes_and_records(self, tmp_path):
        store = MemoryStore()
        orch = _make_orchestrator(tmp_path, store)

        outcome = orch.run(URL)

        assert isinstance(outcome, Published)
        assert outcome.ok
        assert outcome.summary_id == "r1"
        assert outcome.recorded is True
        records = store.list_records("owner/repo", pr_number=7)
        assert len(records) == 1
        assert records[0].status == STATUS_PUBLISHED
        assert records[0].platform == "github"
        assert records[0].posted_comments[0].line == 42

    def test_analyze_receives_no_workdir_without_checkout(self, tmp_path):
        orch = _make_orchestrator(tmp_path, MemoryStore())
        orch.run(URL)
        workdir, target = orch.assistant.analyze.call_args.args
        assert workdir is None
        assert target.number == 7

    def test_project_path_is_passed_to_assistant(self, tmp_path):
        orch = _make_orchestrator(tmp_path, MemoryStore(), project_path=str(tmp_path))
        orch.run(URL)
        assert orch.assistant.analyze.call_args.args[0] == str(tmp_path)

    def test_published_comments_are_within_the_diff(self, tmp_path):
        reply = _reply("Summary: s\nfile.rs:42: in\nfile.rs:999: out")
        publisher = _make_publisher()
        orch = _make_orchestrator(tmp_path, MemoryStore(), reply=reply, publisher=publisher)

        orch.run(URL)

        target, result = publisher.publish.call_args.args
        assert all(target.covers(c.file, c.line) for c in result.comments)
        assert [c.line for c in result.comments] == [42]


class TestIdempotency:
    def test_rerun_is_already_published_with_zero_publisher_calls(self, tmp_path):
        store = MemoryStore()
        _make_orchestrator(tmp_path, store).run(URL)

        publisher = _make_publisher()
        outcome = _make_orchestrator(tmp_path, store, publisher=publisher).run(URL)

        assert isinstance(outcome, AlreadyPublished)
        assert outcome.ok
        assert publisher.method_calls == []
        assert len(store.list_records("owner/repo")) == 1

    def test_new_head_sha_is_a_new_publication(self, tmp_path):
        store = MemoryStore()
        _make_orchestrator(tmp_path, store).run(URL)

        outcome = _make_orchestrator(tmp_path, store, target=_make_target(head_sha="e" * 40)).run(URL)

        assert isinstance(outcome, Published)
        assert len(store.list_records("owner/repo")) == 2

    def test_skip_reviewed_heads_skips_analyze(self, tmp_path):
        store = MemoryStore()
        _make_orchestrator(tmp_path, store).run(URL)

        orch = _make_orchestrator(tmp_path, store, reply=_reply("Summary: different"), skip_reviewed_heads=True)
        outcome = orch.run(URL)

        assert isinstance(outcome, AlreadyPublished)
        orch.assistant.analyze.assert_not_called()

    def test_partial_publish_never_recorded_as_published(self, tmp_path):
        store = MemoryStore()
        publisher = _make_publisher()
        publisher.publish.side_effect = PublishPartial(0, [COMMENT], summary_id="r1")

        outcome = _make_orchestrator(tmp_path, store, publisher=publisher).run(URL)

        assert isinstance(outcome, Failed)
        assert outcome.stage is Stage.PUBLISH
        assert outcome.reason == "partial"
        records = store.list_records("owner/repo")
        assert [r.status for r in records] == [STATUS_PARTIAL]
        assert records[0].failed_comments[0].line == 42
        assert publisher.publish.call_count == 1

    def test_partial_record_is_resumed_without_reposting_summary(self, tmp_path):
        store = MemoryStore()
        first = _make_publisher()
        first.publish.side_effect = PublishPartial(0, [COMMENT], summary_id="r1")
        _make_orchestrator(tmp_path, store, publisher=first).run(URL)

        second = _make_publisher()
        outcome = _make_orchestrator(tmp_path, store, publisher=second).run(URL)

        assert isinstance(outcome, Published)
        second.publish.assert_not_called()
        second.publish_missing.assert_called_once()
        assert second.publish_missing.call_args.args[2].status == STATUS_PARTIAL
        assert [r.status for r in store.list_records("owner/repo")] == [STATUS_PARTIAL, STATUS_PUBLISHED]

    def test_dry_run_previews_without_publishing_or_recording(self, tmp_path):
        store = MemoryStore()
        publisher = _make_publisher()

        outcome = _make_orchestrator(tmp_path, store, publisher=publisher, dry_run=True).run(URL)

        assert isinstance(outcome, Previewed)
        assert outcome.result.comments == (COMMENT,)
        assert publisher.method_calls == []
        assert store.list_records("owner/repo") == []


class TestRetries:
    def test_fetch_transient_exhausts_after_three_attempts(self, tmp_path):
        orch = _make_orchestrator(tmp_path, MemoryStore())
        orch._platform.fetch.side_effect = FetchTransient("503", detail="HTTP 503")

        outcome = orch.run(URL)

        assert isinstance(outcome, Failed)
        assert outcome.stage is Stage.FETCH
        assert outcome.reason == "transient-exhausted"
        assert outcome.attempts == 3
        assert outcome.detail == "HTTP 503"
        assert orch._platform.fetch.call_count == 3
        orch.assistant.analyze.assert_not_called()
        orch._publisher.publish.assert_not_called()

    def test_backoff_is_exponential(self, tmp_path):
        orch = _make_orchestrator(tmp_path, MemoryStore(), backoff_base=0.5)
        orch._platform.fetch.side_effect = FetchTransient("503")
        orch.run(URL)
        assert [c.args[0] for c in orch._sleep.call_args_list] == [0.5, 1.0]

    def test_fetch_recovers_after_transient_error(self, tmp_path):
        orch = _make_orchestrator(tmp_path, MemoryStore())
        orch._platform.fetch.side_effect = [FetchTransient("503"), _make_target()]
        assert isinstance(orch.run(URL), Published)

    @pytest.mark.parametrize(
        "error, reason",
        [(FetchRejected("404"), "rejected"), (FetchIncomplete("big"), "incomplete")],
    )
    def test_fetch_terminal_errors_are_not_retried(self, tmp_path, error, reason):
        orch = _make_orchestrator(tmp_path, MemoryStore())
        orch._platform.fetch.side_effect = error

        outcome = orch.run(URL)

        assert outcome.reason == reason
        assert outcome.attempts == 1
        assert orch._platform.fetch.call_count == 1

    def test_analyze_is_retried_once(self, tmp_path):
        orch = _make_orchestrator(tmp_path, MemoryStore())
        orch.assistant.analyze.side_effect = [AnalyzeTimeout("slow"), _reply()]

        assert isinstance(orch.run(URL), Published)
        assert orch.assistant.analyze.call_count == 2

    def test_analyze_fails_after_second_attempt(self, tmp_path):
        orch = _make_orchestrator(tmp_path, MemoryStore())
        orch.assistant.analyze.side_effect = AnalyzeUnavailable("down")

        outcome = orch.run(URL)

        assert outcome.stage is Stage.ANALYZE
        assert outcome.reason == "unavailable-exhausted"
        assert orch.assistant.analyze.call_count == 2

    def test_extract_failure_is_not_retried(self, tmp_path):
        orch = _make_orchestrator(tmp_path, MemoryStore(), reply=_reply("no structure here"))

        outcome = orch.run(URL)

        assert outcome.stage is Stage.EXTRACT
        assert outcome.reason == "unparseable"
        assert orch.assistant.analyze.call_count == 1
        orch._publisher.publish.assert_not_called()

    def test_publish_transient_is_retried(self, tmp_path):
        publisher = _make_publisher()
        publisher.publish.side_effect = [PublishTransient("502"), PublishOutcome("r1", (COMMENT,))]
        store = MemoryStore()

        outcome = _make_orchestrator(tmp_path, store, publisher=publisher).run(URL)

        assert isinstance(outcome, Published)
        assert publisher.publish.call_count == 2
        assert len(store.list_records("owner/repo")) == 1

    def test_publish_exhausted_writes_no_record(self, tmp_path):
        publisher = _make_publisher()
        publisher.publish.side_effect = PublishTransient("502")
        store = MemoryStore()

        outcome = _make_orchestrator(tmp_path, store, publisher=publisher, publish_attempts=2).run(URL)

        assert outcome.reason == "transient-exhausted"
        assert publisher.publish.call_count == 2
        assert store.list_records("owner/repo") == []


class TestStoreFailures:
    def test_lookup_failure_fails_without_publishing(self, tmp_path, mocker):
        store = MemoryStore()
        mocker.patch.object(store, "latest", side_effect=StoreError("db locked"))
        orch = _make_orchestrator(tmp_path, store)

        outcome = orch.run(URL)

        assert outcome.stage is Stage.PUBLISH
        assert outcome.reason == "record-lookup-failed"
        orch._publisher.publish.assert_not_called()

    def test_append_failure_after_publish_is_reported(self, tmp_path, mocker, caplog):
        store = MemoryStore()
        mocker.patch.object(store, "append", side_effect=StoreError("disk full"))

        outcome = _make_orchestrator(tmp_path, store).run(URL)

        assert isinstance(outcome, Published)
        assert outcome.recorded is False
        assert "could not record" in caplog.text

    def test_lock_timeout(self, tmp_path, mocker):
        store = MemoryStore()
        mocker.patch.object(store, "lock", side_effect=LockTimeout("busy"))
        orch = _make_orchestrator(tmp_path, store)

        outcome = orch.run(URL)

        assert outcome.reason == "lock-timeout"
        orch._publisher.publish.assert_not_called()


class TestTargets:
    def test_invalid_url_raises_before_any_stage(self, tmp_path):
        orch = _make_orchestrator(tmp_path, MemoryStore())
        with pytest.raises(InvalidTarget):
            orch.run("https://example.com/not/a/pr")
        orch._platform.fetch.assert_not_called()

    def test_run_many_returns_outcomes_in_order(self, tmp_path):
        store = MemoryStore()
        urls = [URL, "https://github.com/owner/repo/pull/8"]
        seen = []

        def factory():
            orch = _make_orchestrator(tmp_path, store)
            orch._platform.fetch.side_effect = lambda pr: (seen.append(pr.number), _make_target(number=pr.number))[1]
            return orch

        outcomes = run_many(urls, _make_config(tmp_path), store, max_workers=2, orchestrator_factory=factory)

        assert [o.url for o in outcomes] == urls
        assert sorted(seen) == [7, 8]

    def test_run_many_validates_all_urls_first(self, tmp_path):
        factory = MagicMock()
        with pytest.raises(InvalidTarget):
            run_many([URL, "not a url"], _make_config(tmp_path), MemoryStore(), orchestrator_factory=factory)
        factory.assert_not_called()


class TestGetAssistant:
    def test_unknown_assistant(self, tmp_path):
        with pytest.raises(ValueError, match="Unknown assistant"):
            get_assistant(_make_config(tmp_path, assistant="llama"))

    def test_missing_key(self, tmp_path):
        with pytest.raises(ValueError, match="ANTHROPIC_API_KEY"):
            get_assistant(_make_config(tmp_path, assistant="anthropic", anthropic_api_key=None))

    def test_builds_openai_assistant(self, tmp_path, mocker):
        mocker.patch("quickreview_core.assistant.openai.OpenAI")
        assistant = get_assistant(_make_config(tmp_path, assistant="openai", openai_api_key="k", max_turns=3))
        assert assistant.__class__.__name__ == "OpenAIAssistant"
        assert assistant.max_turns == 3

    def test_bad_prompt_template_is_rejected(self, tmp_path):
        template = tmp_path / "prompt.txt"
        template.write_text("Review {title} on {branch}")
        with pytest.raises(ValueError, match="branch"):
            check_assistant_config(_make_config(tmp_path, anthropic_api_key="k", prompt_template=str(template)))

    def test_missing_prompt_template_is_rejected(self, tmp_path):
        with pytest.raises(ValueError, match="not found"):
            check_assistant_config(
                _make_config(tmp_path, anthropic_api_key="k", prompt_template=str(tmp_path / "nope.txt"))
            )


class _TemplateOnlyAssistant(BaseAssistant):
    """Fails the test if the prompt ever renders far enough to call the API."""

    DEFAULT_MODEL = "stub"

    def _call_api(self, system_prompt, messages, tools, timeout):
        raise AssertionError("the API must not be called")

    def _tool_messages(self, turn, results):
        return []


class TestPromptTemplateFailures:
    @pytest.mark.parametrize("template", ["Review {title} at {branch}", "Review {title} {", "Dict {0}"])
    def test_unrenderable_template_fails_analyze_without_retry(self, tmp_path, template):
        platform = MagicMock()
        platform.fetch.return_value = _make_target()
        publisher = _make_publisher()
        orch = ReviewOrchestrator(
            _make_config(tmp_path),
            MemoryStore(),
            platform=platform,
            assistant=_TemplateOnlyAssistant(prompt_template=template),
            publisher=publisher,
            sleep=MagicMock(),
        )

        outcome = orch.run(URL)

        assert isinstance(outcome, Failed)
        assert outcome.stage is Stage.ANALYZE
        assert outcome.reason == "bad-template"
        assert outcome.attempts == 1
        assert isinstance(outcome.error, PromptTemplateError)
        publisher.publish.assert_not_called()

    def test_bad_template_in_one_run_does_not_abort_the_batch(self, tmp_path):
        def factory():
            platform = MagicMock()
            platform.fetch.side_effect = lambda pr: _make_target(number=pr.number)
            return ReviewOrchestrator(
                _make_config(tmp_path),
                MemoryStore(),
                platform=platform,
                assistant=_TemplateOnlyAssistant(prompt_template="{nope}"),
                publisher=_make_publisher(),
                sleep=MagicMock(),
            )

        urls = ["https://github.com/owner/repo/pull/1", "https://github.com/owner/repo/pull/2"]
        outcomes = run_many(urls, _make_config(tmp_path), MemoryStore(), orchestrator_factory=factory)

        assert [o.reason for o in outcomes] == ["bad-template", "bad-template"]

    def test_run_many_checks_assistant_config_before_starting(self, tmp_path, mocker):
        orchestrator_cls = mocker.patch("quickreview_core.pipeline.ReviewOrchestrator")
        config = _make_config(tmp_path, anthropic_api_key="k", prompt_template=str(tmp_path / "missing.txt"))

        with pytest.raises(ValueError):
            run_many([URL], config, MemoryStore())
        orchestrator_cls.assert_not_called()

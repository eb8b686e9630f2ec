"""Tests for the GitLab platform adapter (python-gitlab mocked out)."""

from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest
from gitlab.config import ConfigError
from gitlab.exceptions import GitlabAuthenticationError, GitlabCreateError, GitlabGetError

from quickreview_core.errors import FetchIncomplete, FetchRejected, FetchTransient, PublishTransient
from quickreview_core.models import LineComment, Platform, Verdict
from quickreview_core.platforms.gitlab import GitLabPlatform
from quickreview_core.pr_url import parse_pr_url

PR = parse_pr_url("https://gitlab.com/group/sub/project/-/merge_requests/9")
PATCH = "@@ -1,2 +1,3 @@\n a\n+b\n c"


def _change(new_path, old_path=None, diff=PATCH, **flags):
    return {"new_path": new_path, "old_path": old_path or new_path, "diff": diff, **flags}


def _changes_payload(changes=None, **extra):
    payload = {
        "title": "Add b",
        "description": None,
        "source_branch": "feature",
        "target_branch": "main",
        "sha": "c" * 40,
        "diff_refs": {"base_sha": "b" * 40, "start_sha": "s" * 40, "head_sha": "c" * 40},
        "changes_count": "2",
        "changes": changes if changes is not None else [_change("z.py"), _change("a.py", old_path="old_a.py")],
    }
    payload.update(extra)
    return payload


def _make_client(payload=None):
    client = MagicMock()
    project = client.projects.get.return_value
    project.http_url_to_repo = "https://gitlab.com/group/sub/project.git"
    mr = project.mergerequests.get.return_value
    mr.changes.return_value = payload or _changes_payload()
    return client, mr


def _fetched(client):
    platform = GitLabPlatform(client=client)
    return platform, platform.fetch(PR)


class TestFetch:
    def test_normalizes_merge_request(self):
        client, _ = _make_client()
        _, target = _fetched(client)

        client.projects.get.assert_called_with("group/sub/project")
        assert target.platform is Platform.GITLAB
        assert target.repo == "group/sub/project"
        assert target.number == 9
        assert target.file_paths == ["a.py", "z.py"]
        assert target.file("a.py").old_path == "old_a.py"
        assert target.file("z.py").old_path is None
        assert target.base_sha == "b" * 40
        assert target.metadata["start_sha"] == "s" * 40
        assert target.metadata["fetch_ref"] == "refs/merge-requests/9/head"

    def test_overflow_is_incomplete(self):
        client, _ = _make_client(_changes_payload(overflow=True))
        with pytest.raises(FetchIncomplete):
            _fetched(client)

    def test_capped_changes_count_is_incomplete(self):
        client, _ = _make_client(_changes_payload(changes_count="1000+"))
        with pytest.raises(FetchIncomplete):
            _fetched(client)

    def test_collapsed_diffs_are_incomplete(self):
        payload = _changes_payload(changes=[_change("a.py", diff="")], changes_count="3")
        client, _ = _make_client(payload)
        with pytest.raises(FetchIncomplete):
            _fetched(client)

    def test_too_large_file_is_incomplete(self):
        client, _ = _make_client(_changes_payload(changes=[_change("a.py", too_large=True)], changes_count="1"))
        with pytest.raises(FetchIncomplete):
            _fetched(client)

    def test_server_error_is_transient(self):
        client, _ = _make_client()
        client.projects.get.side_effect = GitlabGetError("boom", response_code=502)
        with pytest.raises(FetchTransient):
            _fetched(client)

    def test_auth_error_is_rejected(self):
        client, _ = _make_client()
        client.projects.get.side_effect = GitlabAuthenticationError("401 Unauthorized", response_code=401)
        with pytest.raises(FetchRejected) as exc_info:
            _fetched(client)
        assert exc_info.value.detail == "HTTP 401"

    def test_missing_configuration_is_rejected(self, mocker):
        mocker.patch("quickreview_core.platforms.gitlab.gitlab.Gitlab.from_config", side_effect=ConfigError("none"))
        with pytest.raises(FetchRejected):
            GitLabPlatform(gitlab_id="work").fetch(PR)


class TestPublish:
    def test_summary_note_and_approval(self):
        client, mr = _make_client()
        platform, target = _fetched(client)
        mr.notes.create.return_value = SimpleNamespace(id=21)

        note_id = platform.post_summary(target, "body", Verdict.APPROVE)

        assert note_id == "21"
        mr.notes.create.assert_called_once_with({"body": "body"})
        mr.approve.assert_called_once_with(sha="c" * 40)

    def test_no_approval_for_other_verdicts(self):
        client, mr = _make_client()
        platform, target = _fetched(client)
        platform.post_summary(target, "body", Verdict.REQUEST_CHANGES)
        mr.approve.assert_not_called()

    def test_refused_approval_does_not_fail_summary(self):
        client, mr = _make_client()
        platform, target = _fetched(client)
        mr.notes.create.return_value = SimpleNamespace(id=21)
        mr.approve.side_effect = GitlabAuthenticationError("403 Forbidden", response_code=403)

        assert platform.post_summary(target, "body", Verdict.APPROVE) == "21"

    def test_line_comment_position_uses_diff_refs(self):
        client, mr = _make_client()
        platform, target = _fetched(client)
        mr.discussions.create.return_value = SimpleNamespace(id="d1")

        platform.post_line_comment(target, LineComment("a.py", 2, "nit"))

        payload = mr.discussions.create.call_args.args[0]
        position = payload["position"]
        assert payload["body"] == "nit"
        assert position["position_type"] == "text"
        assert position["start_sha"] == "s" * 40
        assert position["head_sha"] == "c" * 40
        assert position["old_path"] == "old_a.py"
        assert position["new_line"] == 2

    def test_comment_create_error_is_classified(self):
        client, mr = _make_client()
        platform, target = _fetched(client)
        mr.discussions.create.side_effect = GitlabCreateError("gateway", response_code=504)
        with pytest.raises(PublishTransient):
            platform.post_line_comment(target, LineComment("a.py", 2, "nit"))

    def test_find_summary_and_list_comments(self):
        client, mr = _make_client()
        platform, target = _fetched(client)
        mr.notes.list.return_value = [SimpleNamespace(id=1, body="x"), SimpleNamespace(id=2, body="<!-- m -->")]
        mr.discussions.list.return_value = [
            SimpleNamespace(attributes={"notes": [{"body": "general", "position": None}]}),
            SimpleNamespace(attributes={"notes": [{"body": "nit", "position": {"new_path": "a.py", "new_line": 2}}]}),
        ]

        assert platform.find_summary(target, "<!-- m -->") == "2"
        assert platform.list_line_comments(target) == [("a.py", 2, "nit")]

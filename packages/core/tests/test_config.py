"""Tests for configuration loading."""

import pytest

from quickreview_core.config import load_config, load_prompt_template


def test_defaults_applied_when_no_config_file(tmp_path):
    config = load_config(config_path=str(tmp_path / "nonexistent.yml"))
    assert config["assistant"] == "anthropic"
    assert config["fetch_attempts"] == 3
    assert config["publish_attempts"] == 3
    assert config["store"] == "sqlite"
    assert config["checkout"] is False
    assert config["github_hosts"] == ["github.com", "www.github.com"]


def test_config_file_overrides_defaults(tmp_path):
    cfg = tmp_path / ".quickreview.yml"
    cfg.write_text("assistant: openai\nfetch_attempts: 5\ngitlab_hosts:\n  - git.example.org\n")
    config = load_config(config_path=str(cfg))
    assert config["assistant"] == "openai"
    assert config["fetch_attempts"] == 5
    assert config["gitlab_hosts"] == ["git.example.org"]


def test_default_lists_are_not_shared(tmp_path):
    first = load_config(config_path=str(tmp_path / "none.yml"))
    first["github_hosts"].append("ghe.corp.io")
    second = load_config(config_path=str(tmp_path / "none.yml"))
    assert "ghe.corp.io" not in second["github_hosts"]


def test_cli_overrides_config_file(tmp_path):
    cfg = tmp_path / ".quickreview.yml"
    cfg.write_text("assistant: openai\n")
    config = load_config(config_path=str(cfg), cli_overrides={"assistant": "anthropic"})
    assert config["assistant"] == "anthropic"


def test_none_cli_overrides_ignored(tmp_path):
    cfg = tmp_path / ".quickreview.yml"
    cfg.write_text("assistant: openai\n")
    config = load_config(config_path=str(cfg), cli_overrides={"assistant": None})
    assert config["assistant"] == "openai"


def test_non_mapping_file_is_rejected(tmp_path):
    cfg = tmp_path / ".quickreview.yml"
    cfg.write_text("- just\n- a list\n")
    with pytest.raises(ValueError, match="YAML mapping"):
        load_config(config_path=str(cfg))


def test_credentials_come_from_environment(tmp_path, monkeypatch):
    monkeypatch.setenv("ANTHROPIC_API_KEY", "ant-key")
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    cfg = tmp_path / ".quickreview.yml"
    cfg.write_text("anthropic_api_key: from-file\n")
    config = load_config(config_path=str(cfg))
    assert config["anthropic_api_key"] == "ant-key"
    assert config["openai_api_key"] is None


def test_prompt_template_none_by_default(tmp_path):
    config = load_config(config_path=str(tmp_path / "none.yml"))
    assert load_prompt_template(config) is None


def test_custom_prompt_template(tmp_path):
    template = tmp_path / "prompt.txt"
    template.write_text("Review {title}")
    assert load_prompt_template({"prompt_template": str(template)}) == "Review {title}"


def test_missing_prompt_template_raises(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_prompt_template({"prompt_template": str(tmp_path / "missing.txt")})

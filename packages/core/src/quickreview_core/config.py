import os
from pathlib import Path
from typing import Optional

import yaml

DEFAULT_CONFIG: dict = {
    "assistant": "anthropic",
    "model": None,  # None = the assistant's built-in default model
    "analyze_timeout": 600,  # wall-clock seconds for one assistant session
    "max_turns": 12,
    "fetch_attempts": 3,
    "publish_attempts": 3,
    "backoff_base": 1.0,
    "prompt_template": None,  # None = built-in user message; set to a path string to override
    "project_path": None,
    "checkout": False,
    "store": "sqlite",
    "store_path": ".quickreview.db",
    "gist_id": None,
    "lock_timeout": 300,
    "gitlab_id": None,  # section of the python-gitlab config file; None = its default
    "gitlab_config_files": None,
    "github_hosts": ["github.com", "www.github.com"],
    "gitlab_hosts": ["gitlab.com"],
    "skip_reviewed_heads": False,
    "dry_run": False,
    "max_workers": 4,
}

_LIST_KEYS = ("github_hosts", "gitlab_hosts")


def load_config(config_path: str = ".quickreview.yml", cli_overrides: Optional[dict] = None) -> dict:
    """
    Load configuration by merging (in order of precedence):
      1. Built-in defaults
      2. .quickreview.yml in the current directory
      3. CLI argument overrides
    """
    config = {**DEFAULT_CONFIG, **{key: list(DEFAULT_CONFIG[key]) for key in _LIST_KEYS}}

    path = Path(config_path)
    if path.exists():
        with open(path) as f:
            file_config = yaml.safe_load(f) or {}
        if not isinstance(file_config, dict):
            raise ValueError(f"{config_path} must contain a YAML mapping, got {type(file_config).__name__}")
        config.update(file_config)

    if cli_overrides:
        for key, value in cli_overrides.items():
            if value is not None:
                config[key] = value

    # Credentials come from the environment only, never from the YAML file.
    # GitLab credentials live in the python-gitlab config file (gitlab_id).
    config["github_token"] = os.environ.get("GITHUB_TOKEN")
    config["anthropic_api_key"] = os.environ.get("ANTHROPIC_API_KEY")
    config["openai_api_key"] = os.environ.get("OPENAI_API_KEY")

    return config


def load_prompt_template(config: dict) -> Optional[str]:
    """
    Load the user-message template override, or None for the built-in message.

    The template is formatted with ``{title}``, ``{description}``, ``{diff}``,
    ``{files}`` and ``{url}``; literal braces must be doubled.
    """
    custom_path = config.get("prompt_template")
    if not custom_path:
        return None
    p = Path(custom_path).expanduser()
    if not p.exists():
        raise FileNotFoundError(f"Prompt template not found: {custom_path}")
    return p.read_text()

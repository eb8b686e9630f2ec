"""GitHub token resolution with gh CLI fallback.

Resolution order (stops at first success):
  1. GITHUB_TOKEN environment variable (CI / explicit override)
  2. `gh auth token --hostname <host>` (GitHub CLI session, works after `gh auth login`)

GitLab credentials never pass through here: python-gitlab reads them from
its own configuration file.
"""

from __future__ import annotations

import logging
import os
import subprocess

logger = logging.getLogger(__name__)


def resolve_github_token(host: str = "github.com") -> str | None:
    """Return a GitHub token for ``host`` or None if no source is available.

    Never raises — callers should check for None and emit a UsageError.
    """
    token = os.environ.get("GITHUB_TOKEN")
    if token:
        return token

    try:
        result = subprocess.run(
            ["gh", "auth", "token", "--hostname", host],
            capture_output=True,
            text=True,
            timeout=5,
        )
    except (FileNotFoundError, subprocess.TimeoutExpired):
        # gh is not installed or hung.
        return None

    if result.returncode == 0 and result.stdout.strip():
        logger.debug("Resolved GitHub token for %s via gh CLI session.", host)
        return result.stdout.strip()
    return None

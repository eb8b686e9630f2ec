"""PR/MR URL parsing.

Accepted shapes::

    https://github.com/<owner>/<repo>/pull/<n>[/files|/commits...]
    https://gitlab.com/<group>[/<subgroup>...]/<project>/-/merge_requests/<n>[/diffs...]

Self-hosted instances are recognised through the ``github_hosts`` and
``gitlab_hosts`` configuration lists.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable
from urllib.parse import urlparse

from quickreview_core.errors import InvalidTarget
from quickreview_core.models import Platform

DEFAULT_GITHUB_HOSTS = ("github.com", "www.github.com")
DEFAULT_GITLAB_HOSTS = ("gitlab.com",)


@dataclass(frozen=True)
class PrUrl:
    platform: Platform
    host: str
    namespace: str
    repo: str
    number: int
    url: str

    @property
    def repo_path(self) -> str:
        return f"{self.namespace}/{self.repo}"

    def __str__(self) -> str:
        sep = "#" if self.platform is Platform.GITHUB else "!"
        return f"{self.repo_path}{sep}{self.number}"


def parse_pr_url(
    url: str,
    github_hosts: Iterable[str] = DEFAULT_GITHUB_HOSTS,
    gitlab_hosts: Iterable[str] = DEFAULT_GITLAB_HOSTS,
) -> PrUrl:
    """Parse ``url`` into a PrUrl or raise InvalidTarget."""
    raw = (url or "").strip()
    parsed = urlparse(raw)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise InvalidTarget(f"Not a PR/MR URL: {url!r}")

    host = parsed.netloc.lower()
    parts = [p for p in parsed.path.split("/") if p]

    if host in {h.lower() for h in github_hosts}:
        if len(parts) >= 4 and parts[2] == "pull" and parts[3].isdigit():
            return PrUrl(Platform.GITHUB, host, parts[0], parts[1], int(parts[3]), raw)
        raise InvalidTarget(f"Expected https://{host}/<owner>/<repo>/pull/<number>, got {url!r}")

    if host in {h.lower() for h in gitlab_hosts}:
        if "-" in parts:
            pos = parts.index("-")
            if pos >= 2 and len(parts) > pos + 2 and parts[pos + 1] == "merge_requests" and parts[pos + 2].isdigit():
                namespace = "/".join(parts[: pos - 1])
                return PrUrl(Platform.GITLAB, host, namespace, parts[pos - 1], int(parts[pos + 2]), raw)
        raise InvalidTarget(f"Expected https://{host}/<group>/<project>/-/merge_requests/<number>, got {url!r}")

    raise InvalidTarget(f"Unsupported host {host!r} in {url!r}")

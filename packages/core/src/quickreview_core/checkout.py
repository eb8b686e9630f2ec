"""Optional local working copy for the assistant's read_file tool."""

from __future__ import annotations

import logging
import subprocess
import tempfile
from contextlib import contextmanager
from pathlib import Path
from typing import TYPE_CHECKING, Iterator, Optional

from quickreview_core.errors import CheckoutError

if TYPE_CHECKING:
    from quickreview_core.models import ReviewTarget

logger = logging.getLogger(__name__)

_GIT_TIMEOUT = 300


def _git(args: list[str], cwd: str) -> None:
    try:
        subprocess.run(
            ["git", *args],
            cwd=cwd,
            check=True,
            capture_output=True,
            text=True,
            timeout=_GIT_TIMEOUT,
        )
    except FileNotFoundError as e:
        raise CheckoutError("git executable not found", detail="git") from e
    except subprocess.TimeoutExpired as e:
        raise CheckoutError(f"git {args[0]} timed out after {_GIT_TIMEOUT}s", detail="timeout") from e
    except subprocess.CalledProcessError as e:
        raise CheckoutError(f"git {args[0]} failed", detail=(e.stderr or "").strip()[:500]) from e


@contextmanager
def local_checkout(target: ReviewTarget, config: dict) -> Iterator[Optional[str]]:
    """Yield a working copy of the PR head, or None when no checkout is wanted.

    ``project_path`` (an existing clone the caller manages) wins over
    ``checkout: true``, which fetches the head into a temporary directory
    that is removed on exit.
    """
    project_path = config.get("project_path")
    if project_path:
        path = Path(project_path).expanduser()
        if not path.is_dir():
            raise CheckoutError(f"project_path {project_path} is not a directory", detail=str(path))
        yield str(path)
        return

    if not config.get("checkout"):
        yield None
        return

    clone_url = target.metadata.get("clone_url")
    fetch_ref = target.metadata.get("fetch_ref")
    if not clone_url or not fetch_ref:
        raise CheckoutError(f"No clone URL known for {target.url}", detail="metadata")

    with tempfile.TemporaryDirectory(prefix="quickreview-") as workdir:
        logger.info("Checking out %s into %s", fetch_ref, workdir)
        _git(["init", "--quiet"], workdir)
        _git(["fetch", "--quiet", "--depth", "1", clone_url, fetch_ref], workdir)
        _git(["checkout", "--quiet", "FETCH_HEAD"], workdir)
        yield workdir

"""Unified-diff helpers.

Both platforms hand back per-file patches that start at the first ``@@``
header (GitHub's ``files[].patch`` and GitLab's ``changes[].diff``), so this
module only has to understand hunk headers and the +/-/space line prefixes.
"""

from __future__ import annotations

import re

from quickreview_core.models import Hunk

# @@ -old_start[,old_count] +new_start[,new_count] @@ optional section heading
_HUNK_HEADER_RE = re.compile(r"^@@ -(\d+)(?:,(\d+))? \+(\d+)(?:,(\d+))? @@")


def parse_hunks(path: str, patch: str) -> tuple[Hunk, ...]:
    """Split ``patch`` into Hunks. An omitted count in the header means 1."""
    hunks: list[Hunk] = []
    header: tuple[int, int, int, int] | None = None
    body: list[str] = []

    def flush() -> None:
        if header is not None:
            old_start, old_count, new_start, new_count = header
            hunks.append(Hunk(path, old_start, old_count, new_start, new_count, "\n".join(body)))

    for line in patch.splitlines():
        match = _HUNK_HEADER_RE.match(line)
        if match:
            flush()
            header = (
                int(match.group(1)),
                int(match.group(2)) if match.group(2) is not None else 1,
                int(match.group(3)),
                int(match.group(4)) if match.group(4) is not None else 1,
            )
            body = []
        elif header is not None:
            body.append(line)
    flush()
    return tuple(hunks)


def get_patch_line_content(patch_text: str, target_line: int) -> str:
    """Return the source content of a specific new-file line number from a patch."""
    file_line: int | None = None
    for line in patch_text.splitlines():
        match = _HUNK_HEADER_RE.match(line)
        if match:
            file_line = int(match.group(3))
            continue
        if line.startswith("-") and not line.startswith("---"):
            continue  # removed line has no new-file line number
        if line.startswith("\\"):
            continue  # "\ No newline at end of file"
        if file_line is not None:
            if file_line == target_line:
                return line[1:] if line and line[0] in ("+", " ") else line
            file_line += 1
    return ""

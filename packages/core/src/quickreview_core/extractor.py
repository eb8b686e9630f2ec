"""Turn an assistant reply into a structured, validated ReviewResult.

Reply format, version 1, in order of preference:

1. The first ``submit_review`` tool call with a summary: ``summary``, ``verdict`` and
   ``line_comments`` ([{file, line, body}]) are taken as given.
2. Free text, parsed tolerantly::

       **Summary:** Looks good overall.
       - `src/app.py:42`: consider renaming x
       src/util.py (line 7) - unused import
           continuation lines are indented
       Verdict: request-changes

   Without a ``Verdict:`` line, an uppercase APPROVE or REQUEST_CHANGES
   standing alone on its own line is taken as the verdict.

Whatever the source, every comment is checked against the diff: a comment
on a line no hunk covers cannot be posted inline, so it is dropped (and
logged) rather than failing the whole review. Output ordering depends only
on content, never on reply order.
"""

from __future__ import annotations

import logging
import re
from typing import Any, Iterable, Optional

from quickreview_core.assistant.session import TOOL_SUBMIT_REVIEW
from quickreview_core.errors import ExtractUnparseable
from quickreview_core.models import (
    AssistantReply,
    DroppedComment,
    LineComment,
    ReviewResult,
    ReviewTarget,
    Verdict,
)

logger = logging.getLogger(__name__)

REPLY_FORMAT_VERSION = 1

_DECOR = r"(?:\*\*|__|`)?"

_SUMMARY_RE = re.compile(
    r"^\s*(?:[-*+]\s+)?(?:#{1,6}\s*)?(?:\*\*|__)?summary(?:\*\*|__)?\s*"
    r"(?::(?:\*\*|__)?\s*(?P<rest>.*?))?\s*$",
    re.IGNORECASE,
)

_VERDICT_LINE_RE = re.compile(
    r"^\s*(?:[-*+]\s+)?(?:#{1,6}\s*)?(?:\*\*|__)?verdict(?:\*\*|__)?\s*:(?:\*\*|__)?\s*(?P<value>.+?)\s*$",
    re.IGNORECASE,
)

# A bare section label such as "Findings:" or "## Comments" ends the summary.
_LABEL_RE = re.compile(
    r"^\s*(?:#{1,6}\s*)?(?:\*\*|__)?(?:findings|comments|line comments|issues)(?:\*\*|__)?\s*:?(?:\*\*|__)?\s*$",
    re.IGNORECASE,
)

_HEADING_RE = re.compile(r"^\s*#{1,6}\s")

_FINDING_RE = re.compile(
    r"^\s*(?:(?:[-*+•]|\d+[.)])\s+)?" + _DECOR
    + r"(?P<path>[\w./@+-]+)" + _DECOR
    + r"(?:"
    r":(?P<line>\d+)(?:-\d+)?"
    r"|\s*\((?:line|l\.?)\s*(?P<line_paren>\d+)(?:\s*-\s*\d+)?\)"
    r")" + _DECOR
    + r"(?:\s*[:\-–—]\s*|\s+|$)(?P<body>.*)$",
    re.IGNORECASE,
)

# Uppercase tokens only: "approve" in prose is not a verdict.
_REQUEST_CHANGES_TOKEN_RE = re.compile(r"\b(?:REQUEST[_ ]CHANGES|CHANGES[_ ]REQUESTED)\b")
_APPROVE_TOKEN_RE = re.compile(r"\bAPPROVED?\b")
_NEGATION_RE = re.compile(r"\b(?:NOT|NO|NEVER|CANNOT|CAN'T|DON'T|WON'T|UNABLE TO)\b")

# A verdict token alone on its line, e.g. "APPROVED" or "**REQUEST_CHANGES**".
_STANDALONE_VERDICT_RE = re.compile(
    r"^\s*(?:[-*+]\s+)?(?:#{1,6}\s*)?(?:\*\*|__|`)?"
    r"(?:REQUEST[_ ]CHANGES|CHANGES[_ ]REQUESTED|APPROVED?)"
    r"(?:\*\*|__|`)?[.!]?\s*$"
)

_VERDICT_WORDS = {
    "approve": Verdict.APPROVE,
    "approved": Verdict.APPROVE,
    "request-changes": Verdict.REQUEST_CHANGES,
    "request-change": Verdict.REQUEST_CHANGES,
    "changes-requested": Verdict.REQUEST_CHANGES,
    "comment-only": Verdict.COMMENT_ONLY,
    "comment": Verdict.COMMENT_ONLY,
    "comments": Verdict.COMMENT_ONLY,
}


def extract(reply: AssistantReply, target: ReviewTarget) -> ReviewResult:
    """Build the ReviewResult for ``target`` from ``reply``.

    Raises ExtractUnparseable when no summary can be located.
    """
    submitted = _first_submission(reply)
    summary = None
    if submitted is not None:
        summary = _as_text(submitted.get("summary"))
        verdict = parse_verdict(submitted.get("verdict"))
        candidates = _submitted_comments(submitted.get("line_comments"))

    if not summary:
        parsed = _parse_text(reply.text)
        if parsed is None:
            raise ExtractUnparseable(
                "Could not locate a review summary in the assistant reply",
                detail=reply.excerpt() or "(empty reply)",
            )
        summary, verdict, candidates = parsed

    comments, dropped = validate_comments(candidates, target)
    if candidates and not comments and verdict is not Verdict.COMMENT_ONLY:
        logger.warning("All %d comment(s) were dropped; downgrading verdict to comment-only", len(candidates))
        verdict = Verdict.COMMENT_ONLY

    logger.info(
        "Extracted %d comment(s) for %s (%d dropped), verdict %s",
        len(comments),
        target.url,
        len(dropped),
        verdict.value,
    )
    return ReviewResult(
        summary=summary,
        comments=tuple(comments),
        verdict=verdict,
        head_sha=target.head_sha,
        dropped=tuple(dropped),
    )


def validate_comments(
    candidates: Iterable[tuple[Any, Any, Any]], target: ReviewTarget
) -> tuple[list[LineComment], list[DroppedComment]]:
    """Keep comments anchored inside a hunk; return (kept sorted, dropped)."""
    kept: list[LineComment] = []
    dropped: list[DroppedComment] = []
    seen: set[LineComment] = set()

    for raw_file, raw_line, raw_body in candidates:
        file = normalize_path(raw_file)
        line = _as_line(raw_line)
        body = _as_text(raw_body)
        if not file or line is None or not body:
            dropped.append(DroppedComment(str(raw_file or ""), line, str(raw_body or ""), "malformed"))
            logger.warning("Dropped malformed comment: file=%r line=%r", raw_file, raw_line)
            continue
        if not target.covers(file, line):
            dropped.append(DroppedComment(file, line, body, "outside-diff"))
            logger.warning("Dropped comment on %s:%d: line is not part of the diff", file, line)
            continue
        comment = LineComment(file=file, line=line, body=body)
        if comment in seen:
            dropped.append(DroppedComment(file, line, body, "duplicate"))
            continue
        seen.add(comment)
        kept.append(comment)

    kept.sort()
    return kept, dropped


def parse_verdict(value: Any) -> Verdict:
    """Map a verdict as written by the assistant onto Verdict; default comment-only."""
    text = _as_text(value)
    if not text:
        return Verdict.COMMENT_ONLY
    word = re.sub(r"[\s_]+", "-", text.strip("*_`\"'. ").lower())
    if word in _VERDICT_WORDS:
        return _VERDICT_WORDS[word]
    return _token_verdict(text.upper())


def normalize_path(path: Any) -> str:
    p = _as_text(path).strip("`*")
    while p.startswith("./"):
        p = p[2:]
    return p.lstrip("/")


# ---------------------------------------------------------------------- #
# Tool-call replies                                                       #
# ---------------------------------------------------------------------- #


def _first_submission(reply: AssistantReply) -> Optional[dict]:
    """The first submit_review call with a summary; later ones were ignored by the session."""
    for call in reply.tool_calls:
        if call.name == TOOL_SUBMIT_REVIEW and _as_text((call.arguments or {}).get("summary")):
            return dict(call.arguments)
    return None


def _submitted_comments(value: Any) -> list[tuple[Any, Any, Any]]:
    if not isinstance(value, list):
        return []
    candidates = []
    for item in value:
        if isinstance(item, dict):
            candidates.append(
                (item.get("file") or item.get("path"), item.get("line"), item.get("body") or item.get("comment"))
            )
        else:
            candidates.append((None, None, item))
    return candidates


# ---------------------------------------------------------------------- #
# Free-text replies                                                       #
# ---------------------------------------------------------------------- #


def _parse_text(text: str) -> Optional[tuple[str, Verdict, list[tuple[Any, Any, Any]]]]:
    lines = (text or "").splitlines()
    located = _find_summary(lines)
    if located is None:
        return None
    summary, consumed = located

    findings: list[tuple[Any, Any, Any]] = []
    verdict: Verdict | None = None
    standalone: Verdict | None = None
    current: list | None = None

    for i, line in enumerate(lines):
        if i in consumed:
            current = None
            continue
        finding = _match_finding(line)
        if finding is not None:
            path, line_no, body = finding
            current = [path, line_no, [body] if body else []]
            findings.append(current)
            continue
        verdict_line = _VERDICT_LINE_RE.match(line)
        if verdict_line:
            verdict = parse_verdict(verdict_line.group("value"))
            current = None
            continue
        if _STANDALONE_VERDICT_RE.match(line):
            standalone = _token_verdict(line)
            current = None
            continue
        # Indented lines continue the previous finding's body.
        if current is not None and line.strip() and line[:1].isspace():
            current[2].append(line.strip())
            continue
        current = None

    if verdict is None:
        verdict = standalone or Verdict.COMMENT_ONLY

    candidates = [(path, line_no, "\n".join(body)) for path, line_no, body in findings]
    return summary, verdict, candidates


def _find_summary(lines: list[str]) -> Optional[tuple[str, set[int]]]:
    for start, line in enumerate(lines):
        m = _SUMMARY_RE.match(line)
        if m:
            break
    else:
        return None

    rest = (m.group("rest") or "").strip().rstrip("*_").strip()
    # "Summary: text" continues until a blank line; a "## Summary" section
    # runs until the next heading, label, finding or verdict.
    section = not rest
    parts = [rest] if rest else []
    consumed = {start}
    for i in range(start + 1, len(lines)):
        line = lines[i]
        if _is_boundary(line):
            break
        if not line.strip():
            if not section:
                break
            if parts:
                parts.append("")
            consumed.add(i)
            continue
        parts.append(line.strip())
        consumed.add(i)

    summary = "\n".join(parts).strip()
    summary = re.sub(r"\n{3,}", "\n\n", summary)
    if not summary:
        return None
    return summary, consumed


def _is_boundary(line: str) -> bool:
    return bool(
        _HEADING_RE.match(line)
        or _LABEL_RE.match(line)
        or _VERDICT_LINE_RE.match(line)
        or _STANDALONE_VERDICT_RE.match(line)
        or _match_finding(line) is not None
    )


def _match_finding(line: str) -> Optional[tuple[str, int, str]]:
    m = _FINDING_RE.match(line)
    if not m:
        return None
    path = m.group("path")
    if "." not in path.strip(".") and "/" not in path:
        return None
    line_no = int(m.group("line") or m.group("line_paren"))
    body = m.group("body").strip()
    return path, line_no, body


def _token_verdict(text: str) -> Verdict:
    # "NOT APPROVED" or "no changes requested" commit to nothing.
    if _NEGATION_RE.search(text):
        return Verdict.COMMENT_ONLY
    if _REQUEST_CHANGES_TOKEN_RE.search(text):
        return Verdict.REQUEST_CHANGES
    if _APPROVE_TOKEN_RE.search(text):
        return Verdict.APPROVE
    return Verdict.COMMENT_ONLY


def _as_text(value: Any) -> str:
    return value.strip() if isinstance(value, str) else ""


def _as_line(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value if value > 0 else None
    if isinstance(value, str) and value.strip().isdigit():
        return int(value.strip()) or None
    return None

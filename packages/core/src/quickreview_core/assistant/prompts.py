from __future__ import annotations

import string
from typing import TYPE_CHECKING

from quickreview_core.errors import PromptTemplateError

if TYPE_CHECKING:
    from quickreview_core.models import ReviewTarget

TEMPLATE_FIELDS = ("url", "title", "description", "files", "diff")

SYSTEM_PROMPT = """You are a strict and precise senior code reviewer.
You are reviewing one pull/merge request. Use the tools to read the change
and, when a working copy is available, the surrounding files.

Rules:
- Focus on added lines (starting with '+') for direct violations.
- Also consider implications of removed lines (starting with '-') — e.g. deleted null checks,
  removed error handling, dropped permission guards.
- Only comment on lines that are part of the diff, using their line number in the new file.
- Do not comment on code that already follows best practices.
- Avoid assumptions when context is unclear. Be concise and actionable.

When you are done, call submit_review exactly once with:
- summary: a short overall assessment in GitHub-flavored markdown
- verdict: "approve", "request-changes" or "comment-only"
- line_comments: a list of {"file", "line", "body"} objects

If you cannot call tools, answer in plain text instead:

Summary: <overall assessment>
<path>:<line>: <comment>
Verdict: <approve|request-changes|comment-only>"""

_DEFAULT_USER_TEMPLATE = """Review {url}

## Title
{title}

## Description
{description}

## Changed files
{files}

## Diff
{diff}"""


def check_template(template: str) -> None:
    """Raise PromptTemplateError unless ``template`` only uses the known placeholders.

    Literal braces must be doubled; attribute or index access is not allowed.
    """
    try:
        fields = [name for _, name, _, _ in string.Formatter().parse(template) if name is not None]
    except ValueError as e:
        raise PromptTemplateError(f"Prompt template is malformed: {e}", detail="use {{ and }} for literal braces") from e
    unknown = sorted({name for name in fields if name not in TEMPLATE_FIELDS})
    if unknown:
        raise PromptTemplateError(
            f"Prompt template uses unknown placeholder(s): {', '.join(repr(n) for n in unknown)}",
            detail=f"known placeholders: {', '.join(TEMPLATE_FIELDS)}",
        )


def build_user_prompt(target: ReviewTarget, template: str | None = None) -> str:
    """Render the first user message for ``target``.

    ``template`` overrides the built-in message; it is formatted with the
    same placeholders, so literal braces must be doubled.
    """
    if template:
        check_template(template)
    files = "\n".join(f"- {f.path} ({f.status})" for f in target.files) or "(none)"
    return (template or _DEFAULT_USER_TEMPLATE).format(
        url=target.url,
        title=target.title,
        description=target.description or "(no description)",
        files=files,
        diff=target.diff,
    )

"""One assistant analysis session: the tool set it offers and the trace it records.

A session is opened per run and closed once the reply is captured, on
timeout, or on error (see open_session). Tool results are plain strings; the
session never interprets what the assistant submits.
"""

from __future__ import annotations

import logging
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any, Iterator, Mapping

from quickreview_core.models import ToolCall

if TYPE_CHECKING:
    from quickreview_core.models import ReviewTarget

logger = logging.getLogger(__name__)

TOOL_GET_PR_CONTEXT = "get_pr_context"
TOOL_READ_FILE = "read_file"
TOOL_SUBMIT_REVIEW = "submit_review"

_CONTEXT_PARTS = ("title", "description", "diff", "files")
_MAX_FILE_CHARS = 20_000


@dataclass(frozen=True)
class ToolSpec:
    """SDK-neutral tool declaration; each assistant converts it to its wire shape."""

    name: str
    description: str
    parameters: Mapping[str, Any] = field(default_factory=dict)


GET_PR_CONTEXT = ToolSpec(
    name=TOOL_GET_PR_CONTEXT,
    description="Return one part of the pull/merge request: title, description, diff or files.",
    parameters={
        "type": "object",
        "properties": {"part": {"type": "string", "enum": list(_CONTEXT_PARTS)}},
        "required": ["part"],
    },
)

READ_FILE = ToolSpec(
    name=TOOL_READ_FILE,
    description="Read a file from the checked-out head revision, by repository-relative path.",
    parameters={
        "type": "object",
        "properties": {"path": {"type": "string"}},
        "required": ["path"],
    },
)

SUBMIT_REVIEW = ToolSpec(
    name=TOOL_SUBMIT_REVIEW,
    description="Submit the finished review. Call exactly once, at the end.",
    parameters={
        "type": "object",
        "properties": {
            "summary": {"type": "string"},
            "verdict": {"type": "string", "enum": ["approve", "request-changes", "comment-only"]},
            "line_comments": {
                "type": "array",
                "items": {
                    "type": "object",
                    "properties": {
                        "file": {"type": "string"},
                        "line": {"type": "integer"},
                        "body": {"type": "string"},
                    },
                    "required": ["file", "line", "body"],
                },
            },
        },
        "required": ["summary", "verdict"],
    },
)


class AssistantSession:
    def __init__(self, target: ReviewTarget, prompt: str, workdir: str | None = None):
        self.id = uuid.uuid4().hex
        self.target = target
        self.prompt = prompt
        self.workdir = Path(workdir).resolve() if workdir else None
        self.trace: list[ToolCall] = []
        self.submitted = False
        self.closed = False

    @property
    def tools(self) -> list[ToolSpec]:
        tools = [GET_PR_CONTEXT]
        if self.workdir is not None:
            tools.append(READ_FILE)
        tools.append(SUBMIT_REVIEW)
        return tools

    def call_tool(self, name: str, arguments: Mapping[str, Any]) -> str:
        """Run one tool call, record it in the trace and return its result text.

        Bad arguments are reported back to the assistant as the result rather
        than raised: the model can correct itself on the next turn.
        """
        if self.closed:
            raise RuntimeError(f"Session {self.id} is closed")
        arguments = dict(arguments or {})
        if name == TOOL_GET_PR_CONTEXT:
            result = self._get_pr_context(arguments.get("part"))
        elif name == TOOL_READ_FILE and self.workdir is not None:
            result = self._read_file(arguments.get("path"))
        elif name == TOOL_SUBMIT_REVIEW and self.submitted:
            result = "Error: a review was already submitted; this call is ignored."
        elif name == TOOL_SUBMIT_REVIEW and not str(arguments.get("summary") or "").strip():
            result = "Error: summary is required."
        elif name == TOOL_SUBMIT_REVIEW:
            self.submitted = True
            result = "Review received."
        else:
            result = f"Error: unknown tool {name!r}"
        self.trace.append(ToolCall(name=name, arguments=arguments, result=result))
        logger.debug("Session %s: %s(%s)", self.id[:8], name, ", ".join(arguments))
        return result

    def close(self) -> None:
        self.closed = True

    def _get_pr_context(self, part: Any) -> str:
        t = self.target
        if part == "title":
            return t.title
        if part == "description":
            return t.description or "(no description)"
        if part == "diff":
            return t.diff
        if part == "files":
            return "\n".join(f"{f.path} ({f.status})" for f in t.files)
        return f"Error: part must be one of {', '.join(_CONTEXT_PARTS)}"

    def _read_file(self, path: Any) -> str:
        if not isinstance(path, str) or not path.strip():
            return "Error: path is required"
        candidate = (self.workdir / path.strip().lstrip("/")).resolve()
        # Confine reads to the working copy; "../" or symlinks must not escape it.
        if candidate != self.workdir and self.workdir not in candidate.parents:
            return f"Error: {path} is outside the working copy"
        if not candidate.is_file():
            return f"Error: {path} not found"
        try:
            content = candidate.read_text(encoding="utf-8", errors="replace")
        except OSError as e:
            return f"Error: could not read {path}: {e}"
        if len(content) > _MAX_FILE_CHARS:
            return content[:_MAX_FILE_CHARS] + "\n... (truncated)"
        return content


@contextmanager
def open_session(target: ReviewTarget, prompt: str, workdir: str | None = None) -> Iterator[AssistantSession]:
    session = AssistantSession(target, prompt, workdir)
    logger.debug("Opened assistant session %s for %s", session.id[:8], target.url)
    try:
        yield session
    finally:
        session.close()
        logger.debug("Closed assistant session %s (%d tool call(s))", session.id[:8], len(session.trace))

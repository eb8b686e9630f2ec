"""Base assistant implementing the Template Method pattern.

Both assistant backends share the same session algorithm:
    analyze() → build_user_prompt() → open_session()
              → loop: _call_api()  ← only this differs per backend
                      session.call_tool() for each requested tool
                      _tool_messages()  ← and the wire shape of tool results
              → AssistantReply (verbatim text + tool-call trace)

Subclasses implement:
  - __init__: build the SDK client
  - _call_api: one raw request returning an AssistantTurn
  - _tool_messages: the messages that hand tool results back

The loop never interprets what the assistant says; turning the reply into a
ReviewResult is the extractor's job.
"""

from __future__ import annotations

import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Callable, ClassVar, Mapping

from quickreview_core.assistant.prompts import SYSTEM_PROMPT, build_user_prompt
from quickreview_core.assistant.session import open_session
from quickreview_core.errors import AnalyzeTimeout, AnalyzeUnavailable
from quickreview_core.models import AssistantReply

if TYPE_CHECKING:
    from quickreview_core.assistant.session import ToolSpec
    from quickreview_core.models import ReviewTarget

logger = logging.getLogger(__name__)

_MAX_TOKENS = 4096


@dataclass
class PendingToolCall:
    id: str
    name: str
    arguments: Mapping[str, Any] = field(default_factory=dict)


@dataclass
class AssistantTurn:
    text: str
    tool_calls: list[PendingToolCall] = field(default_factory=list)
    raw: Any = None


class BaseAssistant(ABC):
    DEFAULT_MODEL: ClassVar[str]
    MAX_TOKENS: int = _MAX_TOKENS
    # SDK exceptions mapped onto the analyze failure taxonomy. Timeouts are
    # checked first since SDKs usually derive them from their connection error.
    timeout_errors: ClassVar[tuple[type[BaseException], ...]] = ()
    api_errors: ClassVar[tuple[type[BaseException], ...]] = ()

    def __init__(
        self,
        model: str | None = None,
        timeout: float = 600,
        max_turns: int = 12,
        prompt_template: str | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.model = model or self.DEFAULT_MODEL
        self.timeout = timeout
        self.max_turns = max_turns
        self.prompt_template = prompt_template
        self._clock = clock

    # ------------------------------------------------------------------ #
    # Public interface                                                     #
    # ------------------------------------------------------------------ #

    def analyze(self, project_path: str | None, target: ReviewTarget) -> AssistantReply:
        """Run one assistant session over ``target`` and return its raw reply.

        ``project_path`` is the working copy offered through read_file, or
        None when the review runs on the diff alone.
        """
        prompt = build_user_prompt(target, self.prompt_template)
        deadline = self._clock() + self.timeout
        texts: list[str] = []

        with open_session(target, prompt, project_path) as session:
            messages: list[Any] = [{"role": "user", "content": prompt}]
            for turn_no in range(1, self.max_turns + 1):
                remaining = deadline - self._clock()
                if remaining <= 0:
                    raise AnalyzeTimeout(
                        f"{self.__class__.__name__} exceeded {self.timeout}s",
                        detail=f"turn {turn_no}",
                    )
                try:
                    turn = self._call_api(SYSTEM_PROMPT, messages, session.tools, remaining)
                except self.timeout_errors as e:
                    raise AnalyzeTimeout(
                        f"{self.__class__.__name__} request timed out: {e}", detail=f"turn {turn_no}"
                    ) from e
                except self.api_errors as e:
                    raise AnalyzeUnavailable(
                        f"{self.__class__.__name__} API error: {e}", detail=str(getattr(e, "status_code", "") or "")
                    ) from e

                if turn.text:
                    texts.append(turn.text)
                if not turn.tool_calls:
                    break
                results = [session.call_tool(c.name, c.arguments) for c in turn.tool_calls]
                if session.submitted:
                    break
                messages.extend(self._tool_messages(turn, results))
            else:
                logger.warning(
                    "%s stopped after %d turns without submitting a review",
                    self.__class__.__name__,
                    self.max_turns,
                )

            return AssistantReply(
                text="\n\n".join(texts),
                tool_calls=tuple(session.trace),
                session_id=session.id,
                model=self.model,
            )

    # ------------------------------------------------------------------ #
    # Abstract: implement in each backend                                 #
    # ------------------------------------------------------------------ #

    @abstractmethod
    def _call_api(self, system_prompt: str, messages: list, tools: list[ToolSpec], timeout: float) -> AssistantTurn:
        """Make a single request and return the assistant's turn.

        Should raise the SDK's own exceptions; analyze() classifies them.
        """

    @abstractmethod
    def _tool_messages(self, turn: AssistantTurn, results: list[str]) -> list:
        """Return the messages echoing ``turn`` and answering its tool calls."""

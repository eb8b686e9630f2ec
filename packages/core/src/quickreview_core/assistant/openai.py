from __future__ import annotations

import json
import logging

from openai import APIError, APITimeoutError, OpenAI

from quickreview_core.assistant.base import AssistantTurn, BaseAssistant, PendingToolCall

logger = logging.getLogger(__name__)


class OpenAIAssistant(BaseAssistant):
    DEFAULT_MODEL = "gpt-4o"
    TEMPERATURE = 0.2
    timeout_errors = (APITimeoutError,)
    api_errors = (APIError,)

    def __init__(self, api_key: str | None, **kwargs):
        super().__init__(**kwargs)
        self.client = OpenAI(api_key=api_key, max_retries=0)

    def _call_api(self, system_prompt, messages, tools, timeout):
        response = self.client.chat.completions.create(
            model=self.model,
            messages=[{"role": "system", "content": system_prompt}, *messages],
            tools=[
                {
                    "type": "function",
                    "function": {"name": t.name, "description": t.description, "parameters": dict(t.parameters)},
                }
                for t in tools
            ],
            temperature=self.TEMPERATURE,
            max_tokens=self.MAX_TOKENS,
            timeout=timeout,
        )
        message = response.choices[0].message
        calls = [
            PendingToolCall(id=tc.id, name=tc.function.name, arguments=self._arguments(tc.function.arguments))
            for tc in message.tool_calls or []
        ]
        return AssistantTurn(text=(message.content or "").strip(), tool_calls=calls, raw=message)

    def _tool_messages(self, turn, results):
        message = turn.raw
        echoed = {
            "role": "assistant",
            "content": message.content,
            "tool_calls": [
                {
                    "id": tc.id,
                    "type": "function",
                    "function": {"name": tc.function.name, "arguments": tc.function.arguments},
                }
                for tc in message.tool_calls or []
            ],
        }
        answers = [
            {"role": "tool", "tool_call_id": call.id, "content": result}
            for call, result in zip(turn.tool_calls, results)
        ]
        return [echoed, *answers]

    @staticmethod
    def _arguments(raw: str | None) -> dict:
        # Function arguments arrive as a JSON string the model wrote itself.
        try:
            parsed = json.loads(raw or "{}")
        except json.JSONDecodeError:
            logger.warning("OpenAIAssistant: tool arguments are not valid JSON: %s", (raw or "")[:200])
            return {}
        return parsed if isinstance(parsed, dict) else {}

from __future__ import annotations

from anthropic import Anthropic, APIError, APITimeoutError
from anthropic.types import TextBlock, ToolUseBlock

from quickreview_core.assistant.base import AssistantTurn, BaseAssistant, PendingToolCall


class AnthropicAssistant(BaseAssistant):
    DEFAULT_MODEL = "claude-sonnet-4-20250514"
    TEMPERATURE = 0.3
    timeout_errors = (APITimeoutError,)
    api_errors = (APIError,)

    def __init__(self, api_key: str | None, **kwargs):
        super().__init__(**kwargs)
        # The orchestrator owns the analyze retry policy; the SDK must not add its own.
        self.client = Anthropic(api_key=api_key, max_retries=0)

    def _call_api(self, system_prompt, messages, tools, timeout):
        response = self.client.messages.create(
            model=self.model,
            system=system_prompt,
            messages=messages,
            tools=[{"name": t.name, "description": t.description, "input_schema": dict(t.parameters)} for t in tools],
            temperature=self.TEMPERATURE,
            max_tokens=self.MAX_TOKENS,
            timeout=timeout,
        )
        text = "".join(block.text for block in response.content if isinstance(block, TextBlock))
        calls = [
            PendingToolCall(id=block.id, name=block.name, arguments=block.input or {})
            for block in response.content
            if isinstance(block, ToolUseBlock)
        ]
        return AssistantTurn(text=text.strip(), tool_calls=calls, raw=response.content)

    def _tool_messages(self, turn, results):
        return [
            {"role": "assistant", "content": turn.raw},
            {
                "role": "user",
                "content": [
                    {"type": "tool_result", "tool_use_id": call.id, "content": result}
                    for call, result in zip(turn.tool_calls, results)
                ],
            },
        ]

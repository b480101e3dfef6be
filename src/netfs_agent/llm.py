# llm.py
# Reasoning collaborator: an OpenAI-compatible chat completions client
# (OpenRouter by default) whose replies are normalized to ModelResponse.
#
# The loop only ever sees stop_reason "end_turn" or "tool_use"; provider
# finish reasons stay in this module.

from typing import Any

from openai import OpenAI

from netfs_agent.config import OPENROUTER_BASE_URL
from netfs_agent.models import ModelResponse, ToolCall


def parse_completion(completion: Any) -> ModelResponse:
    """Normalize a chat.completions response into a ModelResponse."""
    if not completion.choices:
        raise ValueError("Model returned no choices.")

    choice = completion.choices[0]
    message = choice.message
    tool_calls = [
        ToolCall(
            id=call.id,
            name=call.function.name,
            arguments=call.function.arguments or "{}",
        )
        for call in (message.tool_calls or [])
    ]
    stop_reason = "tool_use" if tool_calls else "end_turn"
    return ModelResponse(
        stop_reason=stop_reason,
        text=(message.content or "").strip(),
        tool_calls=tool_calls,
    )


class ReasoningClient:
    """
    Request/response wrapper around an OpenRouter-hosted model.

    Example:
        client = ReasoningClient("anthropic/claude-3.5-haiku")
        response = client.create(system_prompt, TOOLS, state.messages)
    """

    def __init__(
        self,
        model: str,
        *,
        api_key: str | None = None,
        base_url: str = OPENROUTER_BASE_URL,
        max_tokens: int = 8000,
        client: OpenAI | None = None,
    ) -> None:
        self.model = model
        self.max_tokens = max_tokens
        self._client = client or OpenAI(base_url=base_url, api_key=api_key)

    def create(
        self,
        system: str,
        tools: list[dict[str, Any]],
        messages: list[dict[str, Any]],
    ) -> ModelResponse:
        completion = self._client.chat.completions.create(
            model=self.model,
            max_tokens=self.max_tokens,
            messages=[{"role": "system", "content": system}, *messages],
            tools=tools,
        )
        return parse_completion(completion)

# app/llm/client.py
from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from openai import OpenAI

from app.config import get_settings


@dataclass
class ToolCall:
    id: str
    name: str
    arguments: str  # raw JSON text as sent by the model


@dataclass
class LLMToolResponse:
    content: Optional[str]
    tool_calls: List[ToolCall] = field(default_factory=list)

    def assistant_message(self) -> Dict[str, Any]:
        """
        The assistant turn to append to the transcript before tool results.
        """
        message: Dict[str, Any] = {"role": "assistant", "content": self.content or ""}
        if self.tool_calls:
            message["tool_calls"] = [
                {
                    "id": call.id,
                    "type": "function",
                    "function": {"name": call.name, "arguments": call.arguments},
                }
                for call in self.tool_calls
            ]
        return message


class LLMClient(ABC):
    """
    Simple abstraction so we can swap providers if needed.
    """

    @abstractmethod
    def chat_with_tools(
        self,
        messages: List[Dict[str, Any]],
        tools: List[Dict[str, Any]],
        temperature: float = 0.2,
        model: Optional[str] = None,
    ) -> LLMToolResponse:
        """
        One model round with function tools available.
        The caller runs the tool calls and comes back with the results.
        """
        ...


class OpenAILLMClient(LLMClient):
    """
    OpenAI implementation using the official Python client.
    Works with any OpenAI-compatible endpoint via OPENAI_BASE_URL.
    """

    def __init__(self, model: Optional[str] = None):
        settings = get_settings()
        if not settings.openai_api_key:
            raise RuntimeError(
                "OPENAI_API_KEY is not set in environment (.env)."
            )

        self.client = OpenAI(api_key=settings.openai_api_key, base_url=settings.openai_base_url)
        self.default_model = model or settings.llm_model

    def chat_with_tools(
        self,
        messages: List[Dict[str, Any]],
        tools: List[Dict[str, Any]],
        temperature: float = 0.2,
        model: Optional[str] = None,
    ) -> LLMToolResponse:
        completion = self.client.chat.completions.create(
            model=model or self.default_model,
            messages=messages,
            tools=tools,
            tool_choice="auto",
            temperature=temperature,
        )
        message = completion.choices[0].message
        calls = [
            ToolCall(
                id=call.id,
                name=call.function.name,
                arguments=call.function.arguments or "{}",
            )
            for call in (message.tool_calls or [])
        ]
        return LLMToolResponse(content=message.content, tool_calls=calls)

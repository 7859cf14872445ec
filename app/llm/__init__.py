# app/llm/__init__.py
from .client import LLMClient, LLMToolResponse, OpenAILLMClient, ToolCall

__all__ = ["LLMClient", "LLMToolResponse", "OpenAILLMClient", "ToolCall"]

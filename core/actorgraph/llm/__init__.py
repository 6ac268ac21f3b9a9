"""LLM provider abstraction used by model-backed nodes."""

from actorgraph.llm.provider import LLMProvider, LLMResponse, Tool

__all__ = ["LLMProvider", "LLMResponse", "Tool"]

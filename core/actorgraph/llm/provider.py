"""LLM Provider abstraction for pluggable LLM backends.

The engine ships no concrete client. Model-backed nodes depend only on
this interface; applications plug in whatever SDK they use.
"""

import asyncio
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any


@dataclass
class LLMResponse:
    """What a provider returns for one completion."""

    content: str
    model: str
    input_tokens: int = 0
    output_tokens: int = 0
    stop_reason: str = ""
    raw_response: Any = None


@dataclass
class Tool:
    """A callable tool with a JSON-schema description of its parameters."""

    name: str
    description: str
    parameters: dict[str, Any] = field(default_factory=dict)
    func: Callable[..., Any] | None = None


class LLMProvider(ABC):
    """
    Interface a model-backed node talks to.

    Implementations handle authentication, request formatting, token
    accounting and their own transport-level retries. Node-level retries
    and timeouts are applied by the engine on top.
    """

    @abstractmethod
    def complete(
        self,
        messages: list[dict[str, Any]],
        system: str = "",
        tools: list[Tool] | None = None,
        max_tokens: int = 1024,
        json_mode: bool = False,
    ) -> LLMResponse:
        """
        Run one blocking completion.

        ``messages`` are role/content dicts in call order. ``tools`` are
        advertised to the model but never executed by the provider.
        ``json_mode`` asks for a JSON object as the response content.
        """

    async def acomplete(
        self,
        messages: list[dict[str, Any]],
        system: str = "",
        tools: list[Tool] | None = None,
        max_tokens: int = 1024,
        json_mode: bool = False,
    ) -> LLMResponse:
        """
        Async completion.

        Default implementation runs complete() in a worker thread.
        Subclasses with a native async client SHOULD override.
        """
        return await asyncio.to_thread(
            self.complete,
            messages,
            system,
            tools,
            max_tokens,
            json_mode,
        )

"""
Mock LLM infrastructure for deterministic testing.

Provides MockCompleter: a programmable TextCompleter with queued responses,
a call log, and failure injection.
"""

from __future__ import annotations

from typing import Any

from structmem.llm import TextCompleter


class MockCompleter(TextCompleter):
    """
    Programmable completer for deterministic testing.

    Usage:
        mock = MockCompleter()
        mock.preset_response("[profile:age] 25岁")
        text = await mock.complete(prompt)
        assert text == "[profile:age] 25岁"
    """

    def __init__(self) -> None:
        self._responses: list[Any] = []
        self._default_response: Any = None
        self._failure: BaseException | None = None
        self.call_log: list[dict] = []

    def preset_response(self, content: Any) -> None:
        """Queue a single response for the next complete() call."""
        self._responses.append(content)

    def preset_sequence(self, responses: list[Any]) -> None:
        """Queue multiple responses for consecutive complete() calls."""
        self._responses.extend(responses)

    def set_default_response(self, content: Any = "无") -> None:
        """Set a fallback response when the queue is empty."""
        self._default_response = content

    def fail_with(self, error: BaseException) -> None:
        """Every following call raises ``error``."""
        self._failure = error

    @property
    def call_count(self) -> int:
        return len(self.call_log)

    @property
    def last_prompt(self) -> str | None:
        return self.call_log[-1]["prompt"] if self.call_log else None

    async def complete(
        self,
        prompt: str,
        *,
        max_tokens: int = 1000,
        temperature: float = 0.3,
    ) -> str:
        self.call_log.append({
            "prompt": prompt,
            "max_tokens": max_tokens,
            "temperature": temperature,
        })
        if self._failure is not None:
            raise self._failure
        if self._responses:
            return self._responses.pop(0)
        return self._default_response

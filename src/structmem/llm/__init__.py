"""
LLM 能力接口

记忆子系统只依赖一个最小接口: TextCompleter.complete(prompt) -> str。
具体服务商的适配器在接口之外各自实现一次。
"""

from .base import TextCompleter, call_memory_llm, format_memory_time
from .openai_compat import OpenAICompatibleCompleter

__all__ = [
    "TextCompleter",
    "OpenAICompatibleCompleter",
    "call_memory_llm",
    "format_memory_time",
]

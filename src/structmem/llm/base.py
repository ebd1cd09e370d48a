"""
TextCompleter 基类与共享调用辅助函数

提取器和总结器都通过 call_memory_llm 调用 LLM，
统一异常转换与日志。
"""

import logging
from abc import ABC, abstractmethod
from datetime import datetime

from ..errors import LLMError, LLMTransportError, LLMUnavailable

logger = logging.getLogger(__name__)


class TextCompleter(ABC):
    """文本补全能力"""

    @abstractmethod
    async def complete(
        self,
        prompt: str,
        *,
        max_tokens: int = 1000,
        temperature: float = 0.3,
    ) -> str:
        """
        发送单轮提示词，返回纯文本

        Raises:
            Exception: 任何传输/服务端错误，由 call_memory_llm 统一包装
        """


async def call_memory_llm(
    completer: TextCompleter | None,
    prompt: str,
    *,
    max_tokens: int = 1000,
    temperature: float = 0.3,
    caller: str = "MemoryLLM",
) -> str:
    """
    统一的 LLM 调用方法

    Args:
        completer: LLM 能力句柄（None 表示未配置）
        prompt: 提示词
        max_tokens: 最大 token 数
        temperature: 温度参数
        caller: 调用者标识（用于日志）

    Returns:
        LLM 响应文本（None 归一化为空串）

    Raises:
        LLMUnavailable: 未配置 completer
        LLMTransportError: 调用失败或返回了非文本
    """
    if completer is None:
        raise LLMUnavailable()

    try:
        response = await completer.complete(
            prompt, max_tokens=max_tokens, temperature=temperature
        )
    except LLMError:
        raise
    except Exception as e:
        logger.error(f"[{caller}] LLM call failed: {e}")
        raise LLMTransportError(f"LLM call failed: {e}") from e

    if response is None:
        return ""
    if not isinstance(response, str):
        logger.error(f"[{caller}] LLM returned non-text response: {type(response).__name__}")
        raise LLMTransportError(
            f"LLM returned {type(response).__name__}, expected str"
        )
    return response


def format_memory_time(timestamp_ms: int | None) -> str:
    """毫秒时间戳格式化为 'YYYY-MM-DD HH:MM'，缺失时返回 '未知'"""
    if not timestamp_ms:
        return "未知"
    return datetime.fromtimestamp(timestamp_ms / 1000).strftime("%Y-%m-%d %H:%M")

"""
记忆子系统错误类型

- ValidationError: 必填字段缺失、分类/子类型非法，写入前同步拒绝
- PersistenceError: 存储层不可用，原样抛给调用方，内部不重试
- LLMUnavailable / LLMTransportError: 在提取器/总结器边缘被捕获，降级为"跳过增强"

Usage:
    from structmem.errors import ValidationError

    try:
        await store.save_memory(record)
    except ValidationError as e:
        return e.to_dict()
"""

from enum import Enum
from typing import Any


class ErrorKind(Enum):
    """错误类别"""

    VALIDATION = "validation"  # 参数验证失败，需修正后重试
    PERSISTENCE = "persistence"  # 存储层错误，由调用方决定重试策略
    LLM_UNAVAILABLE = "llm_unavailable"  # 未配置 LLM
    LLM_TRANSPORT = "llm_transport"  # LLM 调用失败


class StructMemError(Exception):
    """记忆子系统错误基类"""

    kind: ErrorKind = ErrorKind.PERSISTENCE

    def __init__(self, message: str, *, details: dict[str, Any] | None = None) -> None:
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        """序列化为字典（供路由层返回）"""
        result: dict[str, Any] = {
            "error": True,
            "error_type": self.kind.value,
            "message": self.message,
        }
        if self.details:
            result["details"] = self.details
        return result


class ValidationError(StructMemError):
    """记录校验失败"""

    kind = ErrorKind.VALIDATION

    def __init__(self, message: str, *, field: str | None = None, **kwargs: Any) -> None:
        self.field = field
        super().__init__(message, **kwargs)

    def to_dict(self) -> dict[str, Any]:
        result = super().to_dict()
        if self.field:
            result["field"] = self.field
        return result


class PersistenceError(StructMemError):
    """存储层错误"""

    kind = ErrorKind.PERSISTENCE


class LLMError(StructMemError):
    """LLM 相关错误基类"""

    kind = ErrorKind.LLM_TRANSPORT


class LLMUnavailable(LLMError):
    """未配置 LLM 客户端"""

    kind = ErrorKind.LLM_UNAVAILABLE

    def __init__(self, message: str = "LLM client not configured", **kwargs: Any) -> None:
        super().__init__(message, **kwargs)


class LLMTransportError(LLMError):
    """LLM 调用失败（网络、服务端、响应格式）"""

    kind = ErrorKind.LLM_TRANSPORT

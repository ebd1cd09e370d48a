"""
structmem - 对话用户的结构化长期记忆

分类存储、写入去重、规则/LLM 提取、总结与衰减维护。
"""

from .errors import (
    LLMError,
    LLMTransportError,
    LLMUnavailable,
    PersistenceError,
    StructMemError,
    ValidationError,
)
from .llm import TextCompleter
from .memory import (
    MemoryCategory,
    MemoryExtractor,
    MemoryMigration,
    MemoryRecord,
    MemorySource,
    MemoryStore,
    MemorySummarizer,
)

__version__ = "0.3.0"

__all__ = [
    "LLMError",
    "LLMTransportError",
    "LLMUnavailable",
    "MemoryCategory",
    "MemoryExtractor",
    "MemoryMigration",
    "MemoryRecord",
    "MemorySource",
    "MemoryStore",
    "MemorySummarizer",
    "PersistenceError",
    "StructMemError",
    "TextCompleter",
    "ValidationError",
]

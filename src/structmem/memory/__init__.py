"""
结构化记忆模块

- types: 分类/子类型/来源定义与 MemoryRecord
- similarity: 内容相似度
- storage: SQLite 存储
- extractor: 规则/LLM 提取
- summarizer: 总结、清理、衰减
- migration: 旧记忆表迁移
"""

from .extractor import QUICK_EXTRACT_RULES, ExtractionRule, MemoryExtractor
from .migration import CATEGORY_RULES, MemoryMigration, infer_category
from .similarity import content_hash, is_similar_content, normalize_content
from .storage import ANY_GROUP, MemoryStore
from .summarizer import MemorySummarizer
from .types import (
    CATEGORY_LABELS,
    CATEGORY_ORDER,
    SUB_TYPE_LABELS,
    EventSubType,
    MemoryCategory,
    MemoryRecord,
    MemorySource,
    PreferenceSubType,
    ProfileSubType,
    RelationSubType,
    TopicSubType,
    get_category_label,
    get_sub_type_label,
    get_sub_types,
    is_valid_category,
    is_valid_source,
    is_valid_sub_type,
)

__all__ = [
    "ANY_GROUP",
    "CATEGORY_LABELS",
    "CATEGORY_ORDER",
    "CATEGORY_RULES",
    "QUICK_EXTRACT_RULES",
    "SUB_TYPE_LABELS",
    "EventSubType",
    "ExtractionRule",
    "MemoryCategory",
    "MemoryExtractor",
    "MemoryMigration",
    "MemoryRecord",
    "MemorySource",
    "MemoryStore",
    "MemorySummarizer",
    "PreferenceSubType",
    "ProfileSubType",
    "RelationSubType",
    "TopicSubType",
    "content_hash",
    "get_category_label",
    "get_sub_type_label",
    "get_sub_types",
    "infer_category",
    "is_similar_content",
    "is_valid_category",
    "is_valid_source",
    "is_valid_sub_type",
    "normalize_content",
]

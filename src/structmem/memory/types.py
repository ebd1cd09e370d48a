"""
结构化记忆类型定义

分类 (category) → 子类型 (sub_type) 两级分类，外加来源标签。
纯数据，无副作用。
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class MemoryCategory(Enum):
    """记忆主分类"""
    PROFILE = "profile"         # 基本信息：姓名、年龄、职业、位置
    PREFERENCE = "preference"   # 偏好习惯：喜好、讨厌、习惯
    EVENT = "event"             # 重要事件：生日、纪念日、计划
    RELATION = "relation"       # 人际关系：朋友、家人、同事
    TOPIC = "topic"             # 话题兴趣：讨论过的主题
    CUSTOM = "custom"           # 自定义扩展


class ProfileSubType(Enum):
    NAME = "name"
    AGE = "age"
    GENDER = "gender"
    LOCATION = "location"
    OCCUPATION = "occupation"
    EDUCATION = "education"
    CONTACT = "contact"


class PreferenceSubType(Enum):
    LIKE = "like"
    DISLIKE = "dislike"
    HOBBY = "hobby"
    HABIT = "habit"
    FOOD = "food"
    STYLE = "style"


class EventSubType(Enum):
    BIRTHDAY = "birthday"
    ANNIVERSARY = "anniversary"
    PLAN = "plan"
    MILESTONE = "milestone"
    SCHEDULE = "schedule"


class RelationSubType(Enum):
    FAMILY = "family"
    FRIEND = "friend"
    COLLEAGUE = "colleague"
    PARTNER = "partner"
    PET = "pet"


class TopicSubType(Enum):
    INTEREST = "interest"
    DISCUSSED = "discussed"
    KNOWLEDGE = "knowledge"


class MemorySource(Enum):
    """记忆来源"""
    AUTO = "auto"           # 自动提取
    MANUAL = "manual"       # 手动添加
    IMPORT = "import"       # 导入
    SUMMARY = "summary"     # 总结生成
    MIGRATION = "migration"  # 迁移


# 固定顺序，同时也是构建上下文时的优先级
CATEGORY_ORDER: tuple[str, ...] = tuple(c.value for c in MemoryCategory)

_SUB_TYPES: dict[str, tuple[str, ...]] = {
    MemoryCategory.PROFILE.value: tuple(s.value for s in ProfileSubType),
    MemoryCategory.PREFERENCE.value: tuple(s.value for s in PreferenceSubType),
    MemoryCategory.EVENT.value: tuple(s.value for s in EventSubType),
    MemoryCategory.RELATION.value: tuple(s.value for s in RelationSubType),
    MemoryCategory.TOPIC.value: tuple(s.value for s in TopicSubType),
    MemoryCategory.CUSTOM.value: (),
}

CATEGORY_LABELS: dict[str, str] = {
    "profile": "基本信息",
    "preference": "偏好习惯",
    "event": "重要事件",
    "relation": "人际关系",
    "topic": "话题兴趣",
    "custom": "其他",
}

SUB_TYPE_LABELS: dict[str, str] = {
    # profile
    "name": "姓名",
    "age": "年龄",
    "gender": "性别",
    "location": "所在地",
    "occupation": "职业",
    "education": "学历",
    "contact": "联系方式",
    # preference
    "like": "喜欢",
    "dislike": "讨厌",
    "hobby": "爱好",
    "habit": "习惯",
    "food": "食物偏好",
    "style": "风格偏好",
    # event
    "birthday": "生日",
    "anniversary": "纪念日",
    "plan": "计划",
    "milestone": "里程碑",
    "schedule": "日程",
    # relation
    "family": "家人",
    "friend": "朋友",
    "colleague": "同事",
    "partner": "伴侣",
    "pet": "宠物",
    # topic
    "interest": "兴趣",
    "discussed": "讨论过",
    "knowledge": "知识领域",
}

_SOURCES = frozenset(s.value for s in MemorySource)


def is_valid_category(category: str | None) -> bool:
    return category in _SUB_TYPES


def is_valid_source(source: str | None) -> bool:
    return source in _SOURCES


def get_sub_types(category: str) -> list[str]:
    """分类的子类型白名单；custom 及未知分类返回空列表"""
    return list(_SUB_TYPES.get(category, ()))


def is_valid_sub_type(category: str, sub_type: str | None) -> bool:
    """
    子类型校验: 空子类型总是合法; custom 接受任意子类型;
    其他分类必须在白名单内
    """
    if not is_valid_category(category):
        return False
    if sub_type is None:
        return True
    if category == MemoryCategory.CUSTOM.value:
        return True
    return sub_type in _SUB_TYPES[category]


def get_category_label(category: str) -> str:
    return CATEGORY_LABELS.get(category, category)


def get_sub_type_label(sub_type: str) -> str:
    return SUB_TYPE_LABELS.get(sub_type, sub_type)


@dataclass
class MemoryRecord:
    """单条结构化记忆 (id 为 None 表示尚未入库的候选)"""
    user_id: str = ""
    category: str = ""
    content: str = ""
    group_id: str | None = None
    sub_type: str | None = None
    confidence: float = 0.8
    source: str = MemorySource.AUTO.value
    metadata: dict[str, Any] | None = None
    id: int | None = None
    created_at: int = 0  # 毫秒时间戳
    updated_at: int = 0
    expires_at: int | None = None
    is_active: bool = True
    extra: dict[str, Any] = field(default_factory=dict)  # 非持久化的展示字段

    def to_dict(self) -> dict[str, Any]:
        data = {
            "id": self.id,
            "user_id": self.user_id,
            "group_id": self.group_id,
            "category": self.category,
            "sub_type": self.sub_type,
            "content": self.content,
            "confidence": self.confidence,
            "source": self.source,
            "metadata": self.metadata,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "expires_at": self.expires_at,
            "is_active": self.is_active,
        }
        data.update(self.extra)
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "MemoryRecord":
        return cls(
            id=data.get("id"),
            user_id=data.get("user_id", ""),
            group_id=data.get("group_id"),
            category=data.get("category", ""),
            sub_type=data.get("sub_type"),
            content=data.get("content", ""),
            confidence=data.get("confidence", 0.8),
            source=data.get("source", MemorySource.AUTO.value),
            metadata=data.get("metadata"),
            created_at=data.get("created_at", 0),
            updated_at=data.get("updated_at", 0),
            expires_at=data.get("expires_at"),
            is_active=bool(data.get("is_active", True)),
        )

    def to_markdown(self) -> str:
        label = get_category_label(self.category)
        if self.sub_type:
            label = f"{label}/{get_sub_type_label(self.sub_type)}"
        return f"- [{label}] {self.content}"

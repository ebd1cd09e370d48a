"""
记忆提取器 - 从对话中提取并分类用户记忆

两种策略:
1. 规则提取 (quick_extract): 有序正则规则表，每类事实第一条命中的规则生效，不调用 LLM
2. LLM 提取 (extract_from_conversation): 让 LLM 输出 [分类:子类型] 内容 格式的行

extract_from_session 组合两者: 规则先行，规则找到的不够时才调用 LLM 补充。
"""

import json
import logging
import re
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any

from ..errors import LLMError
from ..llm import TextCompleter, call_memory_llm
from .similarity import is_similar_content
from .storage import MemoryStore
from .types import (
    MemoryCategory,
    MemoryRecord,
    MemorySource,
    is_valid_category,
    is_valid_sub_type,
)

logger = logging.getLogger(__name__)

# 名字/地点等片段: 不含空白和中英文句读
_TOKEN = r"[^\s,，。！!？?\n]"


@dataclass(frozen=True)
class ExtractionRule:
    """
    一类事实的规则

    patterns 按顺序尝试，第一条命中即生成候选；
    template 用 str.format 填入捕获组 ({0}, {1}, ...)
    """
    name: str
    category: str
    sub_type: str
    patterns: tuple[re.Pattern, ...]
    template: str
    confidence: float

    def match(self, text: str) -> str | None:
        for pattern in self.patterns:
            m = pattern.search(text)
            if m:
                return self.template.format(*m.groups())
        return None


def _rule(name, category, sub_type, patterns, template, confidence) -> ExtractionRule:
    return ExtractionRule(
        name=name,
        category=category,
        sub_type=sub_type,
        patterns=tuple(re.compile(p) for p in patterns),
        template=template,
        confidence=confidence,
    )


# 顺序即输出顺序
QUICK_EXTRACT_RULES: tuple[ExtractionRule, ...] = (
    _rule(
        "name", "profile", "name",
        [
            rf"我(?:的名字)?(?:叫|是|名)({_TOKEN}{{1,10}})",
            rf"(?:大家)?(?:可以)?叫我({_TOKEN}{{1,10}})",
            rf"我姓({_TOKEN}{{1,5}})",
        ],
        "用户名叫{0}", 0.9,
    ),
    _rule(
        "age", "profile", "age",
        [r"我(?:今年)?(\d{1,3})岁"],
        "{0}岁", 0.9,
    ),
    _rule(
        "occupation", "profile", "occupation",
        [
            rf"我是(?:一[名个位])?({_TOKEN}{{2,10}}(?:师|员|生|家|者|长|士))",
            rf"我(?:从事|做)({_TOKEN}{{2,15}})(?:工作|行业)?",
            rf"我的(?:职业|工作)是({_TOKEN}{{2,15}})",
        ],
        "职业是{0}", 0.85,
    ),
    _rule(
        "location", "profile", "location",
        [
            rf"我(?:在|住|来自)({_TOKEN}{{2,15}})",
            rf"我是({_TOKEN}{{2,10}})人",
            rf"坐标({_TOKEN}{{2,15}})",
        ],
        "在{0}", 0.8,
    ),
    _rule(
        "birthday", "event", "birthday",
        [
            r"我(?:的)?生日(?:是)?(\d{1,2})月(\d{1,2})[日号]",
            r"我是(\d{1,2})月(\d{1,2})[日号](?:出)?生",
        ],
        "生日是{0}月{1}日", 0.95,
    ),
    _rule(
        "like", "preference", "like",
        [rf"我(?:很)?(?:喜欢|爱)({_TOKEN}{{2,20}})"],
        "喜欢{0}", 0.75,
    ),
    _rule(
        "dislike", "preference", "dislike",
        [rf"我(?:很)?(?:讨厌|不喜欢|烦)({_TOKEN}{{2,20}})"],
        "讨厌{0}", 0.75,
    ),
)

# LLM 输出行语法
_LINE_WITH_SUB_TYPE_RE = re.compile(r"^\[([a-z]+):([a-z]+)\]\s*(.+)$", re.IGNORECASE)
_LINE_CATEGORY_ONLY_RE = re.compile(r"^\[([a-z]+)\]\s*(.+)$", re.IGNORECASE)

# LLM 返回该值表示没有可提取的信息
NO_FINDINGS = "无"


class MemoryExtractor:
    """
    记忆提取器

    Args:
        store: 记忆存储
        completer: LLM 能力句柄（None 时 LLM 路径为空操作）
    """

    EXTRACTION_PROMPT = """你是一个记忆提取助手，负责从对话中提取用户的关键信息。

【任务】分析对话内容，提取用户个人信息并分类。

【输出格式】每行一条记忆，格式：[分类:子类型] 内容
分类和子类型必须使用以下英文标识：

1. profile（基本信息）
   - name: 姓名/昵称
   - age: 年龄
   - gender: 性别
   - location: 所在地
   - occupation: 职业
   - education: 学历/学校
   - contact: 联系方式

2. preference（偏好习惯）
   - like: 喜欢的事物
   - dislike: 讨厌的事物
   - hobby: 爱好
   - habit: 习惯
   - food: 食物偏好
   - style: 风格偏好

3. event（重要事件）
   - birthday: 生日
   - anniversary: 纪念日
   - plan: 计划/安排
   - milestone: 里程碑
   - schedule: 日程

4. relation（人际关系）
   - family: 家人
   - friend: 朋友
   - colleague: 同事
   - partner: 伴侣
   - pet: 宠物

5. topic（话题兴趣）
   - interest: 感兴趣的话题
   - discussed: 讨论过的话题
   - knowledge: 知识领域

【示例输出】
[profile:name] 用户叫小明
[profile:age] 25岁
[preference:like] 喜欢打游戏
[event:birthday] 生日是3月15日
[relation:friend] 小红是用户的朋友
[topic:interest] 对AI技术感兴趣

【对话内容】
{dialog_text}

【提取要求】
- 只提取明确的信息，不要推测
- 内容要简洁，一句话说明
- 如果没有有价值的信息，只输出"无"
- 不要输出重复的信息
- 忽略无关的聊天内容

提取结果："""

    # 对话文本太短不值得调用 LLM
    MIN_DIALOG_LENGTH = 10
    # 规则候选少于该数量才考虑调用 LLM
    LLM_FALLBACK_MAX_RULE_HITS = 3
    # 会话至少这么多条消息才考虑调用 LLM
    LLM_FALLBACK_MIN_MESSAGES = 5

    def __init__(self, store: MemoryStore, completer: TextCompleter | None = None):
        self.store = store
        self.completer = completer

    # ==================== 规则提取 ====================

    def quick_extract(
        self,
        user_id: str,
        message: str,
        group_id: str | None = None,
    ) -> list[MemoryRecord]:
        """从单条消息中按规则表提取候选记忆（不入库）"""
        if not message:
            return []

        candidates = []
        for rule in QUICK_EXTRACT_RULES:
            content = rule.match(message)
            if content is None:
                continue
            candidates.append(MemoryRecord(
                user_id=user_id,
                group_id=group_id,
                category=rule.category,
                sub_type=rule.sub_type,
                content=content,
                confidence=rule.confidence,
                source=MemorySource.AUTO.value,
            ))
        return candidates

    # ==================== LLM 提取 ====================

    async def extract_from_conversation(
        self,
        user_id: str,
        messages: Sequence[dict[str, Any]],
        *,
        group_id: str | None = None,
        max_messages: int = 20,
        save_immediately: bool = True,
    ) -> list[MemoryRecord]:
        """
        用 LLM 从最近的对话中提取记忆

        未配置 LLM 时返回空列表。

        Raises:
            LLMTransportError: LLM 调用失败（调用方决定是否跳过本轮提取）
        """
        if self.completer is None:
            logger.debug("[MemoryExtractor] LLM not configured, skipping extraction")
            return []

        if not messages:
            return []

        dialog_text = self.format_messages(messages[-max_messages:])
        if len(dialog_text) < self.MIN_DIALOG_LENGTH:
            return []

        prompt = self.EXTRACTION_PROMPT.format(dialog_text=dialog_text)
        response = await call_memory_llm(
            self.completer,
            prompt,
            max_tokens=1000,
            temperature=0.3,
            caller="MemoryExtractor",
        )

        response = response.strip()
        if not response or response == NO_FINDINGS:
            return []

        candidates = self.parse_extraction_result(response, user_id, group_id)
        if not save_immediately or not candidates:
            return candidates

        saved = await self._save_all(candidates)
        logger.info(f"[MemoryExtractor] Extracted and saved {len(saved)} memories for {user_id}")
        return saved

    async def extract_from_session(
        self,
        user_id: str,
        messages: Sequence[dict[str, Any]],
        *,
        group_id: str | None = None,
        use_llm: bool = True,
    ) -> list[MemoryRecord]:
        """
        规则 + LLM 组合提取并入库

        LLM 失败只降级为纯规则结果，不抛出。
        """
        candidates: list[MemoryRecord] = []

        for msg in messages:
            if msg.get("role") != "user":
                continue
            text = self._message_text(msg, for_dialog=False)
            if text:
                candidates.extend(self.quick_extract(user_id, text, group_id=group_id))

        if (
            use_llm
            and self.completer is not None
            and len(candidates) < self.LLM_FALLBACK_MAX_RULE_HITS
            and len(messages) >= self.LLM_FALLBACK_MIN_MESSAGES
        ):
            try:
                llm_candidates = await self.extract_from_conversation(
                    user_id, messages, group_id=group_id, save_immediately=False
                )
            except LLMError as e:
                logger.warning(f"[MemoryExtractor] LLM extraction skipped: {e}")
                llm_candidates = []

            for candidate in llm_candidates:
                duplicate = any(
                    c.category == candidate.category
                    and c.sub_type == candidate.sub_type
                    and is_similar_content(c.content, candidate.content)
                    for c in candidates
                )
                if not duplicate:
                    candidates.append(candidate)

        if not candidates:
            return []

        return await self._save_all(candidates)

    # ==================== 辅助 ====================

    async def _save_all(self, candidates: list[MemoryRecord]) -> list[MemoryRecord]:
        results = await self.store.save_memories(candidates)
        return [r["memory"] for r in results if r["success"]]

    @staticmethod
    def _message_text(msg: dict[str, Any], for_dialog: bool = True) -> str:
        content = msg.get("content")
        if isinstance(content, str):
            return content
        if isinstance(content, dict) and content.get("text"):
            return content["text"]
        if not for_dialog or content is None:
            return ""
        return json.dumps(content, ensure_ascii=False)

    def format_messages(self, messages: Sequence[dict[str, Any]]) -> str:
        """格式化为 "用户: ..." / "AI: ..." 对话文本"""
        lines = []
        for msg in messages:
            role = "用户" if msg.get("role") == "user" else "AI"
            lines.append(f"{role}: {self._message_text(msg)}")
        return "\n".join(lines)

    def parse_extraction_result(
        self,
        result: str,
        user_id: str,
        group_id: str | None = None,
    ) -> list[MemoryRecord]:
        """
        解析 LLM 输出

        [category:subType] 内容 → 可信度 0.7
        [category] 内容 → 可信度 0.6
        其他行或非法分类静默丢弃
        """
        candidates = []
        for line in result.splitlines():
            line = line.strip()
            if not line:
                continue

            m = _LINE_WITH_SUB_TYPE_RE.match(line)
            if m:
                category, sub_type, content = m.group(1).lower(), m.group(2).lower(), m.group(3)
                if self.is_valid_category_sub_type(category, sub_type):
                    candidates.append(MemoryRecord(
                        user_id=user_id,
                        group_id=group_id,
                        category=category,
                        sub_type=sub_type,
                        content=content.strip(),
                        confidence=0.7,
                        source=MemorySource.AUTO.value,
                    ))
                continue

            m = _LINE_CATEGORY_ONLY_RE.match(line)
            if m:
                category, content = m.group(1).lower(), m.group(2)
                if is_valid_category(category):
                    candidates.append(MemoryRecord(
                        user_id=user_id,
                        group_id=group_id,
                        category=category,
                        sub_type=None,
                        content=content.strip(),
                        confidence=0.6,
                        source=MemorySource.AUTO.value,
                    ))

        return candidates

    @staticmethod
    def is_valid_category_sub_type(category: str, sub_type: str) -> bool:
        """custom 接受任意子类型，其余分类必须在白名单内"""
        if category == MemoryCategory.CUSTOM.value:
            return True
        return is_valid_sub_type(category, sub_type)

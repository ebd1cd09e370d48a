"""
记忆总结器 - 合并、去重、清理和总结记忆

维护操作都只通过 MemoryStore 的公开接口读写；
LLM 失败一律降级为"保留原样"，不会让维护操作本身失败。
"""

import logging
import re
from collections.abc import Sequence
from datetime import datetime
from typing import Any

from ..errors import LLMError
from ..llm import TextCompleter, call_memory_llm, format_memory_time
from .extractor import MemoryExtractor
from .storage import DAY_MS, MemoryStore
from .types import CATEGORY_ORDER, MemoryRecord, MemorySource, get_category_label

logger = logging.getLogger(__name__)

SUMMARY_PROMPT = """你是一个记忆总结助手，负责合并和整理用户记忆。

【任务】将以下同类记忆合并整理，去除重复和矛盾信息，保留最重要的内容。

【分类】{category_label}

【现有记忆】
{memories}

【要求】
1. 合并相似的记忆，保留最准确的表述
2. 如果有矛盾信息，保留最新的
3. 去除重复和冗余
4. 每条记忆一行，简洁明了
5. 如果所有记忆都应保留，原样输出即可

【输出格式】
每行一条整理后的记忆，不需要序号或前缀。

整理结果："""

CONFLICT_PROMPT = """你是一个记忆管理助手，需要解决信息冲突。

【冲突信息】
旧记忆：{old_memory}（记录时间：{old_time}）
新记忆：{new_memory}（记录时间：{new_time}）

【要求】
判断应该保留哪个记忆，或如何合并：
1. 如果是更正信息，保留新的
2. 如果是补充信息，合并两者
3. 如果无法判断，保留新的

【输出格式】
只输出最终应保留的记忆内容，一行即可。

结果："""

# 总结结果行数 >= 原条数 * 该比例时视为没必要替换
SUMMARY_NOOP_RATIO = 0.9
SUMMARY_CONFIDENCE = 0.85

# LLM 偶尔仍会输出序号或列表符号
_LINE_PREFIX_RE = re.compile(r"^(?:\d+[.、)）]\s*|[-*•]\s+)")


class MemorySummarizer:
    """
    记忆总结器

    Args:
        store: 记忆存储
        extractor: 会话结束时用于提取记忆
        completer: LLM 能力句柄（None 时只做哈希去重，不做 LLM 总结）
        category_summarize_min_items: 分类条数超过该值才做 LLM 总结
        summarize_threshold: 会话结束时活跃记忆超过该值才触发总结
    """

    def __init__(
        self,
        store: MemoryStore,
        extractor: MemoryExtractor,
        completer: TextCompleter | None = None,
        *,
        category_summarize_min_items: int = 5,
        summarize_threshold: int = 20,
    ):
        self.store = store
        self.extractor = extractor
        self.completer = completer
        self.category_summarize_min_items = category_summarize_min_items
        self.summarize_threshold = summarize_threshold

    # ==================== 总结 ====================

    async def summarize_user_memories(
        self,
        user_id: str,
        *,
        group_id: str | None = None,
        use_llm: bool = True,
    ) -> dict[str, Any]:
        """
        总结用户记忆

        1. 哈希去重 (merge_memories)
        2. 配置了 LLM 时，对条数较多的分类逐个做 LLM 总结
        """
        merge_result = await self.store.merge_memories(user_id)
        result: dict[str, Any] = {
            "user_id": user_id,
            "original_count": merge_result["original_count"],
            "final_count": 0,
            "merged_count": merge_result["merged_count"],
            "removed_count": merge_result["deleted_count"],
            "by_category": {},
        }

        if use_llm and self.completer is not None:
            tree = await self.store.get_memory_tree(user_id, group_id=group_id)

            for category in CATEGORY_ORDER:
                node = tree[category]
                items: list[MemoryRecord] = node["items"]

                if len(items) <= self.category_summarize_min_items:
                    result["by_category"][category] = {
                        "count": node["count"],
                        "summarized": False,
                    }
                    continue

                summarized = await self.summarize_category(
                    user_id, category, items, group_id=group_id
                )
                result["by_category"][category] = {
                    "count": len(summarized),
                    "summarized": summarized is not items,
                    "original": len(items),
                }

        stats = await self.store.get_stats(user_id)
        result["final_count"] = stats["total"]

        logger.info(
            f"[MemorySummarizer] Summarized {user_id}: "
            f"{result['original_count']} -> {result['final_count']}"
        )
        return result

    async def summarize_category(
        self,
        user_id: str,
        category: str,
        memories: list[MemoryRecord],
        *,
        group_id: str | None = None,
    ) -> list[MemoryRecord]:
        """
        用 LLM 压缩单个分类的记忆

        结果行数没有明显减少、LLM 不可用或调用失败时原样返回 memories；
        否则物理删除旧记录并写入总结后的新记录。
        """
        if self.completer is None or len(memories) <= 2:
            return memories

        memories_text = "\n".join(f"{i}. {m.content}" for i, m in enumerate(memories, 1))
        prompt = SUMMARY_PROMPT.format(
            category_label=get_category_label(category),
            memories=memories_text,
        )

        try:
            response = await call_memory_llm(
                self.completer,
                prompt,
                max_tokens=800,
                temperature=0.3,
                caller="MemorySummarizer",
            )
        except LLMError as e:
            logger.warning(f"[MemorySummarizer] Category {category} summary skipped: {e}")
            return memories

        lines = self._parse_summary_lines(response)
        if not lines or len(lines) >= len(memories) * SUMMARY_NOOP_RATIO:
            return memories

        for memory in memories:
            await self.store.delete_memory(memory.id, hard=True)

        new_memories = []
        for content in lines:
            new_memories.append(await self.store.save_memory(MemoryRecord(
                user_id=user_id,
                group_id=group_id,
                category=category,
                content=content,
                confidence=SUMMARY_CONFIDENCE,
                source=MemorySource.SUMMARY.value,
            )))

        logger.debug(
            f"[MemorySummarizer] Category {category} summarized: "
            f"{len(memories)} -> {len(new_memories)}"
        )
        return new_memories

    @staticmethod
    def _parse_summary_lines(response: str) -> list[str]:
        lines = []
        for line in response.splitlines():
            line = line.strip()
            if not line or line.startswith("#"):
                continue
            line = _LINE_PREFIX_RE.sub("", line).strip()
            if line:
                lines.append(line)
        return lines

    async def resolve_conflict(
        self,
        old_memory: MemoryRecord,
        new_memory: MemoryRecord,
    ) -> MemoryRecord:
        """解决同一分类下两条矛盾的记忆，无 LLM 或调用失败时保留新的"""
        if self.completer is None:
            return new_memory

        prompt = CONFLICT_PROMPT.format(
            old_memory=old_memory.content,
            old_time=format_memory_time(old_memory.updated_at),
            new_memory=new_memory.content,
            new_time=format_memory_time(new_memory.updated_at),
        )

        try:
            response = await call_memory_llm(
                self.completer,
                prompt,
                max_tokens=800,
                temperature=0.3,
                caller="MemorySummarizer",
            )
        except LLMError as e:
            logger.warning(f"[MemorySummarizer] Conflict resolution failed, keeping new: {e}")
            return new_memory

        content = response.strip()
        if not content:
            return new_memory

        return MemoryRecord(
            id=new_memory.id,
            user_id=new_memory.user_id,
            group_id=new_memory.group_id,
            category=new_memory.category,
            sub_type=new_memory.sub_type,
            content=content,
            confidence=max(old_memory.confidence, new_memory.confidence),
            source=MemorySource.SUMMARY.value,
            metadata=new_memory.metadata,
            created_at=new_memory.created_at,
            updated_at=new_memory.updated_at,
            expires_at=new_memory.expires_at,
            is_active=new_memory.is_active,
        )

    # ==================== 清理与衰减 ====================

    async def cleanup_memories(
        self,
        user_id: str,
        *,
        min_confidence: float = 0.3,
        max_age_days: int = 90,
        min_content_length: int = 5,
    ) -> dict[str, int]:
        """
        物理删除低质量记忆，满足任一条件即删除:
        - 可信度低于 min_confidence
        - 已过期
        - 超过 max_age_days 未更新且可信度 < 0.6
        - 内容短于 min_content_length
        """
        memories = await self.store.get_memories_by_user(user_id, limit=1000)
        now = self.store.now()
        max_age_ms = max_age_days * DAY_MS
        removed = 0

        for memory in memories:
            if (
                memory.confidence < min_confidence
                or (memory.expires_at and memory.expires_at < now)
                or (now - memory.updated_at > max_age_ms and memory.confidence < 0.6)
                or len(memory.content) < min_content_length
            ):
                await self.store.delete_memory(memory.id, hard=True)
                removed += 1

        logger.info(f"[MemorySummarizer] Cleaned {removed} low-quality memories of {user_id}")
        return {"removed_count": removed}

    async def global_cleanup(self, **cleanup_options: Any) -> dict[str, int]:
        """对所有用户执行 cleanup_memories"""
        users = await self.store.list_users()
        total_removed = 0

        for user in users:
            result = await self.cleanup_memories(user["user_id"], **cleanup_options)
            total_removed += result["removed_count"]

        logger.info(f"[MemorySummarizer] Global cleanup removed {total_removed} memories")
        return {"total_removed": total_removed, "users_processed": len(users)}

    async def decay_confidence(
        self,
        *,
        decay_rate: float = 0.95,
        min_confidence: float = 0.3,
        days_threshold: int = 30,
    ) -> dict[str, int]:
        """长时间未被强化的记忆可信度衰减，不低于 min_confidence"""
        affected = await self.store.decay_confidence(
            decay_rate=decay_rate,
            min_confidence=min_confidence,
            days_threshold=days_threshold,
        )
        logger.debug(f"[MemorySummarizer] Decayed confidence of {affected} memories")
        return {"affected": affected}

    # ==================== 会话结束 ====================

    async def on_conversation_end(
        self,
        user_id: str,
        messages: Sequence[dict[str, Any]],
        *,
        group_id: str | None = None,
        summarize: bool = True,
    ) -> dict[str, Any]:
        """
        会话结束时的维护入口: 提取 → (按需)总结 → 清理

        从不抛出，失败信息记录在返回值的 errors 中。
        """
        result: dict[str, Any] = {
            "extracted": 0,
            "summarized": 0,
            "cleaned": 0,
            "errors": [],
        }

        try:
            extracted = await self.extractor.extract_from_session(
                user_id, messages, group_id=group_id
            )
            result["extracted"] = len(extracted)
        except Exception as e:
            logger.error(f"[MemorySummarizer] Extraction failed for {user_id}: {e}")
            result["errors"].append(f"extract: {e}")

        if summarize:
            try:
                stats = await self.store.get_stats(user_id)
                if stats["total"] > self.summarize_threshold:
                    summary = await self.summarize_user_memories(user_id, group_id=group_id)
                    result["summarized"] = max(
                        0, summary["original_count"] - summary["final_count"]
                    )
            except Exception as e:
                logger.error(f"[MemorySummarizer] Summarization failed for {user_id}: {e}")
                result["errors"].append(f"summarize: {e}")

        try:
            cleanup = await self.cleanup_memories(
                user_id, min_confidence=0.3, min_content_length=3
            )
            result["cleaned"] = cleanup["removed_count"]
        except Exception as e:
            logger.error(f"[MemorySummarizer] Cleanup failed for {user_id}: {e}")
            result["errors"].append(f"cleanup: {e}")

        return result

    # ==================== 报告 ====================

    async def generate_report(self, user_id: str) -> dict[str, Any]:
        """只读: 分类树 + 统计，每个非空分类最多 10 条样例"""
        tree = await self.store.get_memory_tree(user_id)
        stats = await self.store.get_stats(user_id)

        report: dict[str, Any] = {
            "user_id": user_id,
            "generated_at": datetime.fromtimestamp(self.store.now() / 1000).isoformat(),
            "summary": {
                "total_memories": stats["total"],
                "categories": len(stats["by_category"]),
            },
            "by_category": {},
        }

        for category, node in tree.items():
            if node["count"] == 0:
                continue
            report["by_category"][category] = {
                "label": node["label"],
                "count": node["count"],
                "items": [
                    {
                        "content": m.content,
                        "sub_type": m.sub_type,
                        "confidence": m.confidence,
                    }
                    for m in node["items"][:10]
                ],
            }

        return report

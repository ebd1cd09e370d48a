"""
记忆数据迁移

将旧的 memories 表（无分类的自由文本）迁移到 structured_memories:
按关键词规则推断分类，逐条通过 MemoryStore.save_memory 写入，
来源标记为 migration，原始 id/时间戳/来源保留在 metadata 中。
"""

import json
import logging
import re
from dataclasses import dataclass
from typing import Any

from .storage import MemoryStore
from .types import MemoryCategory, MemoryRecord, MemorySource

logger = logging.getLogger(__name__)

LEGACY_TABLE = "memories"
LEGACY_IMPORTANCE_SCALE = 10
DEFAULT_MIGRATED_CONFIDENCE = 0.7


@dataclass(frozen=True)
class CategoryRule:
    pattern: re.Pattern
    category: str
    sub_type: str


def _rule(pattern: str, category: MemoryCategory, sub_type: str) -> CategoryRule:
    return CategoryRule(re.compile(pattern, re.IGNORECASE), category.value, sub_type)


# 顺序敏感: 第一条命中的规则生效
CATEGORY_RULES: tuple[CategoryRule, ...] = (
    # 基本信息
    _rule(r"(?:叫|名字是|姓|名叫|称呼)", MemoryCategory.PROFILE, "name"),
    _rule(r"(?:\d+岁|年龄|岁数)", MemoryCategory.PROFILE, "age"),
    _rule(r"(?:性别|男|女|性向)", MemoryCategory.PROFILE, "gender"),
    _rule(r"(?:在|住|来自|坐标|位置|所在)(?:[\u4e00-\u9fa5]{2,10})", MemoryCategory.PROFILE, "location"),
    _rule(r"(?:职业|工作|从事|做|是一(?:名|个|位))(?:[\u4e00-\u9fa5]{2,15})", MemoryCategory.PROFILE, "occupation"),
    _rule(r"(?:学历|毕业|上学|学校|大学|高中)", MemoryCategory.PROFILE, "education"),
    # 偏好习惯
    _rule(r"(?:喜欢|爱|热爱|钟爱)", MemoryCategory.PREFERENCE, "like"),
    _rule(r"(?:讨厌|不喜欢|烦|厌恶)", MemoryCategory.PREFERENCE, "dislike"),
    _rule(r"(?:爱好|兴趣)", MemoryCategory.PREFERENCE, "hobby"),
    _rule(r"(?:习惯|经常|总是)", MemoryCategory.PREFERENCE, "habit"),
    _rule(r"(?:吃|喝|食物|美食|餐)", MemoryCategory.PREFERENCE, "food"),
    # 重要事件
    _rule(r"(?:生日|出生)(?:是)?(?:\d{1,2}月\d{1,2})?", MemoryCategory.EVENT, "birthday"),
    _rule(r"(?:纪念日|周年|结婚)", MemoryCategory.EVENT, "anniversary"),
    _rule(r"(?:计划|打算|准备|想要)", MemoryCategory.EVENT, "plan"),
    # 人际关系
    _rule(r"(?:家人|父母|爸|妈|兄弟|姐妹|儿子|女儿)", MemoryCategory.RELATION, "family"),
    _rule(r"(?:朋友|好友|闺蜜|哥们)", MemoryCategory.RELATION, "friend"),
    _rule(r"(?:同事|同学|同僚)", MemoryCategory.RELATION, "colleague"),
    _rule(r"(?:男朋友|女朋友|对象|伴侣|老婆|老公|爱人)", MemoryCategory.RELATION, "partner"),
    _rule(r"(?:宠物|猫|狗|养)", MemoryCategory.RELATION, "pet"),
    # 话题兴趣
    _rule(r"(?:感兴趣|关注|在意)", MemoryCategory.TOPIC, "interest"),
    _rule(r"(?:讨论|聊过|说过|提到)", MemoryCategory.TOPIC, "discussed"),
)


def infer_category(content: str) -> tuple[str, str | None]:
    """推断 (category, sub_type)，未命中任何规则时归为 (custom, None)"""
    for rule in CATEGORY_RULES:
        if rule.pattern.search(content or ""):
            return rule.category, rule.sub_type
    return MemoryCategory.CUSTOM.value, None


def legacy_confidence(row: dict[str, Any]) -> float:
    """
    旧表 importance（1-10 分，默认 5）或 score 换算为 [0, 1] 可信度

    大于 1 的值按十分制除以 10，再截断到 [0, 1]；都没有时为 0.7。
    """
    value = row.get("importance") or row.get("score")
    if not isinstance(value, (int, float)) or isinstance(value, bool):
        return DEFAULT_MIGRATED_CONFIDENCE
    if value > 1:
        value = value / LEGACY_IMPORTANCE_SCALE
    return round(min(max(float(value), 0.0), 1.0), 4)


def _legacy_source(row: dict[str, Any]) -> str | None:
    if row.get("source"):
        return row["source"]
    metadata = row.get("metadata")
    if isinstance(metadata, str):
        try:
            metadata = json.loads(metadata)
        except json.JSONDecodeError:
            return None
    if isinstance(metadata, dict):
        return metadata.get("source")
    return None


def _group_by_user(rows: list[dict[str, Any]]) -> dict[str, list[dict[str, Any]]]:
    grouped: dict[str, list[dict[str, Any]]] = {}
    for row in rows:
        grouped.setdefault(row.get("user_id"), []).append(row)
    return grouped


class MemoryMigration:
    """旧记忆表迁移器"""

    def __init__(self, store: MemoryStore):
        self.store = store

    async def _load_legacy_rows(self) -> list[dict[str, Any]] | None:
        """旧表不存在返回 None"""
        if not await self.store.table_exists(LEGACY_TABLE):
            return None
        rows = await self.store.query_rows(
            f"SELECT * FROM {LEGACY_TABLE} ORDER BY user_id, timestamp DESC"
        )
        return [dict(row) for row in rows]

    async def _migrate_user(self, user_id: str, rows: list[dict[str, Any]]) -> dict[str, int]:
        migrated = 0
        skipped = 0

        for row in rows:
            try:
                content = row.get("content") or ""
                category, sub_type = infer_category(content)
                await self.store.save_memory(MemoryRecord(
                    user_id=user_id,
                    category=category,
                    sub_type=sub_type,
                    content=content,
                    confidence=legacy_confidence(row),
                    source=MemorySource.MIGRATION.value,
                    metadata={
                        "migrated_from": LEGACY_TABLE,
                        "original_id": row.get("id"),
                        "original_timestamp": row.get("timestamp"),
                        "original_source": _legacy_source(row),
                    },
                ))
                migrated += 1
            except Exception as e:
                logger.debug(f"[Migration] Skipped legacy memory {row.get('id')} of {user_id}: {e}")
                skipped += 1

        return {"migrated_count": migrated, "skipped_count": skipped}

    async def run(self, *, dry_run: bool = False, clear_existing: bool = False) -> dict[str, Any]:
        """
        执行迁移

        Args:
            dry_run: 只做分类预览，不写入
            clear_existing: 迁移前清空 structured_memories

        Returns:
            {success, ...}；不会抛出，失败时 success=False 并带 error
        """
        logger.info("[Migration] Starting legacy memory migration...")

        try:
            rows = await self._load_legacy_rows()
            if rows is None:
                logger.info("[Migration] Legacy table not found, nothing to migrate")
                return {"success": True, "message": "无需迁移"}
            if not rows:
                logger.info("[Migration] Legacy table is empty, nothing to migrate")
                return {"success": True, "message": "无数据需要迁移"}

            logger.info(f"[Migration] Found {len(rows)} legacy memories")
            by_user = _group_by_user(rows)

            if dry_run:
                preview = []
                for user_id, user_rows in by_user.items():
                    sample = []
                    for row in user_rows[:3]:
                        content = row.get("content") or ""
                        category, sub_type = infer_category(content)
                        sample.append({
                            "content": content[:50],
                            "category": category,
                            "sub_type": sub_type,
                        })
                    preview.append({"user_id": user_id, "count": len(user_rows), "sample": sample})

                return {
                    "success": True,
                    "dry_run": True,
                    "total_memories": len(rows),
                    "user_count": len(by_user),
                    "preview": preview,
                }

            if clear_existing:
                cleared = await self.store.clear_all()
                logger.info(f"[Migration] Cleared {cleared} existing structured memories")

            total_migrated = 0
            total_skipped = 0
            results = []
            for user_id, user_rows in by_user.items():
                result = await self._migrate_user(user_id, user_rows)
                total_migrated += result["migrated_count"]
                total_skipped += result["skipped_count"]
                results.append({"user_id": user_id, **result})

            logger.info(
                f"[Migration] Done: {total_migrated} migrated, {total_skipped} skipped"
            )
            return {
                "success": True,
                "total_memories": len(rows),
                "migrated_count": total_migrated,
                "skipped_count": total_skipped,
                "user_count": len(by_user),
                "results": results,
            }

        except Exception as e:
            logger.error(f"[Migration] Migration failed: {e}")
            return {"success": False, "error": str(e)}

    async def check_status(self) -> dict[str, Any]:
        """旧表/新表/已迁移条数，以及是否还需要迁移"""
        old_count = 0
        if await self.store.table_exists(LEGACY_TABLE):
            rows = await self.store.query_rows(f"SELECT COUNT(*) AS count FROM {LEGACY_TABLE}")
            old_count = rows[0]["count"]

        new_count = await self.store.count_all()
        migrated_count = await self.store.count_by_source(MemorySource.MIGRATION.value)

        return {
            "old_table_count": old_count,
            "new_table_count": new_count,
            "migrated_count": migrated_count,
            "needs_migration": old_count > 0 and migrated_count == 0,
        }

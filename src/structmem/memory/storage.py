"""
结构化记忆存储

SQLite (aiosqlite) 上的 structured_memories 表:
- 写入去重: 同一 (user, category, group) 下内容相似的活跃记忆原地更新
- 查询: 按用户/群组/关键词, 默认只读活跃记忆
- 分类树、统计、上下文构建
- 基于内容哈希的合并去重

存储层错误统一包装为 PersistenceError 抛给调用方，不做内部重试。
"""

import asyncio
import json
import logging
import re
import time
from collections.abc import Callable, Iterable, Sequence
from pathlib import Path
from typing import Any

import aiosqlite

from ..errors import PersistenceError, ValidationError
from .similarity import content_hash, is_similar_content
from .types import (
    CATEGORY_ORDER,
    MemoryRecord,
    MemorySource,
    get_category_label,
    get_sub_type_label,
    is_valid_category,
    is_valid_source,
    is_valid_sub_type,
)

logger = logging.getLogger(__name__)

DAY_MS = 24 * 60 * 60 * 1000


class _AnyGroup:
    """group_id 不参与过滤的标记"""

    def __repr__(self) -> str:
        return "ANY_GROUP"


ANY_GROUP: Any = _AnyGroup()

# update_memory 允许修改的字段
_UPDATABLE_FIELDS = (
    "content",
    "category",
    "sub_type",
    "confidence",
    "metadata",
    "is_active",
    "updated_at",
)

# 构建上下文时每个分类最多条数
CONTEXT_ITEMS_PER_CATEGORY = 5

_LINEBREAK_RE = re.compile(r"\s*[\r\n]+\s*")


def _now_ms() -> int:
    return int(time.time() * 1000)


def normalize_record_content(content: str) -> str:
    """去首尾空白，多行折叠为一行"""
    return _LINEBREAK_RE.sub(" ", content.strip())


class MemoryStore:
    """
    结构化记忆存储

    Usage:
        async with MemoryStore("data/memory.db") as store:
            await store.save_memory(MemoryRecord(user_id="u1", category="profile", content="..."))
            context = await store.build_memory_context("u1")
    """

    def __init__(
        self,
        db_path: str | Path,
        *,
        clock: Callable[[], int] | None = None,
    ) -> None:
        self.db_path = Path(db_path)
        self._clock = clock or _now_ms
        self._connection: aiosqlite.Connection | None = None
        # 相似检查与写入放在同一把锁里，避免同进程内并发写出重复行
        self._write_lock = asyncio.Lock()

    # ======================================================================
    # 连接管理
    # ======================================================================

    async def connect(self) -> None:
        """连接数据库并建表"""
        if self._connection is not None:
            return
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        try:
            self._connection = await aiosqlite.connect(self.db_path)
            self._connection.row_factory = aiosqlite.Row
            await self._init_tables()
        except aiosqlite.Error as e:
            raise PersistenceError(f"Failed to open memory database: {e}") from e

        logger.debug(f"[MemoryStore] Connected: {self.db_path}")

    async def close(self) -> None:
        if self._connection:
            await self._connection.close()
            self._connection = None
            logger.debug("[MemoryStore] Connection closed")

    async def __aenter__(self) -> "MemoryStore":
        await self.connect()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    def now(self) -> int:
        """当前毫秒时间戳（可注入时钟）"""
        return self._clock()

    async def _init_tables(self) -> None:
        await self._connection.executescript("""
            CREATE TABLE IF NOT EXISTS structured_memories (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id TEXT NOT NULL,
                group_id TEXT,
                category TEXT NOT NULL,
                sub_type TEXT,
                content TEXT NOT NULL,
                confidence REAL DEFAULT 0.8,
                source TEXT DEFAULT 'auto',
                metadata TEXT,
                created_at INTEGER NOT NULL,
                updated_at INTEGER NOT NULL,
                expires_at INTEGER,
                is_active INTEGER DEFAULT 1
            );

            CREATE INDEX IF NOT EXISTS idx_sm_user ON structured_memories(user_id);
            CREATE INDEX IF NOT EXISTS idx_sm_user_category ON structured_memories(user_id, category);
            CREATE INDEX IF NOT EXISTS idx_sm_group ON structured_memories(group_id);
            CREATE INDEX IF NOT EXISTS idx_sm_active ON structured_memories(is_active);
            CREATE INDEX IF NOT EXISTS idx_sm_updated ON structured_memories(updated_at);
        """)
        await self._connection.commit()

    # ======================================================================
    # 底层执行（统一错误包装）
    # ======================================================================

    def _require_connection(self) -> aiosqlite.Connection:
        if self._connection is None:
            raise PersistenceError("Memory store is not connected")
        return self._connection

    async def _write(self, sql: str, params: Sequence[Any] = ()) -> aiosqlite.Cursor:
        conn = self._require_connection()
        try:
            cursor = await conn.execute(sql, params)
            await conn.commit()
            return cursor
        except aiosqlite.Error as e:
            logger.error(f"[MemoryStore] Write failed: {e}")
            raise PersistenceError(f"Write failed: {e}") from e

    async def query_rows(self, sql: str, params: Sequence[Any] = ()) -> list[aiosqlite.Row]:
        """只读查询（迁移读取旧表也走这里）"""
        conn = self._require_connection()
        try:
            cursor = await conn.execute(sql, params)
            return list(await cursor.fetchall())
        except aiosqlite.Error as e:
            logger.error(f"[MemoryStore] Query failed: {e}")
            raise PersistenceError(f"Query failed: {e}") from e

    async def _query_one(self, sql: str, params: Sequence[Any] = ()) -> aiosqlite.Row | None:
        rows = await self.query_rows(sql, params)
        return rows[0] if rows else None

    async def table_exists(self, name: str) -> bool:
        row = await self._query_one(
            "SELECT name FROM sqlite_master WHERE type = 'table' AND name = ?",
            (name,),
        )
        return row is not None

    # ======================================================================
    # 基础 CRUD
    # ======================================================================

    def _validate(self, record: MemoryRecord) -> None:
        if not record.user_id:
            raise ValidationError("user_id is required", field="user_id")
        if not record.category:
            raise ValidationError("category is required", field="category")
        if not record.content or not record.content.strip():
            raise ValidationError("content is required", field="content")
        if not is_valid_category(record.category):
            raise ValidationError(f"Invalid category: {record.category}", field="category")
        if not is_valid_sub_type(record.category, record.sub_type):
            raise ValidationError(
                f"Invalid sub_type '{record.sub_type}' for category '{record.category}'",
                field="sub_type",
            )
        if not isinstance(record.confidence, (int, float)) or not 0 <= record.confidence <= 1:
            raise ValidationError(
                f"confidence must be within [0, 1], got {record.confidence!r}",
                field="confidence",
            )
        if not is_valid_source(record.source):
            raise ValidationError(f"Invalid source: {record.source}", field="source")

    async def save_memory(self, record: MemoryRecord) -> MemoryRecord:
        """
        保存结构化记忆

        存在相似的活跃记忆时原地更新（新内容覆盖旧内容，可信度取较大值），
        否则插入新行。

        Raises:
            ValidationError: 必填字段缺失或分类/子类型/来源非法
            PersistenceError: 存储层错误
        """
        self._validate(record)
        content = normalize_record_content(record.content)

        async with self._write_lock:
            existing = await self.find_similar_memory(
                record.user_id, record.category, content, record.group_id
            )
            if existing:
                now = self.now()
                updated = await self.update_memory(existing.id, {
                    "content": content,
                    "confidence": max(existing.confidence, record.confidence),
                    "updated_at": max(now, existing.created_at),
                })
                logger.debug(
                    f"[MemoryStore] Merged into existing memory: id={existing.id}, "
                    f"user_id={record.user_id}, category={record.category}"
                )
                return updated

            now = self.now()
            cursor = await self._write(
                """
                INSERT INTO structured_memories
                (user_id, group_id, category, sub_type, content, confidence, source,
                 metadata, created_at, updated_at, expires_at, is_active)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 1)
                """,
                (
                    record.user_id,
                    record.group_id,
                    record.category,
                    record.sub_type,
                    content,
                    float(record.confidence),
                    record.source,
                    json.dumps(record.metadata, ensure_ascii=False) if record.metadata else None,
                    now,
                    now,
                    record.expires_at,
                ),
            )

        logger.debug(
            f"[MemoryStore] Saved memory: user_id={record.user_id}, "
            f"category={record.category}, id={cursor.lastrowid}"
        )
        return MemoryRecord(
            id=cursor.lastrowid,
            user_id=record.user_id,
            group_id=record.group_id,
            category=record.category,
            sub_type=record.sub_type,
            content=content,
            confidence=float(record.confidence),
            source=record.source,
            metadata=record.metadata,
            created_at=now,
            updated_at=now,
            expires_at=record.expires_at,
            is_active=True,
        )

    async def save_memories(self, records: Iterable[MemoryRecord]) -> list[dict[str, Any]]:
        """批量保存，单条失败不影响其他条目"""
        results: list[dict[str, Any]] = []
        for record in records:
            try:
                saved = await self.save_memory(record)
                results.append({"success": True, "memory": saved, "error": None})
            except (ValidationError, PersistenceError) as e:
                logger.debug(f"[MemoryStore] Batch item rejected: {e}")
                results.append({"success": False, "memory": record, "error": str(e)})
        return results

    async def find_similar_memory(
        self,
        user_id: str,
        category: str,
        content: str,
        group_id: str | None = None,
    ) -> MemoryRecord | None:
        """在同一用户、分类、群组（NULL 只匹配 NULL）的活跃记忆中查找相似内容"""
        query = (
            "SELECT * FROM structured_memories "
            "WHERE user_id = ? AND category = ? AND is_active = 1"
        )
        params: list[Any] = [user_id, category]
        if group_id is not None:
            query += " AND group_id = ?"
            params.append(group_id)
        else:
            query += " AND group_id IS NULL"
        query += " ORDER BY updated_at DESC, id DESC"

        for row in await self.query_rows(query, params):
            if is_similar_content(row["content"], content):
                return self._row_to_record(row)
        return None

    async def update_memory(self, memory_id: int, updates: dict[str, Any]) -> MemoryRecord | None:
        """
        按白名单字段更新记忆，未知字段忽略

        未显式传入 updated_at 时总是刷新为当前时间。
        没有任何可更新字段时返回 None；记录不存在时也返回 None。
        修改 category 或 sub_type 时，按合并后的组合重新校验子类型。
        """
        filtered = {k: v for k, v in updates.items() if k in _UPDATABLE_FIELDS}
        if not filtered:
            return None

        if "category" in filtered and not is_valid_category(filtered["category"]):
            raise ValidationError(f"Invalid category: {filtered['category']}", field="category")
        if "category" in filtered or "sub_type" in filtered:
            current = await self.get_memory_by_id(memory_id)
            if current is None:
                return None
            category = filtered.get("category", current.category)
            sub_type = filtered.get("sub_type", current.sub_type)
            if not is_valid_sub_type(category, sub_type):
                raise ValidationError(
                    f"Invalid sub_type '{sub_type}' for category '{category}'",
                    field="sub_type",
                )
        if "content" in filtered:
            if not filtered["content"] or not str(filtered["content"]).strip():
                raise ValidationError("content is required", field="content")
            filtered["content"] = normalize_record_content(filtered["content"])
        if "confidence" in filtered and (
            not isinstance(filtered["confidence"], (int, float))
            or not 0 <= filtered["confidence"] <= 1
        ):
            raise ValidationError(
                f"confidence must be within [0, 1], got {filtered['confidence']!r}",
                field="confidence",
            )
        if "metadata" in filtered:
            filtered["metadata"] = (
                json.dumps(filtered["metadata"], ensure_ascii=False)
                if filtered["metadata"]
                else None
            )
        if "is_active" in filtered:
            filtered["is_active"] = 1 if filtered["is_active"] else 0

        filtered.setdefault("updated_at", self.now())
        set_clause = ", ".join(f"{k} = ?" for k in filtered)
        values = list(filtered.values()) + [memory_id]

        await self._write(
            f"UPDATE structured_memories SET {set_clause} WHERE id = ?", values
        )
        return await self.get_memory_by_id(memory_id)

    async def get_memory_by_id(self, memory_id: int) -> MemoryRecord | None:
        row = await self._query_one(
            "SELECT * FROM structured_memories WHERE id = ?", (memory_id,)
        )
        return self._row_to_record(row) if row else None

    async def delete_memory(self, memory_id: int, hard: bool = False) -> bool:
        """删除记忆（默认软删除: is_active=0 并刷新 updated_at）"""
        if hard:
            cursor = await self._write(
                "DELETE FROM structured_memories WHERE id = ?", (memory_id,)
            )
        else:
            cursor = await self._write(
                "UPDATE structured_memories SET is_active = 0, updated_at = MAX(?, created_at) "
                "WHERE id = ?",
                (self.now(), memory_id),
            )
        return cursor.rowcount > 0

    async def clear_user_memories(self, user_id: str, hard: bool = False) -> int:
        """清空用户所有记忆，返回受影响行数"""
        if hard:
            cursor = await self._write(
                "DELETE FROM structured_memories WHERE user_id = ?", (user_id,)
            )
        else:
            cursor = await self._write(
                "UPDATE structured_memories SET is_active = 0, updated_at = MAX(?, created_at) "
                "WHERE user_id = ? AND is_active = 1",
                (self.now(), user_id),
            )
        logger.info(f"[MemoryStore] Cleared {cursor.rowcount} memories of user {user_id} (hard={hard})")
        return cursor.rowcount

    async def clear_all(self) -> int:
        """物理删除全部结构化记忆（迁移 clear_existing 使用）"""
        cursor = await self._write("DELETE FROM structured_memories")
        return cursor.rowcount

    # ======================================================================
    # 查询
    # ======================================================================

    async def get_memories_by_user(
        self,
        user_id: str,
        *,
        category: str | None = None,
        group_id: str | None = ANY_GROUP,
        include_inactive: bool = False,
        limit: int = 100,
    ) -> list[MemoryRecord]:
        """
        获取用户记忆，按 updated_at 倒序

        group_id: 不传=不过滤; None=只取非群组记忆; 字符串=指定群组
        """
        query = "SELECT * FROM structured_memories WHERE user_id = ?"
        params: list[Any] = [user_id]

        if not include_inactive:
            query += " AND is_active = 1"
        if category:
            query += " AND category = ?"
            params.append(category)
        if group_id is not ANY_GROUP:
            if group_id is None:
                query += " AND group_id IS NULL"
            else:
                query += " AND group_id = ?"
                params.append(group_id)

        query += " ORDER BY updated_at DESC, id DESC LIMIT ?"
        params.append(limit)

        return [self._row_to_record(row) for row in await self.query_rows(query, params)]

    async def get_memories_by_group(
        self,
        group_id: str,
        *,
        category: str | None = None,
        user_id: str | None = None,
        include_inactive: bool = False,
        limit: int = 100,
    ) -> list[MemoryRecord]:
        query = "SELECT * FROM structured_memories WHERE group_id = ?"
        params: list[Any] = [group_id]

        if not include_inactive:
            query += " AND is_active = 1"
        if category:
            query += " AND category = ?"
            params.append(category)
        if user_id:
            query += " AND user_id = ?"
            params.append(user_id)

        query += " ORDER BY updated_at DESC, id DESC LIMIT ?"
        params.append(limit)

        return [self._row_to_record(row) for row in await self.query_rows(query, params)]

    async def search_memories(
        self,
        query: str,
        *,
        user_id: str | None = None,
        group_id: str | None = None,
        category: str | None = None,
        limit: int = 20,
    ) -> list[MemoryRecord]:
        """内容子串搜索，按 (confidence desc, updated_at desc) 排序；查询少于 2 个字符返回空"""
        if not query or len(query) < 2:
            return []

        safe_query = re.sub(r"([\\%_])", r"\\\1", query[:100])

        sql = (
            "SELECT * FROM structured_memories "
            "WHERE is_active = 1 AND content LIKE ? ESCAPE '\\'"
        )
        params: list[Any] = [f"%{safe_query}%"]

        if user_id:
            sql += " AND user_id = ?"
            params.append(user_id)
        if group_id:
            sql += " AND group_id = ?"
            params.append(group_id)
        if category:
            sql += " AND category = ?"
            params.append(category)

        sql += " ORDER BY confidence DESC, updated_at DESC LIMIT ?"
        params.append(limit)

        return [self._row_to_record(row) for row in await self.query_rows(sql, params)]

    async def get_memory_tree(
        self,
        user_id: str,
        *,
        group_id: str | None = ANY_GROUP,
        include_inactive: bool = False,
    ) -> dict[str, dict[str, Any]]:
        """
        按分类组织的记忆树

        每个分类都有条目（即使为空）: {label, items, count}
        """
        memories = await self.get_memories_by_user(
            user_id, group_id=group_id, include_inactive=include_inactive, limit=500
        )

        tree: dict[str, dict[str, Any]] = {
            category: {"label": get_category_label(category), "items": [], "count": 0}
            for category in CATEGORY_ORDER
        }

        for memory in memories:
            node = tree.get(memory.category)
            if node is None:
                continue
            memory.extra["sub_type_label"] = (
                get_sub_type_label(memory.sub_type) if memory.sub_type else None
            )
            node["items"].append(memory)
            node["count"] += 1

        return tree

    # ======================================================================
    # 统计
    # ======================================================================

    async def get_stats(self, user_id: str | None = None) -> dict[str, Any]:
        """活跃记忆统计: 总数、按分类计数（全局统计另含用户数）"""
        if user_id:
            total = await self._query_one(
                "SELECT COUNT(*) AS count FROM structured_memories "
                "WHERE user_id = ? AND is_active = 1",
                (user_id,),
            )
            by_category = await self.query_rows(
                "SELECT category, COUNT(*) AS count FROM structured_memories "
                "WHERE user_id = ? AND is_active = 1 GROUP BY category",
                (user_id,),
            )
            return {
                "total": total["count"],
                "by_category": {row["category"]: row["count"] for row in by_category},
            }

        total = await self._query_one(
            "SELECT COUNT(*) AS count FROM structured_memories WHERE is_active = 1"
        )
        users = await self._query_one(
            "SELECT COUNT(DISTINCT user_id) AS count FROM structured_memories WHERE is_active = 1"
        )
        by_category = await self.query_rows(
            "SELECT category, COUNT(*) AS count FROM structured_memories "
            "WHERE is_active = 1 GROUP BY category"
        )
        return {
            "total": total["count"],
            "users": users["count"],
            "by_category": {row["category"]: row["count"] for row in by_category},
        }

    async def list_users(self) -> list[dict[str, Any]]:
        """所有有活跃记忆的用户，按最近更新时间倒序"""
        rows = await self.query_rows("""
            SELECT
                user_id,
                COUNT(*) AS count,
                MAX(updated_at) AS last_update,
                GROUP_CONCAT(DISTINCT category) AS categories
            FROM structured_memories
            WHERE is_active = 1
            GROUP BY user_id
            ORDER BY last_update DESC
        """)
        return [
            {
                "user_id": row["user_id"],
                "count": row["count"],
                "last_update": row["last_update"],
                "categories": row["categories"].split(",") if row["categories"] else [],
            }
            for row in rows
        ]

    async def count_by_source(self, source: str) -> int:
        row = await self._query_one(
            "SELECT COUNT(*) AS count FROM structured_memories WHERE source = ?",
            (source,),
        )
        return row["count"]

    async def count_all(self) -> int:
        row = await self._query_one("SELECT COUNT(*) AS count FROM structured_memories")
        return row["count"]

    # ======================================================================
    # 维护操作
    # ======================================================================

    async def merge_memories(self, user_id: str) -> dict[str, int]:
        """
        基于内容哈希的合并去重

        同一 (category, hash) 桶里保留可信度更高的一条，
        可信度相同保留 updated_at 更新的一条，其余物理删除。
        """
        memories = await self.get_memories_by_user(user_id, limit=1000)
        kept: dict[tuple[str, str], MemoryRecord] = {}
        to_delete: list[int] = []

        for memory in memories:
            key = (memory.category, content_hash(memory.content))
            existing = kept.get(key)
            if existing is None:
                kept[key] = memory
                continue

            if (memory.confidence, memory.updated_at) > (existing.confidence, existing.updated_at):
                to_delete.append(existing.id)
                kept[key] = memory
            else:
                to_delete.append(memory.id)

        for memory_id in to_delete:
            await self.delete_memory(memory_id, hard=True)

        if to_delete:
            logger.info(f"[MemoryStore] Merged memories of {user_id}: removed {len(to_delete)}")

        return {
            "original_count": len(memories),
            "merged_count": len(kept),
            "deleted_count": len(to_delete),
        }

    async def decay_confidence(
        self,
        *,
        decay_rate: float = 0.95,
        min_confidence: float = 0.3,
        days_threshold: int = 30,
    ) -> int:
        """
        批量衰减长时间未更新的活跃记忆可信度，不低于 min_confidence

        被衰减的记录 updated_at 刷新为当前时间，同一批记录下次衰减要再等 days_threshold 天。
        """
        now = self.now()
        threshold = now - days_threshold * DAY_MS
        cursor = await self._write(
            """
            UPDATE structured_memories
            SET confidence = MAX(confidence * ?, ?),
                updated_at = ?
            WHERE is_active = 1
              AND updated_at < ?
              AND confidence > ?
            """,
            (decay_rate, min_confidence, now, threshold, min_confidence),
        )
        return cursor.rowcount

    # ======================================================================
    # 上下文构建
    # ======================================================================

    async def build_memory_context(
        self,
        user_id: str,
        *,
        group_id: str | None = ANY_GROUP,
        max_items: int = 15,
    ) -> str:
        """
        构建注入提示词的记忆上下文

        取最近更新的 max_items*2 条活跃记忆，按固定分类顺序输出，
        每个分类最多 5 条（可信度优先），用全角分号连接。
        """
        memories = await self.get_memories_by_user(
            user_id, group_id=group_id, limit=max_items * 2
        )
        if not memories:
            return ""

        by_category: dict[str, list[MemoryRecord]] = {}
        for memory in memories:
            by_category.setdefault(memory.category, []).append(memory)

        parts: list[str] = []
        for category in CATEGORY_ORDER:
            items = by_category.get(category)
            if not items:
                continue
            items.sort(key=lambda m: (-m.confidence, -m.updated_at, m.id))
            contents = "；".join(m.content for m in items[:CONTEXT_ITEMS_PER_CATEGORY])
            parts.append(f"{get_category_label(category)}：{contents}")

        if not parts:
            return ""

        return "\n【用户记忆】\n" + "\n".join(parts) + "\n"

    # ======================================================================
    # 辅助
    # ======================================================================

    @staticmethod
    def _row_to_record(row: aiosqlite.Row) -> MemoryRecord:
        metadata = row["metadata"]
        return MemoryRecord(
            id=row["id"],
            user_id=row["user_id"],
            group_id=row["group_id"],
            category=row["category"],
            sub_type=row["sub_type"],
            content=row["content"],
            confidence=row["confidence"],
            source=row["source"] or MemorySource.AUTO.value,
            metadata=json.loads(metadata) if metadata else None,
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            expires_at=row["expires_at"],
            is_active=bool(row["is_active"]),
        )

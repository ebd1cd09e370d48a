"""MemoryStore: 写入去重、查询、分类树、上下文构建、合并与衰减"""

import asyncio

import pytest

from structmem.errors import PersistenceError, ValidationError
from structmem.memory import MemoryRecord, MemoryStore
from structmem.memory.storage import ANY_GROUP


def _record(content="用户名叫小明", category="profile", sub_type="name", **kwargs):
    kwargs.setdefault("user_id", "u1")
    return MemoryRecord(category=category, sub_type=sub_type, content=content, **kwargs)


class TestSaveMemory:
    @pytest.mark.asyncio
    async def test_insert_new(self, store, clock):
        saved = await store.save_memory(_record())
        assert saved.id is not None
        assert saved.created_at == clock.now
        assert saved.updated_at == clock.now
        assert saved.is_active

    @pytest.mark.asyncio
    async def test_duplicate_save_keeps_one_row(self, store):
        first = await store.save_memory(_record())
        second = await store.save_memory(_record())

        assert second.id == first.id
        rows = await store.get_memories_by_user("u1")
        assert len(rows) == 1
        assert rows[0].confidence >= 0.8

    @pytest.mark.asyncio
    async def test_merge_takes_max_confidence_and_new_content(self, store, clock):
        first = await store.save_memory(_record("喜欢猫", "preference", "like", confidence=0.9))
        clock.advance(ms=1000)
        merged = await store.save_memory(_record("很喜欢猫咪", "preference", "like", confidence=0.6))

        assert merged.id == first.id
        assert merged.content == "很喜欢猫咪"
        assert merged.confidence == 0.9
        assert merged.updated_at == clock.now

    @pytest.mark.asyncio
    async def test_group_scoping(self, store):
        await store.save_memory(_record())
        await store.save_memory(_record(group_id="g1"))
        await store.save_memory(_record(group_id="g2"))

        assert len(await store.get_memories_by_user("u1")) == 3
        assert len(await store.get_memories_by_user("u1", group_id=None)) == 1
        assert len(await store.get_memories_by_user("u1", group_id="g1")) == 1

    @pytest.mark.asyncio
    async def test_inactive_record_is_not_merge_target(self, store):
        first = await store.save_memory(_record())
        await store.delete_memory(first.id)
        second = await store.save_memory(_record())
        assert second.id != first.id

    @pytest.mark.asyncio
    async def test_content_collapsed_to_single_line(self, store):
        saved = await store.save_memory(_record("  第一行\n第二行  ", "custom", None))
        assert saved.content == "第一行 第二行"

    @pytest.mark.asyncio
    async def test_metadata_roundtrip(self, store):
        saved = await store.save_memory(_record(metadata={"origin": "测试"}))
        loaded = await store.get_memory_by_id(saved.id)
        assert loaded.metadata == {"origin": "测试"}

    @pytest.mark.asyncio
    async def test_concurrent_saves_do_not_duplicate(self, store):
        await asyncio.gather(*(store.save_memory(_record()) for _ in range(5)))
        assert len(await store.get_memories_by_user("u1")) == 1


class TestValidation:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("record,field", [
        (MemoryRecord(user_id="", category="profile", content="x"), "user_id"),
        (MemoryRecord(user_id="u1", category="", content="x"), "category"),
        (MemoryRecord(user_id="u1", category="profile", content="   "), "content"),
        (MemoryRecord(user_id="u1", category="bogus", content="x"), "category"),
        (MemoryRecord(user_id="u1", category="profile", sub_type="birthday", content="x"), "sub_type"),
        (MemoryRecord(user_id="u1", category="profile", content="x", confidence=1.5), "confidence"),
        (MemoryRecord(user_id="u1", category="profile", content="x", source="robot"), "source"),
    ])
    async def test_rejected(self, store, record, field):
        with pytest.raises(ValidationError) as exc_info:
            await store.save_memory(record)
        assert exc_info.value.field == field
        assert await store.count_all() == 0

    @pytest.mark.asyncio
    async def test_custom_accepts_any_sub_type(self, store):
        saved = await store.save_memory(_record("自定义内容", "custom", "whatever"))
        assert saved.sub_type == "whatever"

    @pytest.mark.asyncio
    async def test_save_memories_reports_per_item(self, store):
        results = await store.save_memories([
            _record("用户名叫小明"),
            MemoryRecord(user_id="u1", category="bogus", content="x"),
            _record("25岁", "profile", "age"),
        ])
        assert [r["success"] for r in results] == [True, False, True]
        assert results[1]["error"]
        assert await store.count_all() == 2


class TestUpdateAndDelete:
    @pytest.mark.asyncio
    async def test_update_whitelisted_fields(self, store, clock):
        saved = await store.save_memory(_record())
        clock.advance(ms=500)
        updated = await store.update_memory(saved.id, {"confidence": 0.95, "bogus": 1})
        assert updated.confidence == 0.95
        assert updated.updated_at == clock.now

    @pytest.mark.asyncio
    async def test_update_keeps_caller_updated_at(self, store, clock):
        saved = await store.save_memory(_record())
        updated = await store.update_memory(saved.id, {"updated_at": clock.now + 42})
        assert updated.updated_at == clock.now + 42

    @pytest.mark.asyncio
    async def test_update_rejects_unknown_sub_type(self, store):
        saved = await store.save_memory(_record())
        with pytest.raises(ValidationError) as exc_info:
            await store.update_memory(saved.id, {"sub_type": "bogus"})
        assert exc_info.value.field == "sub_type"

        unchanged = await store.get_memory_by_id(saved.id)
        assert (unchanged.category, unchanged.sub_type) == ("profile", "name")

    @pytest.mark.asyncio
    async def test_update_category_rechecks_stored_sub_type(self, store):
        saved = await store.save_memory(_record())
        with pytest.raises(ValidationError) as exc_info:
            await store.update_memory(saved.id, {"category": "event"})
        assert exc_info.value.field == "sub_type"

        moved = await store.update_memory(saved.id, {"category": "event", "sub_type": "plan"})
        assert (moved.category, moved.sub_type) == ("event", "plan")
        custom = await store.update_memory(saved.id, {"category": "custom", "sub_type": "anything"})
        assert (custom.category, custom.sub_type) == ("custom", "anything")

    @pytest.mark.asyncio
    async def test_update_missing_record(self, store):
        assert await store.update_memory(999, {"sub_type": "age"}) is None

    @pytest.mark.asyncio
    async def test_update_rejects_non_numeric_confidence(self, store):
        saved = await store.save_memory(_record())
        with pytest.raises(ValidationError) as exc_info:
            await store.update_memory(saved.id, {"confidence": "high"})
        assert exc_info.value.field == "confidence"

    @pytest.mark.asyncio
    async def test_update_without_valid_fields(self, store):
        saved = await store.save_memory(_record())
        assert await store.update_memory(saved.id, {"nope": 1}) is None

    @pytest.mark.asyncio
    async def test_soft_delete_hides_record(self, store, clock):
        saved = await store.save_memory(_record())
        clock.advance(ms=1000)
        assert await store.delete_memory(saved.id)

        assert await store.get_memories_by_user("u1") == []
        inactive = await store.get_memories_by_user("u1", include_inactive=True)
        assert len(inactive) == 1
        assert inactive[0].is_active is False
        assert inactive[0].updated_at == clock.now

    @pytest.mark.asyncio
    async def test_hard_delete(self, store):
        saved = await store.save_memory(_record())
        assert await store.delete_memory(saved.id, hard=True)
        assert await store.get_memory_by_id(saved.id) is None
        assert not await store.delete_memory(saved.id, hard=True)

    @pytest.mark.asyncio
    async def test_clear_user_memories(self, store):
        await store.save_memory(_record())
        await store.save_memory(_record("25岁", "profile", "age"))
        await store.save_memory(_record(user_id="u2"))

        assert await store.clear_user_memories("u1") == 2
        assert await store.get_memories_by_user("u1") == []
        assert len(await store.get_memories_by_user("u2")) == 1


class TestQueries:
    @pytest.mark.asyncio
    async def test_ordered_by_updated_desc(self, store, clock):
        await store.save_memory(_record("用户名叫小明"))
        clock.advance(ms=10)
        await store.save_memory(_record("25岁", "profile", "age"))

        rows = await store.get_memories_by_user("u1")
        assert [r.content for r in rows] == ["25岁", "用户名叫小明"]

    @pytest.mark.asyncio
    async def test_category_filter_and_limit(self, store):
        await store.save_memory(_record("用户名叫小明"))
        await store.save_memory(_record("喜欢猫", "preference", "like"))
        await store.save_memory(_record("讨厌香菜", "preference", "dislike"))

        prefs = await store.get_memories_by_user("u1", category="preference")
        assert {r.content for r in prefs} == {"喜欢猫", "讨厌香菜"}
        assert len(await store.get_memories_by_user("u1", limit=1)) == 1

    @pytest.mark.asyncio
    async def test_get_memories_by_group(self, store):
        await store.save_memory(_record(group_id="g1"))
        await store.save_memory(_record(user_id="u2", group_id="g1"))
        await store.save_memory(_record(user_id="u3", group_id="g2"))

        assert len(await store.get_memories_by_group("g1")) == 2
        assert len(await store.get_memories_by_group("g1", user_id="u2")) == 1

    @pytest.mark.asyncio
    async def test_search(self, store):
        await store.save_memory(_record("喜欢 Python 编程", "preference", "like", confidence=0.7))
        await store.save_memory(_record("讨厌写 python 文档", "preference", "dislike", confidence=0.9))
        await store.save_memory(_record("在北京", "profile", "location"))

        results = await store.search_memories("PYTHON", user_id="u1")
        assert [r.content for r in results] == ["讨厌写 python 文档", "喜欢 Python 编程"]

    @pytest.mark.asyncio
    async def test_search_short_query_returns_empty(self, store):
        await store.save_memory(_record())
        assert await store.search_memories("小") == []
        assert await store.search_memories("") == []

    @pytest.mark.asyncio
    async def test_search_escapes_wildcards(self, store):
        await store.save_memory(_record("完成度100%了", "custom", None))
        await store.save_memory(_record("今天走了10000步", "custom", None))
        results = await store.search_memories("100%")
        assert [r.content for r in results] == ["完成度100%了"]


class TestTreeAndStats:
    @pytest.mark.asyncio
    async def test_tree_has_every_category(self, store):
        await store.save_memory(_record("25岁", "profile", "age"))
        tree = await store.get_memory_tree("u1")

        assert list(tree) == ["profile", "preference", "event", "relation", "topic", "custom"]
        assert tree["profile"]["count"] == 1
        assert tree["profile"]["label"] == "基本信息"
        assert tree["profile"]["items"][0].extra["sub_type_label"] == "年龄"
        assert tree["event"] == {"label": "重要事件", "items": [], "count": 0}

    @pytest.mark.asyncio
    async def test_stats(self, store):
        await store.save_memory(_record())
        await store.save_memory(_record("喜欢猫", "preference", "like"))
        await store.save_memory(_record(user_id="u2"))

        user_stats = await store.get_stats("u1")
        assert user_stats == {"total": 2, "by_category": {"profile": 1, "preference": 1}}

        global_stats = await store.get_stats()
        assert global_stats["total"] == 3
        assert global_stats["users"] == 2

    @pytest.mark.asyncio
    async def test_list_users(self, store, clock):
        await store.save_memory(_record(user_id="u1"))
        clock.advance(ms=10)
        await store.save_memory(_record("喜欢猫", "preference", "like", user_id="u2"))
        await store.save_memory(_record(user_id="u2"))

        users = await store.list_users()
        assert [u["user_id"] for u in users] == ["u2", "u1"]
        assert users[0]["count"] == 2
        assert set(users[0]["categories"]) == {"profile", "preference"}


class TestMemoryContext:
    @pytest.mark.asyncio
    async def test_empty_user(self, store):
        assert await store.build_memory_context("nobody") == ""

    @pytest.mark.asyncio
    async def test_fixed_order_and_format(self, store):
        await store.save_memory(_record("小红是用户的朋友", "relation", "friend"))
        await store.save_memory(_record("喜欢猫", "preference", "like"))
        await store.save_memory(_record("用户名叫小明"))

        text = await store.build_memory_context("u1")
        assert text == (
            "\n【用户记忆】\n"
            "基本信息：用户名叫小明\n"
            "偏好习惯：喜欢猫\n"
            "人际关系：小红是用户的朋友\n"
        )

    @pytest.mark.asyncio
    async def test_cap_per_category_and_idempotent(self, store):
        for i in range(8):
            await store.save_memory(_record(
                f"第{i}号爱好项目{'甲乙丙丁戊己庚辛'[i]}",
                "preference",
                "hobby",
                confidence=0.5 + i * 0.05,
            ))

        first = await store.build_memory_context("u1", max_items=15)
        second = await store.build_memory_context("u1", max_items=15)
        assert first == second

        line = next(l for l in first.splitlines() if l.startswith("偏好习惯"))
        items = line.split("：", 1)[1].split("；")
        assert len(items) == 5
        # 可信度最高的排在前面
        assert items[0].startswith("第7号")

    @pytest.mark.asyncio
    async def test_group_filter(self, store):
        await store.save_memory(_record("群里的昵称叫阿明", "profile", "name", group_id="g1"))
        await store.save_memory(_record("用户名叫小明"))

        text = await store.build_memory_context("u1", group_id="g1")
        assert "阿明" in text
        assert "小明" not in text
        assert "阿明" in await store.build_memory_context("u1", group_id=ANY_GROUP)


class TestMergeAndDecay:
    @pytest.mark.asyncio
    async def test_merge_keeps_higher_confidence(self, store):
        low = await store.save_memory(_record("喜欢猫", "preference", "like", confidence=0.6))
        # 直接改内容制造写入去重抓不到的重复
        high = await store.save_memory(_record("讨厌狗", "preference", "like", confidence=0.9))
        await store.update_memory(high.id, {"content": "喜欢 猫"})

        result = await store.merge_memories("u1")
        assert result == {"original_count": 2, "merged_count": 1, "deleted_count": 1}
        assert await store.get_memory_by_id(low.id) is None
        assert await store.get_memory_by_id(high.id) is not None

    @pytest.mark.asyncio
    async def test_merge_tie_prefers_recent(self, store, clock):
        older = await store.save_memory(_record("喜欢猫", "preference", "like"))
        clock.advance(ms=10)
        newer = await store.save_memory(_record("讨厌狗", "preference", "like"))
        await store.update_memory(newer.id, {"content": "喜欢猫"})

        await store.merge_memories("u1")
        assert await store.get_memory_by_id(older.id) is None
        assert await store.get_memory_by_id(newer.id) is not None

    @pytest.mark.asyncio
    async def test_decay_never_below_floor(self, store, clock):
        saved = await store.save_memory(_record(confidence=0.5))
        for _ in range(20):
            clock.advance(days=31)
            await store.decay_confidence(decay_rate=0.5, min_confidence=0.3, days_threshold=30)

        record = await store.get_memory_by_id(saved.id)
        assert record.confidence == pytest.approx(0.3)

    @pytest.mark.asyncio
    async def test_decay_skips_recent(self, store, clock):
        saved = await store.save_memory(_record(confidence=0.9))
        clock.advance(days=10)
        assert await store.decay_confidence() == 0
        clock.advance(days=25)
        assert await store.decay_confidence() == 1

        record = await store.get_memory_by_id(saved.id)
        assert record.confidence == pytest.approx(0.855)
        assert record.updated_at == clock.now


class TestConnection:
    @pytest.mark.asyncio
    async def test_context_manager(self, tmp_path):
        async with MemoryStore(tmp_path / "sub" / "m.db") as memory_store:
            await memory_store.save_memory(_record())
            assert await memory_store.count_all() == 1

    @pytest.mark.asyncio
    async def test_not_connected(self, tmp_path):
        memory_store = MemoryStore(tmp_path / "m.db")
        with pytest.raises(PersistenceError):
            await memory_store.get_memories_by_user("u1")

    @pytest.mark.asyncio
    async def test_storage_error_wrapped(self, store):
        with pytest.raises(PersistenceError):
            await store.query_rows("SELECT * FROM no_such_table")

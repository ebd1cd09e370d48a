"""内容相似度: 标准化 → 相同 → 包含 → Jaccard"""

import pytest

from structmem.memory.similarity import (
    char_jaccard,
    content_hash,
    is_similar_content,
    normalize_content,
)


def test_normalize_strips_case_whitespace_punctuation():
    assert normalize_content(" 喜欢 Python！") == "喜欢python"
    assert normalize_content("《三体》，好看。") == "三体好看"


@pytest.mark.parametrize("a,b", [
    ("用户名叫小明", "用户名叫小明。"),
    ("喜欢 打游戏", "喜欢打游戏"),
    ("喜欢猫", "很喜欢猫咪"),
])
def test_similar(a, b):
    assert is_similar_content(a, b)


def test_jaccard_threshold_is_strict():
    # 字符集合相同但顺序不同
    assert is_similar_content("abcdefghij", "jihgfedcba")
    # 10 个字符中共享 8 个: 8/12 < 0.8
    assert not is_similar_content("abcdefghij", "abcdefghxy")


def test_dissimilar():
    assert not is_similar_content("喜欢猫", "讨厌狗")


def test_empty_is_never_similar():
    assert not is_similar_content("", "")
    assert not is_similar_content(None, "abc")
    assert not is_similar_content("。。", "，，")


def test_char_jaccard():
    assert char_jaccard("ab", "ab") == 1.0
    assert char_jaccard("ab", "cd") == 0.0
    assert char_jaccard("", "") == 0.0


def test_content_hash_ignores_case_and_whitespace():
    assert content_hash("Likes Cats") == content_hash("likescats")
    assert content_hash("likes cats") != content_hash("likes dogs")

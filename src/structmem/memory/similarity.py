"""
内容相似度判断

纯字面（非向量）: 标准化 → 完全相同 → 互相包含 → 字符集 Jaccard > 0.8。
写入去重、提取去重都走这里；以后换成向量相似度只需替换本模块。
"""

import hashlib
import re

JACCARD_THRESHOLD = 0.8

_WHITESPACE_RE = re.compile(r"\s+")
_PUNCTUATION_RE = re.compile(r"[，。！？、：；“”‘’（）【】《》,.!?:;()\[\]\"']")


def normalize_content(content: str) -> str:
    """小写、去空白、去常见中英文标点"""
    text = _WHITESPACE_RE.sub("", content.lower())
    return _PUNCTUATION_RE.sub("", text)


def char_jaccard(a: str, b: str) -> float:
    """把字符串当作字符集合计算 Jaccard 系数"""
    set_a, set_b = set(a), set(b)
    union = set_a | set_b
    if not union:
        return 0.0
    return len(set_a & set_b) / len(union)


def is_similar_content(content1: str | None, content2: str | None) -> bool:
    """
    判断两段记忆内容是否相似

    顺序固定:
    1. 标准化后完全相同
    2. 一个包含另一个
    3. 字符集 Jaccard > 0.8
    """
    if not content1 or not content2:
        return False

    n1 = normalize_content(content1)
    n2 = normalize_content(content2)
    if not n1 or not n2:
        return False

    if n1 == n2:
        return True

    if n1 in n2 or n2 in n1:
        return True

    return char_jaccard(n1, n2) > JACCARD_THRESHOLD


def content_hash(content: str) -> str:
    """
    合并去重用的内容哈希

    只做小写+去空白（不去标点），用 SHA-1 避免弱哈希的误合并
    """
    key = _WHITESPACE_RE.sub("", content.lower())
    return hashlib.sha1(key.encode("utf-8")).hexdigest()

# =============================================================================
# 相似度计算与排序工具模块
# =============================================================================
# 本模块提供纯函数形式的相似度计算与结果排序工具：
#   - cosine_similarity：1 - 余弦距离，与 pgvector 的 <=> 运算保持一致
#   - metadata_contains：元数据过滤谓词（键存在且值相等，嵌套对象递归匹配）
#   - rank_matches：阈值过滤 + 相似度降序 + 创建时间降序 + id 降序 + 截断
# PostgreSQL 上排序由数据库完成；其他方言（测试用 SQLite）在内存中精确排序，
# 两条路径遵循相同的规则。
# =============================================================================

"""Similarity computation and ranking utilities."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Iterable, Mapping, Sequence

import numpy as np


@dataclass(frozen=True)
class SearchMatch:
    """A ranked match: the record and its cosine similarity."""

    record: Any
    similarity: float


def cosine_similarity(vec1: Sequence[float], vec2: Sequence[float]) -> float:
    """Compute cosine similarity between two vectors.

    Args:
        vec1: First vector.
        vec2: Second vector.

    Returns:
        float: Similarity score in [-1, 1]; ``0.0`` if either vector is zero.
    """
    a = np.asarray(vec1, dtype=np.float64)
    b = np.asarray(vec2, dtype=np.float64)
    norm1 = np.linalg.norm(a)
    norm2 = np.linalg.norm(b)
    # 零向量保护
    if norm1 == 0 or norm2 == 0:
        return 0.0
    return float(np.dot(a, b) / (norm1 * norm2))


def metadata_contains(metadata: Mapping[str, Any] | None, filter: Mapping[str, Any] | None) -> bool:
    """Return True if every key/value pair of ``filter`` is present in ``metadata``.

    Nested mappings are matched recursively; all other values must be equal.
    An empty filter matches everything.
    """
    if not filter:
        return True
    if not metadata:
        return False
    for key, expected in filter.items():
        if key not in metadata:
            return False
        actual = metadata[key]
        if isinstance(expected, Mapping) and isinstance(actual, Mapping):
            if not metadata_contains(actual, expected):
                return False
        elif actual != expected:
            return False
    return True


def as_utc(value: datetime | None) -> datetime:
    # SQLite 读回的时间不带时区，统一视为 UTC 以便比较
    if value is None:
        return datetime.min.replace(tzinfo=timezone.utc)
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def rank_matches(
    scored: Iterable[tuple[Any, float]],
    threshold: float,
    limit: int,
) -> list[SearchMatch]:
    """Filter by threshold, sort and truncate scored candidates.

    Keeps only ``similarity > threshold``, orders by similarity descending with
    ties broken by most recent ``created_at`` and then highest ``id``, then
    truncates to ``limit``.
    """
    kept = [(record, score) for record, score in scored if score > threshold]
    kept.sort(
        key=lambda item: (
            item[1],
            as_utc(getattr(item[0], "created_at", None)),
            getattr(item[0], "id", None) or 0,
        ),
        reverse=True,
    )
    return [SearchMatch(record=record, similarity=score) for record, score in kept[:limit]]

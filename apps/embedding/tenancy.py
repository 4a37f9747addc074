# =============================================================================
# 租户隔离守卫模块
# =============================================================================
# 每条记录只属于一个租户；每条存储访问路径都必须经过 owner 过滤谓词。
#   - require_owner：校验 owner_id（不透明字符串，原样使用，不做规范化）
#   - scoped：为 select / update / delete 语句附加 owner_id = :owner 条件
# owner_id 只作为绑定参数出现，从不拼接进 SQL 标识符。
# 跨租户的管理查询是独立的方法与端点，而不是一个可选参数，
# 避免因遗漏某个标志而泄露数据。
# =============================================================================

"""Tenant isolation guard."""

from __future__ import annotations

from typing import TypeVar

from .exceptions import ValidationError
from .models import EmbeddingRecord

OWNER_ID_MAX_LENGTH = 128

Stmt = TypeVar("Stmt")


def require_owner(owner_id: str | None) -> str:
    """Validate an owner identifier and return it unchanged.

    Raises:
        ValidationError: If the owner id is missing, blank, padded with
            whitespace or too long.
    """
    if owner_id is None or not isinstance(owner_id, str):
        raise ValidationError("owner_id is required")
    if not owner_id.strip():
        raise ValidationError("owner_id must not be empty")
    # "u1 " 与 "u1" 是不同的租户，不能静默合并
    if owner_id != owner_id.strip():
        raise ValidationError("owner_id must not have leading or trailing whitespace")
    if len(owner_id) > OWNER_ID_MAX_LENGTH:
        raise ValidationError(f"owner_id must be at most {OWNER_ID_MAX_LENGTH} characters")
    return owner_id


def scoped(stmt: Stmt, owner_id: str) -> Stmt:
    """Restrict a select/update/delete statement to one owner."""
    return stmt.where(EmbeddingRecord.owner_id == require_owner(owner_id))

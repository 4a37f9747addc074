# =============================================================================
# ORM 基础模型与通用混入类模块
# =============================================================================
# 本模块定义了所有 SQLAlchemy ORM 模型的基类和通用混入（Mixin）。
#   1. Base：声明式基类，统一模型注册与元数据管理
#   2. TimestampMixin：自动管理 created_at / updated_at 字段
#
# 时间戳统一使用 UTC，并在 Python 层生成，保证 SQLite 测试库与
# PostgreSQL 生产库行为一致。
# =============================================================================

"""Base models and mixins for ChatMimic Vector Store."""

from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import DateTime
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def utcnow() -> datetime:
    """Return the current UTC time."""
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    """Declarative base for all ORM models.

    All models must inherit from this base so they are registered in
    ``Base.metadata`` for schema creation and migrations.
    """

    pass


class TimestampMixin:
    """Mixin providing ``created_at`` and ``updated_at`` timestamps.

    ``updated_at`` is refreshed automatically on update operations.
    """

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        nullable=False,
    )
    # onupdate 使每次 UPDATE 时自动刷新；服务层在显式修改时也会手动推进
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        onupdate=utcnow,
        nullable=False,
    )

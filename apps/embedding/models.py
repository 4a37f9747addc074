# =============================================================================
# Embedding 向量记录模型模块
# =============================================================================
# 本模块定义了租户嵌入记录的 ORM 模型（表 user_embeddings）。
# 在架构中的定位：
#   - 所有租户共享同一张表，通过带索引的 owner_id 列实现隔离，
#     不再为每个用户动态建表
#   - 向量列使用 pgvector 的 VECTOR(dimension) 类型，维度在集合创建时固定
#   - metadata 在 PostgreSQL 上使用 JSONB（按键取值过滤），
#     其他方言（测试用 SQLite）退化为普通 JSON
#   - IVFFlat 近似最近邻索引由 apps.embedding.index 负责创建与维护
# =============================================================================

"""Embedding record model (vectors stored in PostgreSQL via pgvector)."""

from __future__ import annotations

from typing import Any

from pgvector.sqlalchemy import Vector
from sqlalchemy import JSON, BigInteger, Index, String, Text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from core.models.base import Base, TimestampMixin
from settings import settings

# PostgreSQL 使用 JSONB，其余方言使用 JSON
MetadataType = JSON().with_variant(JSONB(), "postgresql")

TABLE_NAME = "user_embeddings"
VECTOR_INDEX_NAME = "ix_user_embeddings_embedding_ivfflat"


class EmbeddingRecord(Base, TimestampMixin):
    """One embedded text owned by exactly one tenant.

    租户嵌入记录：原始文本、向量、元数据与所属租户。
    """

    __tablename__ = TABLE_NAME
    __table_args__ = (
        # 按租户列出最新记录（文本检索、逐条删除）时使用
        Index("ix_user_embeddings_owner_created", "owner_id", "created_at"),
    )

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    # 租户标识，创建后不可修改
    owner_id: Mapped[str] = mapped_column(
        String(128), nullable=False, index=True,
        comment="Tenant that exclusively owns this record",
    )
    content: Mapped[str] = mapped_column(Text, nullable=False)
    embedding: Mapped[Any] = mapped_column(
        Vector(settings.embedding_dimension), nullable=False,
    )
    # 属性名避开 DeclarativeBase.metadata，列名仍为 metadata
    metadata_: Mapped[dict] = mapped_column(
        "metadata", MetadataType, nullable=False, default=dict,
    )

    def __repr__(self) -> str:
        return f"<EmbeddingRecord id={self.id} owner={self.owner_id!r}>"

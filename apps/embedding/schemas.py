# =============================================================================
# Embedding 向量存储 Pydantic 数据校验模块
# =============================================================================
# 本模块定义了 Embedding API 所有端点的请求和响应数据结构。
# 使用 Pydantic BaseModel 实现自动的数据验证、序列化和文档生成。
# 主要包含：
#   - 请求模型：EmbedRequest, IngestRequest, MatchRequest, TextSearchRequest,
#               UpdateRecordRequest
#   - 响应模型：EmbedResponse, EmbeddingRecordSchema, MatchResponse,
#               RecordListResponse, DeleteOwnerResponse, ReindexResponse,
#               EmbeddingStatsResponse
#   - 子结构：MatchSchema
# 长度、阈值、limit 上限等依赖配置的校验由服务层完成（错误同样映射为 422）。
# =============================================================================

"""Embedding Pydantic schemas."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, Field, model_validator


# -----------------------------------------------------------------------------
# 嵌入生成请求（不落库）
# -----------------------------------------------------------------------------
class EmbedRequest(BaseModel):
    """Request schema for embedding generation.

    生成嵌入向量请求，结果不会被持久化。

    Attributes:
        text: Text to embed.
    """

    text: str = Field(..., min_length=1)


class EmbedResponse(BaseModel):
    """Response schema for embedding generation.

    Attributes:
        embedding: Generated vector.
        model: Provider model name.
        dimensions: Vector length.
    """

    embedding: list[float]
    model: str = ""
    dimensions: int = 0


# -----------------------------------------------------------------------------
# 写入请求
# 提供 type 且 replace=True 时，先删除当前租户同类型记录再写入
# -----------------------------------------------------------------------------
class IngestRequest(BaseModel):
    """Request schema for embedding ingest.

    写入一条嵌入记录。

    Attributes:
        content: Text to embed and store.
        metadata: JSON metadata used for filtering.
        type: Optional embedding type, merged into metadata.
        replace: Replace existing records of the same type.
    """

    content: str = Field(..., min_length=1)
    metadata: dict[str, Any] = Field(default_factory=dict)
    type: Optional[str] = Field(None, min_length=1, max_length=64)
    replace: bool = False

    @model_validator(mode="after")
    def _replace_needs_type(self) -> "IngestRequest":
        if self.replace and not self.type:
            raise ValueError("replace requires type")
        return self


# -----------------------------------------------------------------------------
# 记录 Schema
# ORM 属性为 metadata_（避开 DeclarativeBase.metadata），对外字段为 metadata
# -----------------------------------------------------------------------------
class EmbeddingRecordSchema(BaseModel):
    """Schema for a stored embedding record (vector omitted).

    Attributes:
        id: Record ID.
        owner_id: Owning tenant.
        content: Stored text.
        metadata: JSON metadata.
        created_at: Creation time.
        updated_at: Last update time.
    """

    id: int
    owner_id: str
    content: str
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_record(cls, record) -> "EmbeddingRecordSchema":
        return cls(
            id=record.id,
            owner_id=record.owner_id,
            content=record.content,
            metadata=record.metadata_ or {},
            created_at=record.created_at,
            updated_at=record.updated_at,
        )


# -----------------------------------------------------------------------------
# 相似度检索请求
# query_text 与 query_vector 必须恰好提供一个
# -----------------------------------------------------------------------------
class MatchRequest(BaseModel):
    """Request schema for similarity matching.

    相似度检索请求。

    Attributes:
        query_text: Query text (embedded by the provider).
        query_vector: Precomputed query vector.
        filter: Metadata containment filter.
        threshold: Minimum similarity (exclusive); defaults to settings.
        limit: Maximum number of results; defaults to settings.
    """

    query_text: Optional[str] = Field(None, min_length=1)
    query_vector: Optional[list[float]] = None
    filter: dict[str, Any] = Field(default_factory=dict)
    threshold: Optional[float] = Field(None, ge=-1.0, le=1.0)
    limit: Optional[int] = Field(None, ge=1)

    @model_validator(mode="after")
    def _exactly_one_query(self) -> "MatchRequest":
        if (self.query_text is None) == (self.query_vector is None):
            raise ValueError("Exactly one of query_text or query_vector must be provided")
        return self


class MatchSchema(BaseModel):
    """Schema for a ranked match entry.

    Attributes:
        id: Record ID.
        owner_id: Owning tenant.
        content: Stored text.
        metadata: JSON metadata.
        similarity: Cosine similarity in [-1, 1].
        created_at: Creation time.
    """

    id: int
    owner_id: str
    content: str
    metadata: dict[str, Any] = Field(default_factory=dict)
    similarity: float = 0.0   # 余弦相似度
    created_at: Optional[datetime] = None

    @classmethod
    def from_match(cls, match) -> "MatchSchema":
        record = match.record
        return cls(
            id=record.id,
            owner_id=record.owner_id,
            content=record.content,
            metadata=record.metadata_ or {},
            similarity=match.similarity,
            created_at=record.created_at,
        )


# -----------------------------------------------------------------------------
# 相似度检索响应
# 始终回显实际生效的 threshold 和 limit
# -----------------------------------------------------------------------------
class MatchResponse(BaseModel):
    """Response schema for similarity matching.

    Attributes:
        matches: Ranked matches, most similar first.
        threshold: Effective threshold.
        limit: Effective limit.
        count: Number of matches returned.
    """

    matches: list[MatchSchema] = Field(default_factory=list)
    threshold: float
    limit: int
    count: int = 0


class TextSearchRequest(BaseModel):
    """Request schema for case-insensitive text search."""

    query: str = Field(..., min_length=1)
    limit: Optional[int] = Field(None, ge=1)


class RecordListResponse(BaseModel):
    """Response schema for a list of records."""

    records: list[EmbeddingRecordSchema] = Field(default_factory=list)
    count: int = 0


# -----------------------------------------------------------------------------
# 记录更新请求
# 修改 content 会重新生成向量；metadata 为整体替换
# -----------------------------------------------------------------------------
class UpdateRecordRequest(BaseModel):
    """Request schema for record update.

    Attributes:
        content: New content (re-embedded).
        metadata: Replacement metadata.
    """

    content: Optional[str] = Field(None, min_length=1)
    metadata: Optional[dict[str, Any]] = None

    @model_validator(mode="after")
    def _something_to_update(self) -> "UpdateRecordRequest":
        if self.content is None and self.metadata is None:
            raise ValueError("Provide content and/or metadata")
        return self


class DeleteOwnerResponse(BaseModel):
    """Response schema for tenant deletion."""

    owner_id: str
    deleted: int = 0


class ReindexResponse(BaseModel):
    """Response schema for vector index rebuild."""

    status: str = "ok"
    rebuilt: bool = False   # 非 PostgreSQL 方言上为 False
    index_name: str = ""


# -----------------------------------------------------------------------------
# 嵌入统计信息响应
# 用于系统状态监控仪表盘
# -----------------------------------------------------------------------------
class EmbeddingStatsResponse(BaseModel):
    """Response schema for embedding statistics.

    嵌入统计信息响应。

    Attributes:
        total_embeddings: Total stored records.
        total_owners: Distinct tenants with records.
        provider: Current provider.
        model: Current model.
        dimension: Collection dimension.
        index_name: Vector index name.
        backend: Database dialect name.
    """

    total_embeddings: int = 0
    total_owners: int = 0
    provider: str = ""
    model: str = ""
    dimension: int = 0
    index_name: str = ""
    backend: str = ""

# =============================================================================
# Embedding 向量存储 API 端点模块
# =============================================================================
# 本模块定义了向量存储相关的 RESTful API 接口。
# 在架构中，它是 Embedding 子系统对外暴露的 HTTP 层，负责：
#   1. 嵌入生成（不落库）与嵌入写入（含按类型替换）
#   2. 租户范围内的相似度检索与文本检索
#   3. 单条记录的读取、更新、删除，以及租户级联删除
#   4. 管理端点：跨租户检索、删除任意租户、重建向量索引、统计信息
#
# owner_id 一律来自 JWT 的 sub，从不信任请求体；
# 管理端点需要 embeddings:admin scope。
# 领域异常（VectorStoreError）由 main.py 中的全局处理器统一渲染。
# =============================================================================

"""Embedding API endpoints."""

from __future__ import annotations

import logging
from functools import lru_cache

from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession

from core.database import get_engine, get_session
from core.dependencies import AdminPayload, CurrentOwner
from settings import settings

from .index import VECTOR_INDEX_NAME, rebuild_vector_index
from .schemas import (
    DeleteOwnerResponse,
    EmbeddingRecordSchema,
    EmbeddingStatsResponse,
    EmbedRequest,
    EmbedResponse,
    IngestRequest,
    MatchRequest,
    MatchResponse,
    MatchSchema,
    RecordListResponse,
    ReindexResponse,
    TextSearchRequest,
    UpdateRecordRequest,
)
from .service import EmbeddingService

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Embedding"])


@lru_cache(maxsize=1)
def _default_service() -> EmbeddingService:
    return EmbeddingService()


def get_embedding_service() -> EmbeddingService:
    """Return the process-wide embedding service (overridable in tests)."""
    return _default_service()


def _match_response(matches, request: MatchRequest) -> MatchResponse:
    # 回显实际生效的阈值与数量上限
    threshold = request.threshold if request.threshold is not None else settings.match_default_threshold
    limit = request.limit if request.limit is not None else settings.match_default_limit
    return MatchResponse(
        matches=[MatchSchema.from_match(m) for m in matches],
        threshold=threshold,
        limit=limit,
        count=len(matches),
    )


# -----------------------------------------------------------------------------
# 嵌入生成接口
# 只返回向量，不写入存储
# -----------------------------------------------------------------------------
@router.post("/embed", response_model=EmbedResponse)
async def embed_text(
    request: EmbedRequest,
    owner_id: CurrentOwner,
    service: EmbeddingService = Depends(get_embedding_service),
):
    """Generate an embedding without storing it.

    生成嵌入向量（不落库）。
    """
    embedding = await service.embed_text(request.text)
    return EmbedResponse(
        embedding=embedding,
        model=service.provider.model_name,
        dimensions=len(embedding),
    )


# -----------------------------------------------------------------------------
# 嵌入写入接口
# type + replace 时走按类型替换逻辑
# -----------------------------------------------------------------------------
@router.post("/", response_model=EmbeddingRecordSchema, status_code=status.HTTP_201_CREATED)
async def ingest(
    request: IngestRequest,
    owner_id: CurrentOwner,
    db: AsyncSession = Depends(get_session),
    service: EmbeddingService = Depends(get_embedding_service),
):
    """Embed and store content for the current owner.

    为当前租户写入一条嵌入记录。

    Returns:
        EmbeddingRecordSchema: The stored record.
    """
    metadata = dict(request.metadata)
    if request.type and request.replace:
        record = await service.replace_by_type(
            db, owner_id, request.content, request.type, metadata,
        )
    else:
        if request.type:
            metadata["embedding_type"] = request.type
        record = await service.ingest(db, owner_id, request.content, metadata)
    return EmbeddingRecordSchema.from_record(record)


# -----------------------------------------------------------------------------
# 相似度检索接口（租户范围）
# -----------------------------------------------------------------------------
@router.post("/match", response_model=MatchResponse)
async def match_documents(
    request: MatchRequest,
    owner_id: CurrentOwner,
    db: AsyncSession = Depends(get_session),
    service: EmbeddingService = Depends(get_embedding_service),
):
    """Rank the current owner's records against a query.

    在当前租户的记录中做相似度检索；无结果时返回空列表。
    """
    matches = await service.query(
        db,
        owner_id,
        query_text=request.query_text,
        query_vector=request.query_vector,
        filter=request.filter,
        threshold=request.threshold,
        limit=request.limit,
    )
    return _match_response(matches, request)


@router.post("/search", response_model=RecordListResponse)
async def text_search(
    request: TextSearchRequest,
    owner_id: CurrentOwner,
    db: AsyncSession = Depends(get_session),
    service: EmbeddingService = Depends(get_embedding_service),
):
    """Case-insensitive text search over the current owner's records."""
    records = await service.text_search(db, owner_id, request.query, request.limit)
    return RecordListResponse(
        records=[EmbeddingRecordSchema.from_record(r) for r in records],
        count=len(records),
    )


@router.delete("/", response_model=DeleteOwnerResponse)
async def delete_own_records(
    owner_id: CurrentOwner,
    db: AsyncSession = Depends(get_session),
    service: EmbeddingService = Depends(get_embedding_service),
):
    """Delete every record of the current owner."""
    deleted = await service.delete_owner(db, owner_id)
    return DeleteOwnerResponse(owner_id=owner_id, deleted=deleted)


# =============================================================================
# 管理端点（需要 embeddings:admin scope）
# 必须声明在 /{record_id} 之前，避免 /admin/stats 被当作记录 ID 匹配
# =============================================================================

@router.post("/admin/match", response_model=MatchResponse)
async def admin_match(
    request: MatchRequest,
    admin: AdminPayload,
    db: AsyncSession = Depends(get_session),
    service: EmbeddingService = Depends(get_embedding_service),
):
    """Similarity search across all owners.

    跨租户相似度检索，仅供管理与排障使用。
    """
    logger.info(f"Admin {admin.get('sub')} issued an unscoped match")
    matches = await service.query_unscoped(
        db,
        query_text=request.query_text,
        query_vector=request.query_vector,
        filter=request.filter,
        threshold=request.threshold,
        limit=request.limit,
    )
    return _match_response(matches, request)


@router.delete("/admin/owners/{owner_id}", response_model=DeleteOwnerResponse)
async def admin_delete_owner(
    owner_id: str,
    admin: AdminPayload,
    db: AsyncSession = Depends(get_session),
    service: EmbeddingService = Depends(get_embedding_service),
):
    """Delete all records of a tenant (tenant removal cascade)."""
    deleted = await service.delete_owner(db, owner_id)
    return DeleteOwnerResponse(owner_id=owner_id, deleted=deleted)


# -----------------------------------------------------------------------------
# 向量索引重建接口
# REINDEX CONCURRENTLY，重建期间读请求照常进行
# -----------------------------------------------------------------------------
@router.post("/admin/reindex", response_model=ReindexResponse)
async def admin_reindex(admin: AdminPayload):
    """Rebuild the vector index.

    重建 IVFFlat 向量索引。
    """
    rebuilt = await rebuild_vector_index(get_engine())
    return ReindexResponse(
        status="ok" if rebuilt else "skipped",
        rebuilt=rebuilt,
        index_name=VECTOR_INDEX_NAME,
    )


@router.get("/admin/stats", response_model=EmbeddingStatsResponse)
async def admin_stats(
    admin: AdminPayload,
    db: AsyncSession = Depends(get_session),
    service: EmbeddingService = Depends(get_embedding_service),
):
    """Get embedding statistics.

    查询嵌入统计信息。
    """
    stats = await service.get_stats(db)
    return EmbeddingStatsResponse(**stats)


# =============================================================================
# 单条记录接口
# 其他租户的记录一律返回 404
# =============================================================================

@router.get("/{record_id}", response_model=EmbeddingRecordSchema)
async def get_record(
    record_id: int,
    owner_id: CurrentOwner,
    db: AsyncSession = Depends(get_session),
    service: EmbeddingService = Depends(get_embedding_service),
):
    """Get one of the current owner's records."""
    record = await service.get_record(db, owner_id, record_id)
    return EmbeddingRecordSchema.from_record(record)


@router.patch("/{record_id}", response_model=EmbeddingRecordSchema)
async def update_record(
    record_id: int,
    request: UpdateRecordRequest,
    owner_id: CurrentOwner,
    db: AsyncSession = Depends(get_session),
    service: EmbeddingService = Depends(get_embedding_service),
):
    """Update content and/or metadata of a record.

    修改 content 会重新生成向量。
    """
    record = await service.update_record(
        db, owner_id, record_id, content=request.content, metadata=request.metadata,
    )
    return EmbeddingRecordSchema.from_record(record)


@router.delete("/{record_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_record(
    record_id: int,
    owner_id: CurrentOwner,
    db: AsyncSession = Depends(get_session),
    service: EmbeddingService = Depends(get_embedding_service),
):
    """Delete one of the current owner's records."""
    await service.delete_record(db, owner_id, record_id)

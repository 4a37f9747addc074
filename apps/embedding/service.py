# =============================================================================
# Embedding 向量嵌入服务层模块
# =============================================================================
# 本模块是 Embedding 子系统的核心业务逻辑层，负责：
#   1. Ingest：文本 -> 提供商编码 -> 维度校验 -> 写入 user_embeddings
#   2. Query：查询文本/向量 -> 租户过滤 + 元数据包含过滤 -> 阈值 -> 排序 -> 截断
#   3. 记录的读取、更新（重新编码）、删除，以及租户级联删除
#   4. 按类型替换（先删除同类型记录再写入）与文本模糊检索
#   5. 统计信息
#
# 数据流：
#   调用方 -> 校验 -> 提供商（线程池） -> 租户守卫 -> 存储引擎 -> 排序结果
#
# 设计决策：
#   - 提供商调用是阻塞的网络/CPU 操作，使用 asyncio.to_thread 放到线程池执行
#   - 每次调用都有超时预算；超时抛出 EmbeddingTimeoutError，写操作同时回滚会话
#   - 维度校验与提供商调用都发生在写入之前，失败时不会产生任何行
#   - 核心层不做自动重试，也不做去重
#   - 会话的提交由调用方（FastAPI 的 get_session）负责
# =============================================================================

"""Embedding service layer."""

from __future__ import annotations

import asyncio
import json
import logging
import math
from datetime import timedelta
from typing import Any, Awaitable, Mapping, Sequence, TypeVar

import numpy as np
from sqlalchemy import delete, func, literal, select
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from core.models.base import utcnow
from settings import settings

from .exceptions import (
    DimensionMismatchError,
    EmbeddingTimeoutError,
    ProviderError,
    RecordNotFoundError,
    StorageError,
    ValidationError,
    VectorStoreError,
)
from .index import VECTOR_INDEX_NAME, dialect_name, set_probes
from .models import EmbeddingRecord
from .providers import BaseEmbeddingProvider, get_embedding_provider
from .similarity import SearchMatch, as_utc, cosine_similarity, metadata_contains, rank_matches
from .tenancy import require_owner, scoped

logger = logging.getLogger(__name__)

T = TypeVar("T")

# 记录元数据中表示嵌入类型的键（按类型替换时使用）
EMBEDDING_TYPE_KEY = "embedding_type"


def metadata_filter_clauses(element, filter: Mapping[str, Any]) -> list:
    """Translate a metadata filter into JSONB predicates.

    Same rule as :func:`metadata_contains`: every key must be present with an
    equal value; nested objects are matched key by key. Arrays and scalars
    compare by equality, not JSONB containment.
    """
    clauses = []
    for key, expected in filter.items():
        value = element[key]
        if isinstance(expected, Mapping):
            if expected:
                clauses.extend(metadata_filter_clauses(value, expected))
            else:
                clauses.append(func.jsonb_typeof(value) == "object")
        else:
            clauses.append(value == literal(expected, JSONB))
    return clauses


def build_pgvector_query(
    owner_id: str | None,
    vector: list[float],
    filter: Mapping[str, Any] | None,
    threshold: float,
    limit: int,
):
    """Build the PostgreSQL ranking statement.

    ``owner_id=None`` is the administrative, unscoped form.
    """
    distance = EmbeddingRecord.embedding.cosine_distance(vector)
    similarity = (1 - distance).label("similarity")
    stmt = select(EmbeddingRecord, similarity)
    if owner_id is not None:
        stmt = scoped(stmt, owner_id)
    if filter:
        stmt = stmt.where(*metadata_filter_clauses(EmbeddingRecord.metadata_, filter))
    return (
        stmt.where(1 - distance > threshold)
        .order_by(distance.asc(), EmbeddingRecord.created_at.desc(), EmbeddingRecord.id.desc())
        .limit(limit)
    )


# -----------------------------------------------------------------------------
# Embedding 服务类
# 支持依赖注入（provider、dimension 可通过构造函数传入），方便单元测试
# -----------------------------------------------------------------------------
class EmbeddingService:
    """Per-tenant embedding store and similarity search.

    向量嵌入服务层，负责写入、检索与租户隔离。
    """

    def __init__(
        self,
        provider: BaseEmbeddingProvider | None = None,
        dimension: int | None = None,
    ):
        """Initialize embedding service.

        Args:
            provider: Embedding provider override.
            dimension: Collection dimension override (defaults to settings).
        """
        self.provider = provider or get_embedding_provider()
        self.dimension = dimension or settings.embedding_dimension

    # =========================================================================
    # 校验工具
    # =========================================================================

    def _validate_content(self, content: Any, field: str = "content") -> str:
        if not isinstance(content, str):
            raise ValidationError(f"{field} must be a string")
        content = content.strip()
        if not content:
            raise ValidationError(f"{field} must not be empty")
        max_len = settings.embedding_max_content_length
        if len(content) > max_len:
            raise ValidationError(f"{field} must be at most {max_len} characters, got {len(content)}")
        return content

    @staticmethod
    def _validate_metadata(metadata: Any, field: str = "metadata") -> dict:
        if metadata is None:
            return {}
        if not isinstance(metadata, Mapping):
            raise ValidationError(f"{field} must be a mapping")
        if not all(isinstance(k, str) for k in metadata):
            raise ValidationError(f"{field} keys must be strings")
        try:
            # 往返序列化，确保值是 JSON 兼容的
            return json.loads(json.dumps(dict(metadata)))
        except (TypeError, ValueError) as e:
            raise ValidationError(f"{field} must be JSON-serializable: {e}") from e

    def _coerce_vector(self, values: Any, *, from_provider: bool) -> list[float]:
        """Convert to a finite float list and enforce the collection dimension."""
        error_cls = ProviderError if from_provider else ValidationError
        try:
            arr = np.asarray(values, dtype=np.float64)
        except (TypeError, ValueError) as e:
            raise error_cls("Embedding must be a sequence of numbers") from e
        if arr.ndim != 1 or arr.size == 0:
            raise error_cls("Embedding must be a non-empty one-dimensional sequence")
        if not np.all(np.isfinite(arr)):
            raise error_cls("Embedding contains non-finite values")
        if arr.size != self.dimension:
            raise DimensionMismatchError(self.dimension, int(arr.size))
        return arr.tolist()

    @staticmethod
    def _resolve_threshold(threshold: float | None) -> float:
        if threshold is None:
            return settings.match_default_threshold
        if isinstance(threshold, bool) or not isinstance(threshold, (int, float)):
            raise ValidationError("threshold must be a number")
        if math.isnan(threshold) or not -1.0 <= threshold <= 1.0:
            raise ValidationError("threshold must be between -1 and 1")
        return float(threshold)

    @staticmethod
    def _resolve_limit(limit: int | None) -> int:
        if limit is None:
            return settings.match_default_limit
        if isinstance(limit, bool) or not isinstance(limit, int):
            raise ValidationError("limit must be an integer")
        if not 1 <= limit <= settings.match_max_limit:
            raise ValidationError(f"limit must be between 1 and {settings.match_max_limit}")
        return limit

    @staticmethod
    def _effective_timeout(timeout: float | None) -> float | None:
        if timeout is None:
            timeout = settings.embedding_request_timeout
        if timeout is None or timeout <= 0:
            return None
        return float(timeout)

    # =========================================================================
    # 外部资源调用（提供商、存储）
    # =========================================================================

    async def _with_timeout(
        self,
        awaitable: Awaitable[T],
        timeout: float | None,
        db: AsyncSession | None = None,
    ) -> T:
        """Run ``awaitable`` within the call timeout.

        On timeout the session (if given) is rolled back so no partial write
        survives, and ``EmbeddingTimeoutError`` is raised.
        """
        seconds = self._effective_timeout(timeout)
        try:
            if seconds is None:
                return await awaitable
            return await asyncio.wait_for(awaitable, seconds)
        except EmbeddingTimeoutError:
            await self._rollback(db)
            raise
        except asyncio.TimeoutError as e:
            await self._rollback(db)
            raise EmbeddingTimeoutError(f"Operation timed out after {seconds}s") from e

    @staticmethod
    async def _rollback(db: AsyncSession | None) -> None:
        if db is not None:
            await db.rollback()

    async def _embed(self, text: str) -> list[float]:
        """Call the provider in a worker thread and check the vector."""
        try:
            vector = await asyncio.to_thread(self.provider.encode, text)
        except VectorStoreError:
            raise
        except Exception as e:
            # 提供商是黑盒：任何未分类的异常都视为上游失败
            logger.warning(f"Embedding provider {self.provider.name} failed: {e}")
            raise ProviderError(f"Embedding generation failed: {e}", provider=self.provider.name) from e
        return self._coerce_vector(vector, from_provider=True)

    @staticmethod
    async def _execute(db: AsyncSession, stmt):
        try:
            return await db.execute(stmt)
        except SQLAlchemyError as e:
            # PostgreSQL 上失败的语句会使整个事务失效，必须回滚
            await db.rollback()
            logger.error(f"Storage query failed: {e}")
            raise StorageError(f"Storage query failed: {e.__class__.__name__}") from e

    @staticmethod
    async def _flush(db: AsyncSession) -> None:
        try:
            await db.flush()
        except SQLAlchemyError as e:
            await db.rollback()
            logger.error(f"Storage write failed: {e}")
            raise StorageError(f"Storage write failed: {e.__class__.__name__}") from e

    # =========================================================================
    # 嵌入生成（不持久化）
    # =========================================================================

    async def embed_text(self, text: str, *, timeout: float | None = None) -> list[float]:
        """Generate an embedding for ``text`` without storing it.

        Raises:
            ValidationError: Empty or oversized text.
            ProviderError: Upstream failure.
            DimensionMismatchError: Provider output has the wrong size.
            EmbeddingTimeoutError: Timeout exceeded.
        """
        text = self._validate_content(text, field="text")
        return await self._with_timeout(self._embed(text), timeout)

    # =========================================================================
    # Ingest
    # =========================================================================

    async def ingest(
        self,
        db: AsyncSession,
        owner_id: str,
        content: str,
        metadata: Mapping[str, Any] | None = None,
        *,
        timeout: float | None = None,
    ) -> EmbeddingRecord:
        """Embed ``content`` and persist one record for ``owner_id``.

        Every call produces a new record; there is no deduplication.

        Args:
            db: Async database session.
            owner_id: Tenant identifier.
            content: Text to embed.
            metadata: Optional JSON-compatible mapping used for filtering.
            timeout: Call timeout in seconds (defaults to settings).

        Returns:
            EmbeddingRecord: The flushed record (``id`` assigned).
        """
        owner_id = require_owner(owner_id)
        content = self._validate_content(content)
        metadata = self._validate_metadata(metadata)
        return await self._with_timeout(
            self._ingest(db, owner_id, content, metadata), timeout, db=db,
        )

    async def _ingest(
        self, db: AsyncSession, owner_id: str, content: str, metadata: dict,
    ) -> EmbeddingRecord:
        vector = await self._embed(content)
        record = EmbeddingRecord(
            owner_id=owner_id,
            content=content,
            embedding=vector,
            metadata_=metadata,
        )
        db.add(record)
        await self._flush(db)
        # 只记录长度，不记录文本内容
        logger.info(f"Stored embedding {record.id} for owner {owner_id} (chars={len(content)})")
        return record

    async def replace_by_type(
        self,
        db: AsyncSession,
        owner_id: str,
        content: str,
        embedding_type: str,
        metadata: Mapping[str, Any] | None = None,
        *,
        timeout: float | None = None,
    ) -> EmbeddingRecord:
        """Replace the owner's records of one ``embedding_type`` with a new one.

        The provider is called before anything is deleted, so a provider
        failure leaves existing records untouched.
        """
        owner_id = require_owner(owner_id)
        content = self._validate_content(content)
        if not isinstance(embedding_type, str) or not embedding_type.strip():
            raise ValidationError("embedding_type must not be empty")
        embedding_type = embedding_type.strip()
        metadata = self._validate_metadata(metadata)
        metadata[EMBEDDING_TYPE_KEY] = embedding_type

        async def _replace() -> EmbeddingRecord:
            vector = await self._embed(content)
            removed = await self._delete_ids(
                db,
                owner_id,
                scoped(select(EmbeddingRecord.id), owner_id).where(
                    EmbeddingRecord.metadata_[EMBEDDING_TYPE_KEY].as_string() == embedding_type
                ),
            )
            if removed:
                logger.info(f"Replaced {removed} '{embedding_type}' embeddings for owner {owner_id}")
            record = EmbeddingRecord(
                owner_id=owner_id,
                content=content,
                embedding=vector,
                metadata_=metadata,
            )
            db.add(record)
            await self._flush(db)
            return record

        return await self._with_timeout(_replace(), timeout, db=db)

    # =========================================================================
    # Query
    # =========================================================================

    async def query(
        self,
        db: AsyncSession,
        owner_id: str,
        *,
        query_text: str | None = None,
        query_vector: Sequence[float] | None = None,
        filter: Mapping[str, Any] | None = None,
        threshold: float | None = None,
        limit: int | None = None,
        timeout: float | None = None,
    ) -> list[SearchMatch]:
        """Rank the owner's records against a query text or vector.

        Exactly one of ``query_text`` / ``query_vector`` must be given.
        Results have ``similarity > threshold``, are sorted by similarity
        descending (ties: newest first) and hold at most ``limit`` items.
        No match is not an error: an empty list is returned.
        """
        owner_id = require_owner(owner_id)
        return await self._search(
            db, owner_id, query_text, query_vector, filter, threshold, limit, timeout,
        )

    async def query_unscoped(
        self,
        db: AsyncSession,
        *,
        query_text: str | None = None,
        query_vector: Sequence[float] | None = None,
        filter: Mapping[str, Any] | None = None,
        threshold: float | None = None,
        limit: int | None = None,
        timeout: float | None = None,
    ) -> list[SearchMatch]:
        """Administrative query across all owners.

        Same contract as :meth:`query` without the owner predicate.
        """
        logger.info("Unscoped similarity query issued")
        return await self._search(
            db, None, query_text, query_vector, filter, threshold, limit, timeout,
        )

    async def _search(
        self,
        db: AsyncSession,
        owner_id: str | None,
        query_text: str | None,
        query_vector: Sequence[float] | None,
        filter: Mapping[str, Any] | None,
        threshold: float | None,
        limit: int | None,
        timeout: float | None,
    ) -> list[SearchMatch]:
        if (query_text is None) == (query_vector is None):
            raise ValidationError("Exactly one of query_text or query_vector must be provided")
        if query_text is not None:
            query_text = self._validate_content(query_text, field="query_text")
            vector = None
        else:
            vector = self._coerce_vector(query_vector, from_provider=False)
        filter = self._validate_metadata(filter, field="filter")
        threshold = self._resolve_threshold(threshold)
        limit = self._resolve_limit(limit)

        async def _run() -> list[SearchMatch]:
            qvec = vector if vector is not None else await self._embed(query_text)
            if dialect_name(db) == "postgresql":
                matches = await self._search_pgvector(db, owner_id, qvec, filter, threshold, limit)
            else:
                matches = await self._search_exact(db, owner_id, qvec, filter, threshold, limit)
            logger.debug(
                f"Similarity query owner={owner_id or '*'} threshold={threshold} "
                f"limit={limit} -> {len(matches)} matches"
            )
            return matches

        return await self._with_timeout(_run(), timeout)

    async def _search_pgvector(
        self,
        db: AsyncSession,
        owner_id: str | None,
        vector: list[float],
        filter: dict,
        threshold: float,
        limit: int,
    ) -> list[SearchMatch]:
        """Ranking pushed down to pgvector; ordered by distance so the IVF index applies."""
        stmt = build_pgvector_query(owner_id, vector, filter, threshold, limit)
        await set_probes(db, settings.index_ivfflat_probes)
        result = await self._execute(db, stmt)
        return [SearchMatch(record=row[0], similarity=float(row[1])) for row in result.all()]

    async def _search_exact(
        self,
        db: AsyncSession,
        owner_id: str | None,
        vector: list[float],
        filter: dict,
        threshold: float,
        limit: int,
    ) -> list[SearchMatch]:
        """Exact in-memory ranking for dialects without pgvector."""
        stmt = select(EmbeddingRecord)
        if owner_id is not None:
            stmt = scoped(stmt, owner_id)
        result = await self._execute(db, stmt)
        scored = (
            (record, cosine_similarity(vector, record.embedding))
            for record in result.scalars().all()
            if metadata_contains(record.metadata_, filter)
        )
        return rank_matches(scored, threshold, limit)

    # =========================================================================
    # 记录读取 / 更新 / 删除
    # =========================================================================

    async def _get_scoped(self, db: AsyncSession, owner_id: str, record_id: int) -> EmbeddingRecord:
        result = await self._execute(
            db, scoped(select(EmbeddingRecord), owner_id).where(EmbeddingRecord.id == record_id),
        )
        record = result.scalar_one_or_none()
        if record is None:
            # 其他租户的记录同样表现为不存在
            raise RecordNotFoundError(record_id)
        return record

    async def get_record(
        self, db: AsyncSession, owner_id: str, record_id: int, *, timeout: float | None = None,
    ) -> EmbeddingRecord:
        """Fetch one of the owner's records."""
        owner_id = require_owner(owner_id)
        return await self._with_timeout(self._get_scoped(db, owner_id, record_id), timeout)

    async def update_record(
        self,
        db: AsyncSession,
        owner_id: str,
        record_id: int,
        *,
        content: str | None = None,
        metadata: Mapping[str, Any] | None = None,
        timeout: float | None = None,
    ) -> EmbeddingRecord:
        """Update content (re-embedding it) and/or replace metadata.

        ``updated_at`` always advances.
        """
        owner_id = require_owner(owner_id)
        if content is None and metadata is None:
            raise ValidationError("Nothing to update: provide content and/or metadata")
        if content is not None:
            content = self._validate_content(content)
        if metadata is not None:
            metadata = self._validate_metadata(metadata)

        async def _update() -> EmbeddingRecord:
            record = await self._get_scoped(db, owner_id, record_id)
            if content is not None:
                # 先编码再修改，提供商失败时记录保持原样
                vector = await self._embed(content)
                record.content = content
                record.embedding = vector
            if metadata is not None:
                record.metadata_ = metadata
            now = utcnow()
            previous = as_utc(record.updated_at)
            record.updated_at = now if now > previous else previous + timedelta(microseconds=1)
            await self._flush(db)
            logger.info(f"Updated embedding {record.id} for owner {owner_id}")
            return record

        return await self._with_timeout(_update(), timeout, db=db)

    async def delete_record(
        self, db: AsyncSession, owner_id: str, record_id: int, *, timeout: float | None = None,
    ) -> None:
        """Delete one of the owner's records."""
        owner_id = require_owner(owner_id)

        async def _delete() -> None:
            record = await self._get_scoped(db, owner_id, record_id)
            await db.delete(record)
            await self._flush(db)

        await self._with_timeout(_delete(), timeout, db=db)
        logger.info(f"Deleted embedding {record_id} for owner {owner_id}")

    async def delete_owner(
        self, db: AsyncSession, owner_id: str, *, timeout: float | None = None,
    ) -> int:
        """Delete every record of a tenant (cascade on tenant removal).

        Returns:
            int: Number of rows removed.
        """
        owner_id = require_owner(owner_id)
        removed = await self._with_timeout(
            self._delete_ids(db, owner_id, scoped(select(EmbeddingRecord.id), owner_id)),
            timeout,
            db=db,
        )
        logger.info(f"Deleted {removed} embeddings for owner {owner_id}")
        return removed

    async def _delete_ids(self, db: AsyncSession, owner_id: str, id_query) -> int:
        ids = list((await self._execute(db, id_query)).scalars().all())
        if not ids:
            return 0
        stmt = (
            scoped(delete(EmbeddingRecord), owner_id)
            .where(EmbeddingRecord.id.in_(ids))
            .execution_options(synchronize_session="evaluate")
        )
        await self._execute(db, stmt)
        return len(ids)

    # =========================================================================
    # 文本检索与统计
    # =========================================================================

    async def text_search(
        self,
        db: AsyncSession,
        owner_id: str,
        query: str,
        limit: int | None = None,
        *,
        timeout: float | None = None,
    ) -> list[EmbeddingRecord]:
        """Case-insensitive substring search over the owner's content, newest first.

        Used as a fallback when the embedding provider is unavailable.
        """
        owner_id = require_owner(owner_id)
        query = self._validate_content(query, field="query")
        limit = self._resolve_limit(limit)
        stmt = (
            scoped(select(EmbeddingRecord), owner_id)
            .where(EmbeddingRecord.content.icontains(query, autoescape=True))
            .order_by(EmbeddingRecord.id.desc())
            .limit(limit)
        )
        result = await self._with_timeout(self._execute(db, stmt), timeout)
        return list(result.scalars().all())

    async def count(
        self, db: AsyncSession, owner_id: str | None = None, *, timeout: float | None = None,
    ) -> int:
        """Count records, optionally for one owner."""
        stmt = select(func.count()).select_from(EmbeddingRecord)
        if owner_id is not None:
            stmt = scoped(stmt, require_owner(owner_id))
        result = await self._with_timeout(self._execute(db, stmt), timeout)
        return int(result.scalar() or 0)

    async def get_stats(self, db: AsyncSession, *, timeout: float | None = None) -> dict:
        """Get embedding statistics for monitoring."""
        total = await self.count(db, timeout=timeout)
        owners_result = await self._with_timeout(
            self._execute(db, select(func.count(func.distinct(EmbeddingRecord.owner_id)))),
            timeout,
        )
        return {
            "total_embeddings": total,
            "total_owners": int(owners_result.scalar() or 0),
            "provider": self.provider.name,
            "model": self.provider.model_name,
            "dimension": self.dimension,
            "index_name": VECTOR_INDEX_NAME,
            "backend": dialect_name(db),
        }

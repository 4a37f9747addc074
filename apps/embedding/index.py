# =============================================================================
# 向量索引与 Schema 管理模块
# =============================================================================
# 本模块负责 pgvector 扩展与近似最近邻索引的维护：
#   - ensure_extension：启用 vector 扩展
#   - ensure_vector_index：创建 IVFFlat 索引（余弦距离运算符类）
#   - rebuild_vector_index：REINDEX ... CONCURRENTLY 重建索引
#
# 索引重建是离线维护操作，不在请求路径上；CONCURRENTLY 模式下
# 重建期间读请求照常进行（允许短暂使用旧索引）。
# 非 PostgreSQL 方言（测试用 SQLite）上所有操作均为空操作。
# =============================================================================

"""Vector index and schema management."""

from __future__ import annotations

import logging

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine, AsyncSession

from .models import TABLE_NAME, VECTOR_INDEX_NAME

logger = logging.getLogger(__name__)


def dialect_name(bind) -> str:
    """Return the dialect name of an engine, connection or session."""
    if hasattr(bind, "get_bind"):
        return bind.get_bind().dialect.name
    return bind.dialect.name


def _is_postgres(bind) -> bool:
    return dialect_name(bind) == "postgresql"


async def ensure_extension(conn: AsyncConnection) -> None:
    """Enable the pgvector extension (PostgreSQL only)."""
    if not _is_postgres(conn):
        return
    await conn.execute(text("CREATE EXTENSION IF NOT EXISTS vector"))


def index_rebuild_advised(row_count: int, lists: int) -> bool:
    """IVFFlat centroids are computed at build time; fewer rows than lists means poor recall."""
    return row_count < lists


async def ensure_vector_index(engine: AsyncEngine, lists: int = 100) -> bool:
    """Create the IVFFlat cosine index on the embedding column if missing.

    Args:
        engine: Async engine.
        lists: Number of IVF lists (clusters).

    Returns:
        bool: ``True`` if the statement was issued, ``False`` on other dialects.
    """
    if not _is_postgres(engine):
        return False
    if lists < 1:
        raise ValueError("lists must be a positive integer")
    # lists 为经过校验的整数，索引名与表名为模块常量
    ddl = (
        f"CREATE INDEX IF NOT EXISTS {VECTOR_INDEX_NAME} ON {TABLE_NAME} "
        f"USING ivfflat (embedding vector_cosine_ops) WITH (lists = {int(lists)})"
    )
    async with engine.begin() as conn:
        await conn.execute(text(ddl))
        row_count = (await conn.execute(text(f"SELECT count(*) FROM {TABLE_NAME}"))).scalar() or 0
    logger.info(f"Vector index {VECTOR_INDEX_NAME} verified (lists={lists})")
    if index_rebuild_advised(row_count, lists):
        # 空表上建立的索引聚类中心无意义，首次批量写入后需要重建
        logger.warning(
            f"Vector index {VECTOR_INDEX_NAME} covers only {row_count} rows (lists={lists}); "
            f"run scripts/reindex_embeddings.py after the first bulk ingest"
        )
    return True


async def rebuild_vector_index(engine: AsyncEngine) -> bool:
    """Rebuild the vector index without blocking concurrent reads.

    ``REINDEX ... CONCURRENTLY`` cannot run inside a transaction block, so the
    statement is executed on an AUTOCOMMIT connection.

    Returns:
        bool: ``True`` if the index was rebuilt, ``False`` on other dialects.
    """
    if not _is_postgres(engine):
        logger.info("Vector index rebuild skipped: not a PostgreSQL database")
        return False
    async with engine.connect() as conn:
        conn = await conn.execution_options(isolation_level="AUTOCOMMIT")
        await conn.execute(text(f"REINDEX INDEX CONCURRENTLY {VECTOR_INDEX_NAME}"))
    logger.info(f"Vector index {VECTOR_INDEX_NAME} rebuilt")
    return True


async def set_probes(db: AsyncSession, probes: int) -> None:
    """Set ``ivfflat.probes`` for the current transaction (PostgreSQL only)."""
    if not _is_postgres(db) or probes < 1:
        return
    await db.execute(text(f"SET LOCAL ivfflat.probes = {int(probes)}"))

# =============================================================================
# 数据库连接与会话管理模块
# =============================================================================
# 本模块负责 ChatMimic Vector Store 的数据库连接管理，是数据访问基础层。
# 主要职责：
#   1. 创建和管理 SQLAlchemy 异步数据库引擎（AsyncEngine）
#   2. 提供异步会话工厂（async_sessionmaker）
#   3. 提供请求级会话生命周期管理（成功提交、异常回滚）
#   4. 提供数据库初始化（pgvector 扩展、建表、向量索引）和关闭功能
#   5. 提供数据库健康检查功能
#
# 架构设计说明：
#   - 模块级全局变量（_engine、_session_factory）实现单例，整个应用共享同一连接池
#   - 延迟导入 settings 模块，避免循环依赖
#   - 存储层自身的事务隔离负责并发写入的一致性，应用层不做额外加锁
# =============================================================================

"""Database connection and session management for ChatMimic Vector Store."""

from __future__ import annotations

import logging
from typing import AsyncGenerator

from sqlalchemy import text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from core.models.base import Base

logger = logging.getLogger(__name__)

# 数据库引擎实例（单例），首次调用 get_engine() 时惰性创建
_engine: AsyncEngine | None = None

# 异步会话工厂实例（单例）
_session_factory: async_sessionmaker[AsyncSession] | None = None


def get_engine() -> AsyncEngine:
    """Get or create the async database engine.

    Lazily constructs a singleton ``AsyncEngine`` from ``settings`` so the
    application shares a single connection pool.

    Returns:
        AsyncEngine: A shared asynchronous engine bound to ``settings.database_url``.
    """
    global _engine
    if _engine is None:
        from settings import settings

        _engine = create_async_engine(
            settings.database_url,
            pool_size=settings.db_pool_size,
            max_overflow=settings.db_max_overflow,
            pool_recycle=settings.db_pool_recycle,
            pool_pre_ping=True,
            echo=settings.db_echo,
        )
        logger.info("Database engine created")
    return _engine


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Get or create the async session factory.

    The factory is configured with ``expire_on_commit=False`` so ORM objects
    stay readable after commit across ``await`` boundaries.
    """
    global _session_factory
    if _session_factory is None:
        _session_factory = async_sessionmaker(
            get_engine(),
            class_=AsyncSession,
            expire_on_commit=False,
        )
    return _session_factory


async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """Yield an async database session for FastAPI dependencies.

    Commits on success and rolls back on any exception, so a failed ingest
    never leaves a partial row behind.

    Yields:
        AsyncSession: An active async SQLAlchemy session.
    """
    factory = get_session_factory()
    async with factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def init_db() -> None:
    """Initialize database schema.

    Enables the ``vector`` extension on PostgreSQL, creates all tables
    registered on ``Base.metadata`` and makes sure the approximate
    nearest-neighbor index exists.
    """
    from apps.embedding.index import ensure_extension, ensure_vector_index
    from settings import settings

    engine = get_engine()
    async with engine.begin() as conn:
        # 扩展必须先于含 VECTOR 列的表创建
        await ensure_extension(conn)
        await conn.run_sync(Base.metadata.create_all)
    await ensure_vector_index(engine, lists=settings.index_ivfflat_lists)
    logger.info("Database tables created/verified")


async def close_db() -> None:
    """Dispose the database engine and clear session factory."""
    global _engine, _session_factory
    if _engine:
        await _engine.dispose()
        _engine = None
        _session_factory = None
        logger.info("Database connections closed")


async def check_db_connection() -> bool:
    """Check whether the database connection is healthy.

    Executes a lightweight ``SELECT 1``.

    Returns:
        bool: ``True`` if the query succeeds, otherwise ``False``.
    """
    try:
        engine = get_engine()
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        return True
    except Exception as e:
        # 健康检查只报告状态，由调用方决定是否中止启动
        logger.error(f"Database connection check failed: {e}")
        return False

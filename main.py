# =============================================================================
# 模块: main.py
# 功能: ChatMimic Vector Store 应用程序的主入口文件
# 架构角色: 作为整个 FastAPI 应用的启动和编排中心，负责：
#   1. 初始化日志系统
#   2. 管理应用生命周期（启动/关闭）
#   3. 注册向量存储路由
#   4. 配置中间件（CORS 跨域）与全局异常处理
# =============================================================================
"""Main application entry point for ChatMimic Vector Store."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

# 数据库相关：初始化、关闭、连接检查
from core.database import init_db, close_db, check_db_connection
# 向量存储模块路由与领域异常基类
from apps.embedding import router as embedding_router
from apps.embedding.exceptions import VectorStoreError
# 日志系统初始化
from common.logger import setup_logging
# 全局配置单例
from settings import settings

# 初始化日志系统，根据 settings.debug 决定日志级别
setup_logging("DEBUG" if settings.debug else "INFO", None)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    # ======================== 启动阶段 ========================
    logger.info(f"Starting {settings.app_name}...")

    # 第一步：检查数据库连接是否可用
    if not await check_db_connection():
        logger.error("Database connection failed")
        raise RuntimeError("Cannot connect to database")

    # 第二步：pgvector 扩展、表结构、向量索引
    await init_db()
    logger.info("Database initialized")

    if not settings.provider_configured:
        # 缺少 API 密钥时服务照常启动，嵌入调用会返回 provider_error
        logger.warning(f"Embedding provider '{settings.embedding_provider}' is not fully configured")

    logger.info(f"{settings.app_name} started successfully")

    yield

    # ======================== 关闭阶段 ========================
    logger.info(f"Shutting down {settings.app_name}...")
    await close_db()
    logger.info(f"{settings.app_name} shutdown complete")


app = FastAPI(
    title=settings.app_name,
    description="Per-tenant embedding store and similarity search",
    version="1.0.0",
    lifespan=lifespan,
)

# 注意: allow_origins=["*"] 时不应启用 allow_credentials=True
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins_list,
    allow_credentials=settings.cors_allow_credentials,
    allow_methods=["*"],
    allow_headers=["*"],
)


# 领域异常统一渲染为 {"detail": ..., "kind": ...}，状态码由异常类型决定
@app.exception_handler(VectorStoreError)
async def vector_store_exception_handler(request: Request, exc: VectorStoreError):
    if exc.status_code >= 500:
        logger.warning(f"{exc.kind} on {request.method} {request.url.path}: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


# 全局异常处理器
# 捕获所有未处理的异常，防止敏感错误信息泄露给客户端
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.exception(f"Unhandled exception: {exc}")
    return JSONResponse(
        status_code=500,
        content={"detail": "Internal server error", "kind": "internal_error"},
    )


# 向量存储路由：/api/v1/embeddings
app.include_router(embedding_router, prefix=f"{settings.api_prefix}/embeddings", tags=["Embedding"])


@app.get("/health")
async def health_check():
    """Health check endpoint with component status.

    检查数据库连接与嵌入提供商配置状态。
    """
    db_ok = await check_db_connection()
    return {
        "status": "healthy" if db_ok else "unhealthy",
        "components": {
            "database": "connected" if db_ok else "disconnected",
            "embedding_provider": settings.embedding_provider,
            "embedding_model": settings.embedding_model,
            "provider_configured": settings.provider_configured,
        },
    }


@app.get("/health/ready")
async def readiness_check():
    """Readiness probe: the database must be reachable."""
    if not await check_db_connection():
        raise HTTPException(status_code=503, detail="Database not ready")
    return {"status": "ready"}


def run() -> None:
    """Entry point for the ``chatmimic-vector-store`` console script."""
    import argparse
    import uvicorn

    parser = argparse.ArgumentParser(description="Run ChatMimic Vector Store server")
    parser.add_argument("--host", type=str, default=None, help="Host to bind to")
    parser.add_argument("--port", type=int, default=None, help="Port to bind to")
    parser.add_argument("--reload", action="store_true", help="Enable auto-reload")
    args = parser.parse_args()

    # 优先使用命令行参数，其次使用 settings 配置
    host = args.host or settings.app_host
    port = args.port or settings.app_port
    reload = args.reload or settings.debug

    uvicorn.run("main:app", host=host, port=port, reload=reload)


if __name__ == "__main__":
    run()

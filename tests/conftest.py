"""Shared test fixtures for ChatMimic Vector Store tests."""

from __future__ import annotations

import hashlib
import os
import sys
import time
from typing import AsyncGenerator, Callable, Generator

# 必须在导入 settings / 模型之前设置：向量列维度在导入时固定
os.environ.setdefault("EMBEDDING_DIMENSION", "8")
os.environ.setdefault("EMBEDDING_PROVIDER", "openai")
os.environ.setdefault("OPENAI_API_KEY", "test-key")
os.environ.setdefault("JWT_SECRET_KEY", "test-secret-key")

import pytest
import pytest_asyncio
from fastapi.testclient import TestClient
from sqlalchemy import BigInteger
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

# Ensure project root is on sys.path so bare imports work
_PROJECT_ROOT = os.path.join(os.path.dirname(__file__), os.pardir)
if _PROJECT_ROOT not in sys.path:
    sys.path.insert(0, os.path.abspath(_PROJECT_ROOT))

from apps.embedding.providers.base import BaseEmbeddingProvider  # noqa: E402

# Use in-memory SQLite for tests (faster, no external dependencies)
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"
TEST_DIMENSION = 8


# BigInteger renders as BIGINT, which SQLite does not treat as a ROWID alias,
# so autoincrement would not work. Render it as INTEGER on sqlite.
from sqlalchemy.ext.compiler import compiles as _compiles  # noqa: E402


@_compiles(BigInteger, "sqlite")
def _compile_big_int_sqlite(type_, compiler, **kw):
    return "INTEGER"


# ---------------------------------------------------------------------------
# Deterministic embedding provider
# ---------------------------------------------------------------------------

class StubEmbeddingProvider(BaseEmbeddingProvider):
    """Deterministic provider for tests.

    相同文本总是得到相同向量；可通过 vectors 指定特定文本的向量，
    通过 fail_with / delay 模拟上游失败与超时。
    """

    name = "stub"
    model_name = "stub-embedding"

    def __init__(
        self,
        dimension: int = TEST_DIMENSION,
        vectors: dict[str, list[float]] | None = None,
        fail_with: Exception | None = None,
        delay: float = 0.0,
    ):
        self._dimension = dimension
        self.vectors = vectors or {}
        self.fail_with = fail_with
        self.delay = delay
        self.calls: list[str] = []

    def encode(self, text: str) -> list[float]:
        self.calls.append(text)
        if self.delay:
            time.sleep(self.delay)
        if self.fail_with is not None:
            raise self.fail_with
        if text in self.vectors:
            return list(self.vectors[text])
        digest = hashlib.sha256(text.encode("utf-8")).digest()
        return [(b - 127.5) / 127.5 for b in digest[: self._dimension]]

    def encode_batch(self, texts: list[str]) -> list[list[float]]:
        return [self.encode(t) for t in texts]

    @property
    def dimension(self) -> int:
        return self._dimension


def unit(index: int, dimension: int = TEST_DIMENSION) -> list[float]:
    """Return the ``index``-th basis vector."""
    vec = [0.0] * dimension
    vec[index] = 1.0
    return vec


@pytest.fixture
def stub_provider() -> StubEmbeddingProvider:
    """Provide a fresh deterministic provider.

    提供确定性的测试用嵌入提供商。
    """
    return StubEmbeddingProvider()


@pytest.fixture
def service(stub_provider):
    """Provide an EmbeddingService wired to the stub provider.

    提供使用测试提供商的嵌入服务实例。
    """
    from apps.embedding.service import EmbeddingService

    return EmbeddingService(provider=stub_provider, dimension=TEST_DIMENSION)


@pytest.fixture
def make_service() -> Callable[..., object]:
    """Build an EmbeddingService around a customised stub provider.

    用于模拟维度错误、上游失败、超时等场景。
    """
    from apps.embedding.service import EmbeddingService

    def _make(**provider_kwargs):
        return EmbeddingService(
            provider=StubEmbeddingProvider(**provider_kwargs), dimension=TEST_DIMENSION,
        )

    return _make


# ---------------------------------------------------------------------------
# Database fixtures
# ---------------------------------------------------------------------------

def _make_engine():
    return create_async_engine(
        TEST_DATABASE_URL,
        echo=False,
        # StaticPool keeps a single connection so the in-memory database is
        # shared by every session created from this engine.
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )


@pytest_asyncio.fixture
async def test_engine():
    """Create an async test engine with a fresh schema.

    为每个测试创建带有全新表结构的异步引擎。
    """
    import apps.embedding.models  # noqa: F401
    from core.models.base import Base

    engine = _make_engine()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest_asyncio.fixture
async def db_session(test_engine) -> AsyncGenerator[AsyncSession, None]:
    """Provide an isolated database session per test.

    为每个测试提供独立数据库会话。
    """
    session_factory = async_sessionmaker(
        test_engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )
    async with session_factory() as session:
        yield session
        # Rollback any uncommitted changes
        await session.rollback()


# ---------------------------------------------------------------------------
# HTTP fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def client(service) -> Generator[TestClient, None, None]:
    """Provide a FastAPI test client with DB and service overrides.

    构建测试客户端，覆盖数据库会话与嵌入服务依赖，不触发生命周期事件。
    """
    from fastapi import FastAPI

    import apps.embedding.models  # noqa: F401
    from apps.embedding.api import get_embedding_service
    from core.database import get_session
    from core.models.base import Base
    from main import app

    engine = _make_engine()
    session_factory = async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )
    _initialized = False

    async def override_get_session():
        nonlocal _initialized

        # 首次请求时建表（在 TestClient 的事件循环中）
        if not _initialized:
            async with engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
            _initialized = True

        async with session_factory() as session:
            yield session
            # Commit after each request so changes persist across requests
            await session.commit()

    test_app = FastAPI(title=app.title)

    # Copy middleware
    for middleware in app.user_middleware:
        test_app.user_middleware.append(middleware)

    # Copy exception handlers
    for exc_class, handler in app.exception_handlers.items():
        test_app.add_exception_handler(exc_class, handler)

    # Copy routes
    for route in app.routes:
        test_app.routes.append(route)

    # 复制过来的路由仍以原 app 作为 dependency_overrides_provider，
    # 因此原 app 与 test_app 两处都要覆盖
    for target in (app, test_app):
        target.dependency_overrides[get_session] = override_get_session
        target.dependency_overrides[get_embedding_service] = lambda: service
    test_app.state.test_engine = engine

    try:
        with TestClient(test_app, raise_server_exceptions=False) as test_client:
            yield test_client
    finally:
        app.dependency_overrides.clear()
        test_app.dependency_overrides.clear()


@pytest.fixture
def make_headers() -> Callable[..., dict]:
    """Build Bearer headers for an owner, optionally with the admin scope.

    为指定租户生成带 Bearer 令牌的请求头。
    """
    from core.security import create_access_token
    from settings import settings

    def _make(owner_id: str, admin: bool = False) -> dict:
        scopes = [settings.jwt_admin_scope] if admin else []
        token = create_access_token(owner_id, scopes=scopes)
        return {"Authorization": f"Bearer {token}"}

    return _make

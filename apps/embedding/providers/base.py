# =============================================================================
# Embedding Provider 抽象基类模块
# =============================================================================
# 本模块定义了嵌入提供商的抽象接口。核心服务把提供商视为黑盒：
#   - encode: 单文本编码
#   - encode_batch: 批量文本编码
#   - dimension: 返回向量维度
# 提供商失败时必须抛出 ProviderError（或超时时抛出 EmbeddingTimeoutError），
# 不得返回部分结果。
# =============================================================================

"""Base embedding provider."""

from __future__ import annotations

from abc import ABC, abstractmethod


# -----------------------------------------------------------------------------
# 嵌入提供商抽象基类
# encode / encode_batch 是同步方法，服务层通过 asyncio.to_thread 包装，
# 避免阻塞事件循环。
# -----------------------------------------------------------------------------
class BaseEmbeddingProvider(ABC):
    """Abstract base class for embedding providers.

    嵌入提供商抽象基类，定义统一编码接口。
    """

    # 提供商名称，写入统计信息与响应中
    name: str = "base"
    model_name: str = ""

    @abstractmethod
    def encode(self, text: str) -> list[float]:
        """Encode text to an embedding vector.

        Args:
            text: Input text.

        Returns:
            list[float]: Embedding vector.
        """
        ...

    @abstractmethod
    def encode_batch(self, texts: list[str]) -> list[list[float]]:
        """Encode multiple texts.

        Args:
            texts: List of input texts.

        Returns:
            list[list[float]]: Embedding vectors aligned to input order.
        """
        ...

    @property
    @abstractmethod
    def dimension(self) -> int:
        """Return embedding dimension.

        例如：all-MiniLM-L6-v2 -> 384, text-embedding-3-small -> 1536
        """
        ...

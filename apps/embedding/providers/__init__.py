"""Embedding providers."""

from .base import BaseEmbeddingProvider

__all__ = ["BaseEmbeddingProvider", "get_embedding_provider"]


def get_embedding_provider() -> BaseEmbeddingProvider:
    """Get the configured embedding provider.

    根据配置选择嵌入提供商（OpenAI 或本地 sentence-transformers）。

    Raises:
        ValueError: If ``settings.embedding_provider`` is unknown.
    """
    from settings import settings

    if settings.embedding_provider == "openai":
        from .openai_provider import OpenAIEmbeddingProvider
        return OpenAIEmbeddingProvider(
            api_key=settings.openai_api_key,
            model_name=settings.embedding_model,
            base_url=settings.openai_base_url,
            timeout=settings.embedding_request_timeout,
        )
    if settings.embedding_provider in ("sentence-transformers", "local"):
        from .sentence_transformer import SentenceTransformerProvider
        return SentenceTransformerProvider(model_name=settings.embedding_model)
    raise ValueError(f"Unknown embedding provider: {settings.embedding_provider}")

# =============================================================================
# Sentence-Transformers 本地嵌入提供商模块
# =============================================================================
# 本地嵌入实现，适用于数据不出本机或离线开发的场景。
#   - 模型懒加载：首次 encode 调用时才加载
#   - 强制使用 CPU，避免与其他进程争用显存
#   - normalize_embeddings=True：输出归一化向量，余弦相似度等价于点积
# 注意：默认集合维度为 1536，使用本地模型时需同步设置 EMBEDDING_DIMENSION。
# =============================================================================

"""Local embedding provider using sentence-transformers."""

from __future__ import annotations

import logging
import os

from ..exceptions import ProviderError
from .base import BaseEmbeddingProvider

logger = logging.getLogger(__name__)


class SentenceTransformerProvider(BaseEmbeddingProvider):
    """Local embedding using sentence-transformers."""

    name = "sentence-transformers"

    def __init__(self, model_name: str = "all-MiniLM-L6-v2"):
        self.model_name = model_name
        self._model = None
        self._dimension = None

    def _get_model(self):
        """Lazily load the SentenceTransformer model."""
        if self._model is None:
            os.environ.setdefault("TOKENIZERS_PARALLELISM", "false")
            try:
                from sentence_transformers import SentenceTransformer
            except ImportError as e:
                raise ProviderError(
                    "sentence-transformers is not installed", provider=self.name,
                ) from e
            logger.info(f"Loading embedding model: {self.model_name}")
            try:
                self._model = SentenceTransformer(self.model_name, device="cpu")
            except Exception as e:
                raise ProviderError(
                    f"Failed to load model {self.model_name}: {e}", provider=self.name,
                ) from e
            self._dimension = self._model.get_sentence_embedding_dimension()
        return self._model

    def encode(self, text: str) -> list[float]:
        """Encode a single text into a normalized embedding vector."""
        model = self._get_model()
        embedding = model.encode(
            text, convert_to_numpy=True, normalize_embeddings=True, show_progress_bar=False
        )
        return embedding.tolist()

    def encode_batch(self, texts: list[str]) -> list[list[float]]:
        """Encode multiple texts into normalized embedding vectors."""
        model = self._get_model()
        embeddings = model.encode(
            texts, convert_to_numpy=True, normalize_embeddings=True, show_progress_bar=False
        )
        return embeddings.tolist()

    @property
    def dimension(self) -> int:
        """Return embedding vector dimension (loads the model if needed)."""
        if self._dimension is None:
            self._get_model()
        return self._dimension

# =============================================================================
# OpenAI Embedding 提供商模块
# =============================================================================
# 本模块实现了基于 OpenAI Embeddings API 的云端嵌入提供商，
# 是服务的默认提供商。
#
# 默认使用 text-embedding-3-small 模型：
#   - 维度：1536
#   - 成本：按 token 计费（因此入口处限制文本长度）
#
# 错误映射：
#   - httpx.TimeoutException      -> EmbeddingTimeoutError
#   - 其他 httpx.HTTPError / 非 2xx -> ProviderError
#   - 响应格式异常                  -> ProviderError
# =============================================================================

"""OpenAI embedding provider."""

from __future__ import annotations

import logging

import httpx

from ..exceptions import EmbeddingTimeoutError, ProviderError
from .base import BaseEmbeddingProvider

logger = logging.getLogger(__name__)


class OpenAIEmbeddingProvider(BaseEmbeddingProvider):
    """OpenAI API embedding provider.

    基于 OpenAI Embeddings API 的云端嵌入实现。
    """

    name = "openai"

    def __init__(
        self,
        api_key: str = "",
        model_name: str = "text-embedding-3-small",
        base_url: str = "https://api.openai.com/v1",
        timeout: float = 30.0,
        transport: httpx.BaseTransport | None = None,
    ):
        """Initialize OpenAI embedding provider.

        Args:
            api_key: OpenAI API key.
            model_name: Embedding model name.
            base_url: API base URL (OpenAI-compatible gateways supported).
            timeout: Per-request timeout in seconds.
            transport: Optional httpx transport (used by tests).
        """
        self._api_key = api_key
        self.model_name = model_name
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._transport = transport
        # 根据模型名称推断维度：-large -> 3072，其余 -> 1536
        self._dimension = 3072 if "large" in model_name else 1536

    def _post(self, payload_input: str | list[str]) -> list[dict]:
        """Call the embeddings endpoint and return the ``data`` array."""
        if not self._api_key:
            raise ProviderError("OpenAI API key is not configured", provider=self.name)

        try:
            with httpx.Client(timeout=self._timeout, transport=self._transport) as client:
                response = client.post(
                    f"{self._base_url}/embeddings",
                    headers={
                        "Authorization": f"Bearer {self._api_key}",
                        "Content-Type": "application/json",
                    },
                    json={"input": payload_input, "model": self.model_name},
                )
                response.raise_for_status()
                body = response.json()
        except httpx.TimeoutException as e:
            raise EmbeddingTimeoutError(f"OpenAI embeddings request timed out: {e}") from e
        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            logger.warning(f"OpenAI embeddings request failed with status {status}")
            raise ProviderError(
                f"OpenAI embeddings request failed with status {status}",
                provider=self.name,
                status_code=status,
            ) from e
        except httpx.HTTPError as e:
            raise ProviderError(f"OpenAI embeddings request failed: {e}", provider=self.name) from e
        except ValueError as e:
            raise ProviderError("OpenAI returned a non-JSON response", provider=self.name) from e

        data = body.get("data") if isinstance(body, dict) else None
        if not data or not all(isinstance(d, dict) and "embedding" in d for d in data):
            raise ProviderError("Invalid embedding response format", provider=self.name)
        return data

    def encode(self, text: str) -> list[float]:
        """Encode a single text into an embedding vector.

        Raises:
            ProviderError: If the API request fails or the payload is malformed.
            EmbeddingTimeoutError: If the request times out.
        """
        data = self._post(text)
        # API 返回格式：{"data": [{"embedding": [...], "index": 0}]}
        return [float(x) for x in data[0]["embedding"]]

    def encode_batch(self, texts: list[str]) -> list[list[float]]:
        """Encode multiple texts into embedding vectors."""
        if not texts:
            return []
        data = self._post(texts)
        if len(data) != len(texts):
            raise ProviderError(
                f"Expected {len(texts)} embeddings, got {len(data)}", provider=self.name,
            )
        # 按 index 排序，保证与输入顺序一致
        ordered = sorted(data, key=lambda d: d.get("index", 0))
        return [[float(x) for x in d["embedding"]] for d in ordered]

    @property
    def dimension(self) -> int:
        """Return embedding vector dimension."""
        return self._dimension

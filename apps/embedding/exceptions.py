# =============================================================================
# Embedding 子系统异常定义模块
# =============================================================================
# 所有领域异常都继承自 VectorStoreError，携带：
#   - kind：稳定的错误类别标签，调用方据此分支处理
#   - status_code：HTTP 层映射的状态码
# 核心层不做自动重试，也不吞掉异常；查询结果为空属于成功而非错误。
# =============================================================================

"""Error taxonomy for the embedding store."""

from __future__ import annotations


class VectorStoreError(Exception):
    """Base exception for all embedding store errors."""

    kind = "vector_store_error"
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict:
        return {"detail": self.message, "kind": self.kind}


class ValidationError(VectorStoreError):
    """Bad input shape or length (empty owner, oversized content, bad limit)."""

    kind = "validation_error"
    status_code = 422


class DimensionMismatchError(VectorStoreError):
    """Vector length disagrees with the collection's fixed dimension."""

    kind = "dimension_mismatch"
    status_code = 422

    def __init__(self, expected: int, actual: int):
        super().__init__(f"Expected vector of dimension {expected}, got {actual}")
        self.expected = expected
        self.actual = actual


class ProviderError(VectorStoreError):
    """Embedding generation failed upstream (quota, auth, bad payload)."""

    kind = "provider_error"
    status_code = 502

    def __init__(self, message: str, provider: str | None = None, status_code: int | None = None):
        super().__init__(message)
        self.provider = provider
        # 上游返回的 HTTP 状态码，与本异常映射的 status_code 区分
        self.upstream_status = status_code


class EmbeddingTimeoutError(VectorStoreError, TimeoutError):
    """An external call exceeded the caller-specified timeout."""

    kind = "timeout"
    status_code = 504


class StorageError(VectorStoreError):
    """Transactional failure or constraint violation in the storage engine."""

    kind = "storage_error"
    status_code = 503


class RecordNotFoundError(VectorStoreError):
    """The record does not exist within the caller's owner scope."""

    kind = "not_found"
    status_code = 404

    def __init__(self, record_id: int):
        super().__init__(f"Embedding record {record_id} not found")
        self.record_id = record_id

"""Per-tenant embedding store and similarity search."""

from apps.embedding.api import router

__all__ = ["router"]

"""Core ORM models."""

from core.models.base import Base, TimestampMixin

__all__ = ["Base", "TimestampMixin"]

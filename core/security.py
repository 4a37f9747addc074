# =============================================================================
# 安全工具模块
# =============================================================================
# 本模块提供 JWT 令牌的签发与校验。
#   - 令牌的 sub 声明即租户（owner）标识，调用层据此限定可访问的数据范围
#   - scope 声明为空格分隔的权限列表，管理员 scope 解锁跨租户操作
# 身份认证流程（Firebase / OAuth 登录）不在本服务范围内，
# 上游网关在认证完成后签发本服务可识别的令牌。
# =============================================================================

"""Security utilities for ChatMimic Vector Store.

Provides JWT token creation and verification.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Iterable

from jose import JWTError, jwt

logger = logging.getLogger(__name__)


def create_access_token(
    subject: str,
    scopes: Iterable[str] = (),
    expires_delta: timedelta | None = None,
) -> str:
    """Create a signed JWT access token for a tenant.

    Args:
        subject: Owner identifier stored in the ``sub`` claim.
        scopes: Extra scopes, joined into the space separated ``scope`` claim.
        expires_delta: Optional override for token lifetime.

    Returns:
        str: Encoded JWT access token.
    """
    from settings import settings

    if expires_delta:
        expire = datetime.now(timezone.utc) + expires_delta
    else:
        expire = datetime.now(timezone.utc) + timedelta(
            minutes=settings.jwt_access_token_expire_minutes
        )
    to_encode: dict[str, Any] = {
        "sub": subject,
        "scope": " ".join(scopes),
        "exp": expire,
        "type": "access",
    }
    return jwt.encode(
        to_encode,
        settings.jwt_secret_key,
        algorithm=settings.jwt_algorithm,
    )


def decode_token(token: str) -> dict[str, Any] | None:
    """Decode and verify a JWT token.

    Validates signature, algorithm, and expiration. Returns ``None`` on any
    JWT error instead of raising.

    Args:
        token: Encoded JWT string.

    Returns:
        dict[str, Any] | None: Decoded payload if valid, otherwise ``None``.
    """
    from settings import settings

    try:
        return jwt.decode(
            token,
            settings.jwt_secret_key,
            algorithms=[settings.jwt_algorithm],
        )
    except JWTError as e:
        logger.debug(f"Token rejected: {e}")
        return None


def token_scopes(payload: dict[str, Any]) -> set[str]:
    """Return the scopes carried by a decoded token payload."""
    raw = payload.get("scope") or ""
    if isinstance(raw, (list, tuple)):
        return {str(s) for s in raw}
    return {s for s in str(raw).split() if s}

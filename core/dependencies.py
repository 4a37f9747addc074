# =============================================================================
# FastAPI 依赖注入模块
# =============================================================================
# 本模块提供认证与授权依赖函数：
#   1. 从 HTTP 请求中提取和验证 JWT 令牌
#   2. 解析当前租户（owner）标识
#   3. 提供管理员 scope 检查，保护跨租户与索引维护端点
#
# 核心服务信任这里解析出的 owner_id，因此所有租户范围的端点
# 都必须通过 get_current_owner 获取 owner，而不是从请求体读取。
# =============================================================================

"""FastAPI dependencies for ChatMimic Vector Store.

Provides authentication and authorization dependencies.
"""

from __future__ import annotations

from typing import Annotated, Any

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from core.security import decode_token, token_scopes

# auto_error=False：缺少令牌时返回 None，由依赖函数统一返回 401
http_bearer = HTTPBearer(auto_error=False)


async def get_token_payload(
    credentials: Annotated[
        HTTPAuthorizationCredentials | None, Depends(http_bearer)
    ] = None,
) -> dict[str, Any]:
    """Validate the Bearer token and return its payload.

    Raises:
        HTTPException: 401 if the token is missing, invalid, expired or not
            an access token.
    """
    if not credentials:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )

    payload = decode_token(credentials.credentials)
    if not payload or payload.get("type") != "access":
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return payload


async def get_current_owner(
    payload: Annotated[dict[str, Any], Depends(get_token_payload)],
) -> str:
    """Resolve the tenant (owner) identifier of the current request.

    Raises:
        HTTPException: 401 if the token carries no subject.
    """
    owner_id = str(payload.get("sub") or "")
    # sub 原样作为租户标识，空白或带首尾空白的一律拒绝
    if not owner_id.strip() or owner_id != owner_id.strip():
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Token has no subject",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return owner_id


async def require_admin(
    payload: Annotated[dict[str, Any], Depends(get_token_payload)],
) -> dict[str, Any]:
    """Require the administrative scope.

    Raises:
        HTTPException: 403 if the token lacks the admin scope.
    """
    from settings import settings

    if settings.jwt_admin_scope not in token_scopes(payload):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=f"Missing scope: {settings.jwt_admin_scope}",
        )
    return payload


# 类型别名，简化路由函数签名
CurrentOwner = Annotated[str, Depends(get_current_owner)]
AdminPayload = Annotated[dict[str, Any], Depends(require_admin)]

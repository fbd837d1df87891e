"""
Identity for API requests.

Identity is verified upstream; requests carry either a bearer JWT signed
with AUTH_JWT_SECRET (claims: sub, is_admin, bypass_limits) or, when no
token is present, an X-User-Id header.
"""
import hmac
from typing import Any, Dict, Optional

import jwt
from fastapi import Depends, Header, HTTPException, Request

from companion.core.config import settings
from companion.core.logging import log_event


def verify_jwt(token: str) -> Optional[Dict[str, Any]]:
    """
    Verify a bearer token and return its claims.

    Returns None when no secret is configured.

    Raises:
        HTTPException 401: invalid or expired token
    """
    if not settings.AUTH_JWT_SECRET:
        return None

    try:
        claims = jwt.decode(
            token,
            settings.AUTH_JWT_SECRET,
            algorithms=["HS256"],
            options={"verify_signature": True, "verify_exp": True},
        )
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Token expired")
    except jwt.InvalidTokenError as e:
        log_event("info", "auth.invalid_token", event_type="auth", extra={"error": e})
        raise HTTPException(status_code=401, detail="Invalid token")

    if not claims.get("sub"):
        raise HTTPException(status_code=401, detail="Invalid token")
    return claims


async def get_identity(
    request: Request,
    x_user_id: Optional[str] = Header(None, description="Caller user ID when no bearer token is sent"),
) -> Dict[str, Any]:
    """
    Resolve the caller's identity.

    Priority:
    1. Bearer JWT from the Authorization header
    2. X-User-Id header (no privilege flags)
    3. 401 Unauthorized
    """
    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        claims = verify_jwt(auth_header[7:])
        if claims:
            return {
                "user_id": claims["sub"],
                "is_admin": bool(claims.get("is_admin")),
                "bypass_limits": bool(claims.get("bypass_limits")),
            }

    if x_user_id:
        return {"user_id": x_user_id, "is_admin": False, "bypass_limits": False}

    raise HTTPException(
        status_code=401,
        detail={
            "error": "unauthorized",
            "message": "Missing Authorization (Bearer JWT) or X-User-Id header",
        },
    )


async def get_current_user_id(identity: Dict[str, Any] = Depends(get_identity)) -> str:
    return identity["user_id"]


async def require_admin(
    request: Request,
    x_admin_key: Optional[str] = Header(None),
) -> Dict[str, Any]:
    """Admin routes: a valid X-Admin-Key, or a JWT identity with is_admin."""
    if x_admin_key and settings.ADMIN_KEY and hmac.compare_digest(x_admin_key, settings.ADMIN_KEY):
        return {"user_id": "admin-key", "is_admin": True, "bypass_limits": True}

    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        claims = verify_jwt(auth_header[7:])
        if claims and claims.get("is_admin"):
            return {"user_id": claims["sub"], "is_admin": True, "bypass_limits": True}

    raise HTTPException(status_code=403, detail="Admin access required")

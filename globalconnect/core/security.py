"""
GlobalConnect — core/security.py
─────────────────────────────────────────────────────────────────
Identity verification against the external identity provider.

Tokens are HS256 JWTs signed by the provider (Supabase). We only
verify them. Issuing tokens and sign-in live outside this service.

Usage:
    from globalconnect.core.security import get_current_identity, require_admin

    @router.get("/me")
    async def me(identity: Identity = Depends(get_current_identity)):
        return {"user_id": identity.user_id}
─────────────────────────────────────────────────────────────────
"""

import logging
from dataclasses import dataclass
from typing import Optional

from fastapi import Depends, Request
from jose import JWTError, jwt

from globalconnect.core.config import cfg
from globalconnect.core.errors import Unauthenticated, PermissionDenied

logger = logging.getLogger("globalconnect.security")


@dataclass
class Identity:
    user_id: str
    email:   Optional[str] = None
    role:    str = "user"

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


# ─────────────────────────────────────────────
# Token verification
# ─────────────────────────────────────────────
def verify_bearer_token(token: str) -> Identity:
    """
    Decode and verify a provider-issued JWT.
    Raises Unauthenticated if the token is invalid, expired or has no 'sub'.
    """
    options = {"verify_aud": bool(cfg.AUTH_JWT_AUDIENCE)}
    try:
        payload = jwt.decode(
            token,
            cfg.AUTH_JWT_SECRET,
            algorithms=[cfg.ALGORITHM],
            audience=cfg.AUTH_JWT_AUDIENCE or None,
            options=options,
        )
    except JWTError as e:
        logger.warning(f"JWT decode failed: {e}")
        raise Unauthenticated("Invalid or expired token.")

    user_id = payload.get("sub")
    if not user_id:
        raise Unauthenticated("Invalid token payload.")

    # Supabase keeps custom roles in app_metadata
    app_meta = payload.get("app_metadata") or {}
    role = app_meta.get("role") or payload.get("user_role") or "user"

    return Identity(user_id=user_id, email=payload.get("email"), role=role)


# ─────────────────────────────────────────────
# Request helpers
# ─────────────────────────────────────────────
def get_token_from_request(request: Request) -> Optional[str]:
    """Extract the token from 'Authorization: Bearer <token>'."""
    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        return auth_header[len("Bearer "):].strip() or None
    return None


async def get_current_identity(request: Request) -> Identity:
    """
    FastAPI dependency: returns the caller's Identity.
    Raises 401 when no token is present or it fails verification.
    """
    token = get_token_from_request(request)
    if not token:
        raise Unauthenticated("No token provided.")
    return verify_bearer_token(token)


async def require_admin(identity: Identity = Depends(get_current_identity)) -> Identity:
    if not identity.is_admin:
        raise PermissionDenied("Admin role required.")
    return identity

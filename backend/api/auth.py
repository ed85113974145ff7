# api/auth.py
# ============================================================================
# BEARER TOKEN → ACTOR
# ============================================================================
# Identity lives with an external provider; we only verify its HS256 JWTs.
# Claims: sub = user id, role = "admin" | "user", email (optional).
# ============================================================================

from typing import Optional

import jwt
import structlog
from fastapi import Header, Request

from pipeline.errors import AuthenticationError, PreconditionError
from schemas.commerce import Actor, ActorRole

logger = structlog.get_logger().bind(component="auth")


def actor_from_token(token: str, secret: str, algorithm: str = "HS256") -> Actor:
    try:
        payload = jwt.decode(token, secret, algorithms=[algorithm])
    except jwt.ExpiredSignatureError:
        raise AuthenticationError("token expired")
    except jwt.InvalidTokenError as e:
        logger.info("token_rejected", error=str(e))
        raise AuthenticationError("invalid token")

    user_id = payload.get("sub")
    if not user_id:
        raise AuthenticationError("token has no subject")

    role = ActorRole.ADMIN if payload.get("role") == "admin" else ActorRole.CLIENT
    return Actor(role=role, user_id=str(user_id), email=payload.get("email"))


def parse_bearer(authorization: Optional[str]) -> str:
    if not authorization or not authorization.lower().startswith("bearer "):
        raise AuthenticationError("missing bearer token")
    token = authorization[7:].strip()
    if not token:
        raise AuthenticationError("missing bearer token")
    return token


async def get_actor(request: Request, authorization: Optional[str] = Header(default=None)) -> Actor:
    """FastAPI dependency: the authenticated caller."""
    settings = request.app.state.settings
    return actor_from_token(parse_bearer(authorization), settings.auth_jwt_secret, settings.auth_jwt_algorithm)


async def get_admin(request: Request, authorization: Optional[str] = Header(default=None)) -> Actor:
    """FastAPI dependency: the authenticated caller, who must be an admin."""
    actor = await get_actor(request, authorization)
    if not actor.is_admin:
        raise PreconditionError("admin role required")
    return actor

"""
Authentication for the import API.

Trainers authenticate with an API key or a Clerk-issued JWT; the resolved
user id is the trainer id every job is scoped to. Internal endpoints (worker
tick, purge) take a shared bearer secret instead.
"""
import hmac
import logging
import os
from typing import Optional

import jwt
from fastapi import Header, HTTPException

from routine_import_api.config import Settings

logger = logging.getLogger(__name__)

DEFAULT_API_KEY_USER = "admin"

_jwks_client: Optional[jwt.PyJWKClient] = None


def get_jwks_client() -> Optional[jwt.PyJWKClient]:
    """Lazily build the JWKS client for the configured Clerk domain."""
    global _jwks_client
    clerk_domain = os.getenv("CLERK_DOMAIN", "")
    if _jwks_client is None and clerk_domain:
        _jwks_client = jwt.PyJWKClient(f"https://{clerk_domain}/.well-known/jwks.json")
    return _jwks_client


async def get_current_user(
    authorization: Optional[str] = Header(None),
    x_api_key: Optional[str] = Header(None, alias="X-API-Key"),
) -> str:
    """Resolve the calling trainer from ``X-API-Key`` or a bearer JWT."""
    if x_api_key:
        return validate_api_key(x_api_key)
    if authorization:
        return validate_jwt(authorization)
    raise HTTPException(
        status_code=401,
        detail="Missing authentication. Provide Authorization header or X-API-Key.",
    )


def validate_api_key(api_key: str) -> str:
    """
    Check an API key against ``API_KEYS``.

    ``key`` authenticates as the default user, ``key:user_id`` as ``user_id``.
    """
    valid_keys = {k.strip() for k in os.getenv("API_KEYS", "").split(",") if k.strip()}
    if not valid_keys:
        logger.warning("API key presented but API_KEYS is empty")
        raise HTTPException(status_code=401, detail="API key authentication not configured")

    key, _, user_id = api_key.partition(":")
    if key not in valid_keys:
        raise HTTPException(status_code=401, detail="Invalid API key")
    return user_id or DEFAULT_API_KEY_USER


def validate_jwt(authorization: str) -> str:
    if not authorization.startswith("Bearer "):
        raise HTTPException(status_code=401, detail="Invalid authorization header format")

    token = authorization.split(" ", 1)[1]
    jwks_client = get_jwks_client()
    if jwks_client is None:
        raise HTTPException(status_code=500, detail="JWT validation not configured (missing CLERK_DOMAIN)")

    try:
        signing_key = jwks_client.get_signing_key_from_jwt(token)
        payload = jwt.decode(
            token,
            signing_key.key,
            algorithms=["RS256"],
            options={"verify_aud": False},
        )
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Token expired")
    except jwt.InvalidTokenError as e:
        raise HTTPException(status_code=401, detail=f"Invalid token: {e}")

    trainer_id = payload.get("sub")
    if not trainer_id:
        raise HTTPException(status_code=401, detail="Token missing user ID")
    return trainer_id


async def require_internal_secret(authorization: Optional[str] = Header(None)) -> None:
    """Guard for internal endpoints. An unset secret rejects every call."""
    secret = Settings().IMPORT_INTERNAL_SECRET
    if not secret:
        logger.warning("Internal import endpoint called but IMPORT_INTERNAL_SECRET is not set")
        raise HTTPException(status_code=401, detail="Internal endpoints are not configured")
    if not authorization or not hmac.compare_digest(authorization, f"Bearer {secret}"):
        raise HTTPException(status_code=401, detail="Invalid internal secret")

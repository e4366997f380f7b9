import logging
from functools import lru_cache

import httpx
from jose import jwt, JWTError
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

from app.core.config import settings

logger = logging.getLogger(__name__)

# Bearer token extractor; require_auth raises its own 401 with a WWW-Authenticate header
security = HTTPBearer(auto_error=False)

ASYMMETRIC_ALGS = ["RS256", "ES256", "EdDSA"]


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


@lru_cache(maxsize=1)
def get_jwks() -> dict:
    """Fetch Supabase JWKS for JWT verification (cached)."""
    jwks_url = f"{settings.supabase_url}/auth/v1/.well-known/jwks.json"
    response = httpx.get(jwks_url, timeout=10.0)
    response.raise_for_status()
    return response.json()


def _find_key(kid: str | None) -> dict | None:
    for k in get_jwks().get("keys", []):
        if k.get("kid") == kid:
            return k
    # JWKS might be stale after a key rotation; refresh once
    logger.warning(f"JWT kid={kid} not found in cached JWKS, refreshing...")
    get_jwks.cache_clear()
    for k in get_jwks().get("keys", []):
        if k.get("kid") == kid:
            return k
    return None


def verify_jwt(token: str) -> dict:
    """Verify a Supabase access token and return its claims.

    HS256 tokens are checked against the project's JWT secret; asymmetric
    tokens against the project's published JWKS.
    """
    try:
        header = jwt.get_unverified_header(token)
        alg = header.get("alg")

        if alg == "HS256":
            if not settings.supabase_jwt_secret:
                logger.error("HS256 token received but SUPABASE_JWT_SECRET is not set")
                raise _unauthorized("Invalid token: HS256 not configured")
            key = settings.supabase_jwt_secret
        elif alg in ASYMMETRIC_ALGS:
            key = _find_key(header.get("kid"))
            if key is None:
                raise _unauthorized(f"Invalid token: key not found for kid={header.get('kid')}")
        else:
            logger.warning(f"JWT unsupported algorithm: {alg}")
            raise _unauthorized(f"Invalid token: unsupported algorithm {alg}")

        return jwt.decode(
            token,
            key,
            algorithms=[alg],
            audience="authenticated",
            options={"verify_aud": True},
        )

    except JWTError as e:
        logger.warning(f"JWT verification failed: {e}")
        raise _unauthorized(f"Invalid token: {str(e)}")


def require_auth(
    credentials: HTTPAuthorizationCredentials = Depends(security)
) -> dict:
    """Require authentication - raises 401 if not authenticated."""
    if not credentials:
        logger.warning("Auth required but no Bearer token provided")
        raise _unauthorized("Not authenticated")
    return verify_jwt(credentials.credentials)


def require_superadmin(auth_payload: dict = Depends(require_auth)) -> dict:
    """Require superadmin access - raises 403 if not a superadmin."""
    app_metadata = auth_payload.get("app_metadata", {})
    if not app_metadata.get("is_superadmin"):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Superadmin access required",
        )
    return auth_payload

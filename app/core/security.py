import logging
from functools import lru_cache
import httpx
from jose import jwt, JWTError
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

from app.core.config import settings

logger = logging.getLogger(__name__)

# Bearer token extractor (auto_error=False allows optional auth)
security = HTTPBearer(auto_error=False)

ALLOWED_ALGORITHMS = ["RS256", "ES256", "EdDSA"]


@lru_cache(maxsize=1)
def get_jwks() -> dict:
    """Fetch Supabase JWKS for JWT verification (cached)."""
    jwks_url = f"{settings.supabase_url}/auth/v1/.well-known/jwks.json"
    response = httpx.get(jwks_url, timeout=10.0)
    response.raise_for_status()
    return response.json()


def _find_key(kid: str | None) -> dict | None:
    """Look up a signing key by kid, refreshing the JWKS cache once on a miss."""
    for refresh in (False, True):
        if refresh:
            logger.warning(f"JWT kid={kid} not found in cached JWKS, refreshing...")
            get_jwks.cache_clear()
        for key in get_jwks().get("keys", []):
            if key.get("kid") == kid:
                return key
    return None


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


def verify_jwt(token: str) -> dict:
    """Verify a Supabase access token and return its claims."""
    try:
        header = jwt.get_unverified_header(token)
        alg = header.get("alg")

        if alg not in ALLOWED_ALGORITHMS:
            logger.warning(f"JWT unsupported algorithm: {alg}")
            raise _unauthorized(f"Invalid token: unsupported algorithm {alg}")

        key = _find_key(header.get("kid"))
        if not key:
            logger.error(f"JWT kid={header.get('kid')} not found even after JWKS refresh")
            raise _unauthorized("Invalid token: signing key not found")

        return jwt.decode(
            token,
            key,
            algorithms=[alg],
            audience="authenticated",
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

"""
API Dependencies

FastAPI dependency injection for authentication and the billing services.

Security: JWT tokens are verified cryptographically, via the configured
JWKS endpoint (ES256/RS256) when there is one, with HS256 fallback via the
JWT secret. Never decode without verification.
"""

import logging
import secrets
from functools import lru_cache
from typing import Optional

import jwt
from jwt import PyJWKClient
from fastapi import Depends, Header, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

from app.config.settings import get_settings
from app.infrastructure.services.billing_services import BillingServices, build_billing_services


logger = logging.getLogger(__name__)

security = HTTPBearer(auto_error=False)

# Cached JWKS client; PyJWKClient caches keys internally.
_jwks_client: Optional[PyJWKClient] = None


def _get_jwks_client(jwks_url: str) -> PyJWKClient:
    """Return a singleton PyJWKClient for the JWKS endpoint."""
    global _jwks_client
    if _jwks_client is None:
        _jwks_client = PyJWKClient(jwks_url, cache_keys=True)
    return _jwks_client


def _decode_options(issuer: Optional[str]) -> dict:
    required = ["exp", "sub"]
    if issuer:
        required.append("iss")
    return {"require": required}


def _decode_with_jwks(token: str, jwks_url: str, audience: str, issuer: Optional[str]) -> dict:
    """Verify JWT against the JWKS endpoint (asymmetric keys)."""
    client = _get_jwks_client(jwks_url)
    signing_key = client.get_signing_key_from_jwt(token)
    return jwt.decode(
        token,
        signing_key.key,
        algorithms=["ES256", "RS256"],
        issuer=issuer,
        audience=audience,
        options=_decode_options(issuer),
    )


def _decode_with_secret(token: str, secret: str, audience: str, issuer: Optional[str]) -> dict:
    """Verify JWT using the HS256 symmetric secret."""
    return jwt.decode(
        token,
        secret,
        algorithms=["HS256"],
        issuer=issuer,
        audience=audience,
        options=_decode_options(issuer),
    )


async def get_current_user_id(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> str:
    """
    Extract and verify user ID from a bearer JWT.

    Verification strategy (in order):
      1. JWKS, when ``JWKS_URL`` is configured (supports key rotation).
      2. HS256 with ``JWT_SECRET``.

    Returns:
        Authenticated user ID (``sub`` claim).

    Raises:
        HTTPException 401: token missing, expired, or invalid.
    """
    if not credentials:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing authorization token",
            headers={"WWW-Authenticate": "Bearer"},
        )

    token = credentials.credentials
    settings = get_settings()

    payload: Optional[dict] = None

    if settings.jwks_url:
        try:
            payload = _decode_with_jwks(token, settings.jwks_url, settings.jwt_audience, settings.jwt_issuer)
        except (jwt.exceptions.PyJWKClientError, jwt.InvalidTokenError) as jwks_err:
            logger.debug("JWKS verification failed, trying HS256 fallback: %s", jwks_err)

    if payload is None and settings.jwt_secret:
        try:
            payload = _decode_with_secret(token, settings.jwt_secret, settings.jwt_audience, settings.jwt_issuer)
        except jwt.ExpiredSignatureError:
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Token has expired",
            )
        except jwt.InvalidTokenError as e:
            logger.warning("HS256 JWT verification failed: %s", e)

    if payload is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or unverifiable token",
        )

    user_id = payload.get("sub")
    if not user_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token: missing user ID",
        )

    return user_id


# =============================================================================
# Admin API Key Authentication
# =============================================================================

async def verify_admin_api_key(
    x_admin_key: str = Header(..., description="Admin API key for protected operations")
) -> bool:
    """
    Verify admin API key from header.

    The admin key should be set in environment variable ADMIN_API_KEY.
    """
    expected_key = get_settings().admin_api_key

    if not expected_key:
        logger.error("ADMIN_API_KEY environment variable not set")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Admin authentication not configured"
        )

    # Use secrets.compare_digest for timing-attack resistance
    if not secrets.compare_digest(x_admin_key, expected_key):
        logger.warning("Invalid admin API key attempt")
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Invalid admin API key"
        )

    return True


# =============================================================================
# Billing Services
# =============================================================================

@lru_cache()
def get_billing_services() -> BillingServices:
    """Process-wide billing services (overridden in tests)."""
    return build_billing_services(get_settings())

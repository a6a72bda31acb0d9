"""
Auth utilities for the Vanda API.

Validates Clerk session JWTs and extracts the caller identity.
Falls back to the X-User-Id header for backward compatibility (tests).

Every quota operation takes the identity explicitly; routes resolve it here
and pass None along when the caller is anonymous.
"""
import json
import logging
import time
from typing import Any, Callable, Dict, Optional

import httpx
import jwt
from fastapi import Header, Request

from vanda.core.config import settings
from vanda.core.errors import NotAuthenticatedError

logger = logging.getLogger(__name__)


# JWKS override (tests) and cache keyed by issuer/jwks_url
_jwks_provider_override: Optional[Callable[[str, str], Dict[str, Any]]] = None
_jwks_cache: Dict[str, Dict[str, Any]] = {}


def set_jwks_provider_for_tests(provider: Optional[Callable[[str, str], Dict[str, Any]]]) -> None:
    """Set or clear JWKS provider override for deterministic testing (no network)."""
    global _jwks_provider_override
    _jwks_provider_override = provider
    _jwks_cache.clear()


def _default_fetch_jwks(issuer: str, jwks_url: str) -> Dict[str, Any]:
    response = httpx.get(jwks_url, timeout=5)
    response.raise_for_status()
    return response.json()


def get_jwks(issuer: str, jwks_url: Optional[str] = None) -> Dict[str, Any]:
    """Fetch JWKS using override (tests) or default fetcher. Cached per issuer/url."""
    resolved_url = jwks_url or f"{issuer.rstrip('/')}/.well-known/jwks.json"
    cache_key = f"{issuer}|{resolved_url}"

    if cache_key in _jwks_cache:
        return _jwks_cache[cache_key]

    if _jwks_provider_override:
        jwks = _jwks_provider_override(issuer, resolved_url)
    else:
        jwks = _default_fetch_jwks(issuer, resolved_url)

    _jwks_cache[cache_key] = jwks
    return jwks


def verify_jwt_token(token: str) -> Dict[str, Any]:
    """
    Verify a Clerk JWT and return its claims.

    HS256 against CLERK_SECRET_KEY when set (development/testing), otherwise
    RS256 against the issuer's JWKS.

    Raises:
        jwt.PyJWTError: On any invalid token
    """
    secret = settings.CLERK_SECRET_KEY
    if secret:
        return jwt.decode(
            token,
            secret,
            algorithms=["HS256"],
            options={"verify_signature": True, "verify_exp": True, "verify_aud": False},
        )

    issuer = settings.CLERK_ISSUER
    jwks_url = settings.CLERK_JWKS_URL
    if not issuer and not jwks_url:
        raise jwt.PyJWTError("CLERK_ISSUER or CLERK_JWKS_URL must be configured for RS256 verification")

    jwks = get_jwks(issuer or "https://clerk.test", jwks_url)

    kid = jwt.get_unverified_header(token).get("kid")
    if not kid:
        raise jwt.PyJWTError("Token missing 'kid' in header")

    matching_key = next((key for key in jwks.get("keys", []) if key.get("kid") == kid), None)
    if not matching_key:
        raise jwt.PyJWTError(f"Key ID '{kid}' not found in JWKS")

    from jwt.algorithms import RSAAlgorithm
    public_key = RSAAlgorithm.from_jwk(json.dumps(matching_key))
    return jwt.decode(
        token,
        public_key,
        algorithms=["RS256"],
        audience=settings.CLERK_AUDIENCE,
        issuer=issuer,
        options={"verify_signature": True, "verify_exp": True, "verify_aud": bool(settings.CLERK_AUDIENCE)},
    )


def verify_clerk_jwt(token: str) -> str:
    """
    Verify a bearer token and extract user_id from its 'sub' claim.

    Raises:
        NotAuthenticatedError: Invalid, expired or subject-less token
    """
    try:
        claims = verify_jwt_token(token)
    except jwt.ExpiredSignatureError:
        raise NotAuthenticatedError("Token expired")
    except (jwt.PyJWTError, httpx.HTTPError) as e:
        logger.debug(f"Invalid token: {e}")
        raise NotAuthenticatedError("Invalid token")

    user_id = claims.get("sub")
    if not user_id:
        raise NotAuthenticatedError("Token has no subject")
    return user_id


async def get_optional_user_id(
    request: Request,
    x_user_id: Optional[str] = Header(None, description="Backward compat: test user ID"),
) -> Optional[str]:
    """
    Resolve the caller identity, or None when anonymous.

    Priority:
    1. Clerk JWT from Authorization header (invalid token -> 401)
    2. X-User-Id header (backward compatibility)
    3. None
    """
    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        return verify_clerk_jwt(auth_header[7:])

    if x_user_id:
        return x_user_id

    return None


def require_user_id(user_id: Optional[str]) -> str:
    if not user_id:
        raise NotAuthenticatedError("Missing Authorization (Bearer JWT) or X-User-Id header")
    return user_id


def create_test_jwt(
    sub: str = "test_user_123",
    exp_minutes: int = 60,
    secret: str = "test-secret-key-for-vanda-quota-tests",
) -> str:
    """Create an HS256 test JWT (no network)."""
    now = int(time.time())
    payload = {
        "sub": sub,
        "iat": now,
        "exp": now + (exp_minutes * 60),
        "iss": settings.CLERK_ISSUER or "https://test.clerk.accounts.dev",
    }
    return jwt.encode(payload, secret, algorithm="HS256")

"""
Admin authorization for plan changes made outside the billing provider.

Shared-secret X-Admin-Key header compared against ADMIN_KEY.
"""
import hashlib
import hmac
import logging
from typing import Optional

from fastapi import Request

from vanda.core.config import settings
from vanda.core.errors import ForbiddenError

logger = logging.getLogger("vanda")


def get_admin_api_key() -> Optional[str]:
    return settings.ADMIN_KEY


def require_admin_key(request: Request) -> str:
    """
    FastAPI dependency: verify X-Admin-Key.

    Returns:
        Short, non-reversible actor id for audit logs

    Raises:
        ForbiddenError: Admin key not configured, missing, or wrong
    """
    expected_key = get_admin_api_key()
    if not expected_key:
        raise ForbiddenError("Admin access is not configured")

    header_key = request.headers.get("X-Admin-Key", "").strip()
    if not header_key or not hmac.compare_digest(header_key, expected_key):
        logger.warning("admin.denied", extra={"path": request.url.path})
        raise ForbiddenError("Invalid admin key")

    return f"admin:{hashlib.sha256(header_key.encode()).hexdigest()[:16]}"

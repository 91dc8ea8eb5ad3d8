from fastapi import Request, HTTPException, status
from typing import Optional
import logging
from auth import decode_access_token, ADMIN_ROLE

logger = logging.getLogger(__name__)


def get_token_payload(request: Request) -> Optional[dict]:
    """Extract and validate the JWT payload from the Authorization header."""
    auth_header = request.headers.get("Authorization")
    if not auth_header or not auth_header.startswith("Bearer "):
        return None
    return decode_access_token(auth_header.split(" ", 1)[1])


async def require_account(request: Request) -> str:
    """Require an authenticated account; returns its account id."""
    payload = get_token_payload(request)
    if not payload or not payload.get("sub"):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated"
        )
    return payload["sub"]


async def require_admin(request: Request) -> dict:
    """Require an operator token (role=admin)."""
    payload = get_token_payload(request)
    if not payload:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated"
        )
    if payload.get("role") != ADMIN_ROLE:
        logger.warning("Admin route denied for sub=%s path=%s", payload.get("sub"), request.url.path)
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Insufficient permissions"
        )
    return payload

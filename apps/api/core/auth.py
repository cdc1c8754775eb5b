"""
Authentication dependencies.

Provides FastAPI dependencies for:
- Getting the current authenticated user id
- Reading the optional sync request headers (device, idempotency key)

Users are owned by the auth service; the sync core trusts the token's
subject completely and performs no further authorization.
"""
from fastapi import Depends, Header, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from typing import Optional

from core.security import get_user_id_from_token

# Use auto_error=False to handle missing credentials manually and return 401 (not 403)
security = HTTPBearer(auto_error=False)

MAX_HEADER_VALUE_LENGTH = 255


def get_current_user_id(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> str:
    """
    Get the current authenticated user id from the JWT token.

    Raises HTTPException if token is missing, invalid, or has no subject.
    """
    # Check if credentials are missing (return 401, not 403)
    if not credentials:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )

    user_id = get_user_id_from_token(credentials.credentials)
    if not user_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid authentication credentials",
            headers={"WWW-Authenticate": "Bearer"},
        )

    return str(user_id)


def get_device_id(
    x_device_id: Optional[str] = Header(default=None, alias="X-Device-ID"),
) -> Optional[str]:
    """Originating device, attribution and logging only."""
    if not x_device_id:
        return None
    return x_device_id.strip()[:MAX_HEADER_VALUE_LENGTH] or None


def get_idempotency_key(
    idempotency_key: Optional[str] = Header(default=None, alias="Idempotency-Key"),
) -> Optional[str]:
    """Client-supplied idempotency key for the legacy push path."""
    if idempotency_key is None:
        return None
    key = idempotency_key.strip()
    if not key:
        return None
    if len(key) > MAX_HEADER_VALUE_LENGTH:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Idempotency-Key must be at most {MAX_HEADER_VALUE_LENGTH} characters",
        )
    return key

"""
Custom exception classes and error handling.

Provides consistent error responses across the API.
"""
from fastapi import HTTPException, status
from typing import Optional, Dict, Any


class APIException(HTTPException):
    """Base API exception with consistent structure."""

    def __init__(
        self,
        status_code: int,
        detail: str,
        error_code: Optional[str] = None,
        headers: Optional[Dict[str, Any]] = None
    ):
        super().__init__(status_code=status_code, detail=detail, headers=headers)
        self.error_code = error_code


class ConflictError(APIException):
    """Resource conflict (e.g., duplicate entry)."""

    def __init__(self, detail: str, error_code: str = "CONFLICT"):
        super().__init__(
            status_code=status.HTTP_409_CONFLICT,
            detail=detail,
            error_code=error_code
        )


class IdempotencyConflictError(APIException):
    """
    An idempotency key was reused for a different request body.

    This is a client programming error, not a transient condition:
    retrying with the same key and body will keep failing.
    """

    def __init__(self, key: str):
        super().__init__(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=f"Idempotency key '{key}' was already used with a different request body",
            error_code="IDEMPOTENCY_KEY_REUSED"
        )
        self.key = key


class IdempotencyInProgressError(ConflictError):
    """Another request holding the same idempotency key is still running."""

    def __init__(self, key: str):
        super().__init__(
            detail=f"A request with idempotency key '{key}' is already in progress",
            error_code="IDEMPOTENCY_IN_PROGRESS"
        )
        self.key = key

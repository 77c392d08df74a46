"""
auth/errors.py -- Error taxonomy for the authentication core.

Each class carries the HTTP status and stable error code the API layer uses
to build the {"error": {...}} envelope, so route handlers do not need an
except-clause per failure kind.

  ValidationConflict    -- duplicate email within a tenant. Not retryable.
  Unauthorized          -- bad password, inactive account, invalid/expired/
                           revoked token. Message is generic on purpose:
                           callers must not learn which factor failed.
  NotFound              -- unknown or inactive refresh token on logout.
  TransientStoreFailure -- database unreachable. Retryable with backoff.
"""

from __future__ import annotations

from typing import Optional


class AuthError(Exception):
    status_code: int = 400
    error_code: str = "bad_request"

    def __init__(self, message: str, *, detail: Optional[dict] = None) -> None:
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class ValidationConflict(AuthError):
    status_code = 409
    error_code = "conflict"


class Unauthorized(AuthError):
    status_code = 401
    error_code = "unauthorized"

    def __init__(self, message: str = "Invalid credentials.", *, detail: Optional[dict] = None) -> None:
        super().__init__(message, detail=detail)


class NotFound(AuthError):
    status_code = 404
    error_code = "not_found"


class TransientStoreFailure(AuthError):
    status_code = 503
    error_code = "store_unavailable"
    retryable = True


__all__ = [
    "AuthError",
    "NotFound",
    "TransientStoreFailure",
    "Unauthorized",
    "ValidationConflict",
]

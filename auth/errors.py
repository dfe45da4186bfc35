"""
auth/errors.py -- Exception taxonomy for the auth core.

Every error carries a stable machine-readable `code` and a client-safe
`message`. api/main.py maps the classes below to HTTP status codes and the
ErrorResponse envelope; nothing in auth/ knows about HTTP.

Hierarchy:

  AuthCoreError
  ├── ValidationError            malformed caller input
  ├── AuthError                  business-rule rejections
  │   ├── InvalidCredentials
  │   ├── AccountLocked
  │   ├── AccountInactive
  │   └── DuplicateEmail
  ├── TokenError                 credential could not be accepted
  │   ├── MalformedToken
  │   ├── BadSignature
  │   ├── InvalidPayload
  │   ├── Expired                (access token)
  │   ├── TokenNotFound          (refresh token)
  │   ├── TokenExpired           (refresh token)
  │   └── UserInactive
  ├── RateLimited                advisory throttle, client may retry later
  ├── TransactionStateError      programming-contract violation
  │   └── UnbalancedTransaction
  └── StorageError               data-store failure, detail is never sent out
"""

from __future__ import annotations


class AuthCoreError(Exception):
    """Base class for every error raised by the auth core."""

    code = "auth_error"
    message = "Authentication failed."

    def __init__(self, message: str | None = None) -> None:
        if message is not None:
            self.message = message
        super().__init__(self.message)


class ValidationError(AuthCoreError):
    code = "validation_error"
    message = "Request validation failed."


# ---------------------------------------------------------------------------
# Business-rule rejections
# ---------------------------------------------------------------------------


class AuthError(AuthCoreError):
    pass


class InvalidCredentials(AuthError):
    # Same text for "no such user" and "wrong password" -- no account enumeration.
    code = "invalid_credentials"
    message = "Invalid email or password."


class AccountLocked(AuthError):
    code = "account_locked"
    message = "Account is locked. Please try again later."


class AccountInactive(AuthError):
    code = "account_inactive"
    message = "Account is deactivated."


class DuplicateEmail(AuthError):
    code = "duplicate_email"
    message = "Email already registered."


# ---------------------------------------------------------------------------
# Token failures
# ---------------------------------------------------------------------------


class TokenError(AuthCoreError):
    code = "invalid_token"
    message = "Invalid or expired token."


class MalformedToken(TokenError):
    code = "malformed_token"
    message = "Invalid token format."


class BadSignature(TokenError):
    code = "bad_signature"
    message = "Invalid token signature."


class InvalidPayload(TokenError):
    code = "invalid_payload"
    message = "Invalid token payload."


class Expired(TokenError):
    code = "token_expired"
    message = "Token expired."


class TokenNotFound(TokenError):
    code = "refresh_token_not_found"
    message = "Invalid or expired refresh token."


class TokenExpired(TokenError):
    code = "refresh_token_expired"
    message = "Invalid or expired refresh token."


class UserInactive(TokenError):
    code = "user_inactive"
    message = "User not found or inactive."


# ---------------------------------------------------------------------------
# Throttling
# ---------------------------------------------------------------------------


class RateLimited(AuthCoreError):
    code = "rate_limited"
    message = "Too many login attempts. Please try again later."

    def __init__(self, retry_after: int, message: str | None = None) -> None:
        self.retry_after = retry_after
        super().__init__(message)


# ---------------------------------------------------------------------------
# Internal failures
# ---------------------------------------------------------------------------


class TransactionStateError(AuthCoreError):
    code = "internal_error"
    message = "An unexpected error occurred."


class UnbalancedTransaction(TransactionStateError):
    pass


class StorageError(AuthCoreError):
    """Wraps a data-store failure.

    `message` stays generic; the original driver exception is chained as
    __cause__ so it shows up in logs but never in a response body.
    """

    code = "internal_error"
    message = "An unexpected error occurred."

"""
errors.py: AppError base class and error code registry.

Every failure the settlement engine surfaces to a caller uses a code defined
here. Do not raise strings or generic exceptions from service or route code.

Rules:
  - Error codes are a versioned contract. They do not change once published.
  - Error messages are human-readable prose. They may be improved at any time.
  - Failures that involve a specific party carry it in `field` / `details`
    so the UI can direct remediation (e.g. which member is short on funds).
"""

from __future__ import annotations


class AppError(Exception):

    def __init__(
            self,
            code: str,
            message: str,
            http_status: int,
            field: str | None = None,
            details: dict | None = None,
    ) -> None:
        super().__init__(message)
        self.code        = code
        self.message     = message
        self.http_status = http_status
        self.field       = field    # which input field caused the error
        self.details     = details  # structured context, e.g. {"user_id": 7}

    def to_dict(self) -> dict:
        payload = {
            "code":    self.code,
            "message": self.message,
        }
        if self.field is not None:
            payload["field"] = self.field
        if self.details:
            payload["details"] = self.details
        return {"error": payload}

    def __repr__(self) -> str:
        return (
            f"AppError(code={self.code!r}, "
            f"http_status={self.http_status}, "
            f"message={self.message!r})"
        )


class InvalidInputError(AppError):
    """Split calculator input validation failure (always HTTP 400)."""

    def __init__(self, code: str, message: str, field: str | None = None) -> None:
        super().__init__(code, message, 400, field=field)

    @property
    def kind(self) -> str:
        return self.code


class TransactionConflict(Exception):
    """
    Transient contention inside a unit of work (serialization failure,
    deadlock, lock timeout, optimistic-lock mismatch).

    Never reaches a route: the retry policy either retries it or converts it
    into AppError(PROCESSING_ERROR).
    """


class LedgerEntryImmutableError(Exception):
    """Raised when code attempts to modify a completed or failed ledger entry."""


# ── Error Code Registry ────────────────────────────────────────────────────
#
# Organised by category. HTTP status is indicated in the comment.
#
# IMPORTANT: these are the string values sent in the API response.
# Do not rename them without a major version bump.
# ──────────────────────────────────────────────────────────────────────────

class ErrorCode:

    # ── Schema / Input Errors (400) ────────────────────────────────────────
    MISSING_FIELD              = "MISSING_FIELD"
    INVALID_FIELD              = "INVALID_FIELD"
    INVALID_AMOUNT_PRECISION   = "INVALID_AMOUNT_PRECISION"
    DUPLICATE_SPLIT_USER       = "DUPLICATE_SPLIT_USER"

    # Split calculator inputs
    INVALID_ITEMS              = "INVALID_ITEMS"
    INVALID_TAX                = "INVALID_TAX"
    INVALID_DISCOUNT           = "INVALID_DISCOUNT"
    INVALID_TOTAL              = "INVALID_TOTAL"

    # ── Not Found Errors (404) ─────────────────────────────────────────────
    USER_NOT_FOUND             = "USER_NOT_FOUND"
    WALLET_NOT_FOUND           = "WALLET_NOT_FOUND"
    GROUP_NOT_FOUND            = "GROUP_NOT_FOUND"
    ORDER_NOT_FOUND            = "ORDER_NOT_FOUND"
    ITEM_NOT_FOUND             = "ITEM_NOT_FOUND"

    # ── State Conflicts (409) ──────────────────────────────────────────────
    ORDER_COMPLETED            = "ORDER_COMPLETED"
    ORDER_CANCELLED            = "ORDER_CANCELLED"
    INVALID_GROUP_STATUS       = "INVALID_GROUP_STATUS"
    INVALID_ORDER_STATUS       = "INVALID_ORDER_STATUS"

    # ── Business Rule Violations (422) ────────────────────────────────────
    SPLITS_NOT_APPROVED        = "SPLITS_NOT_APPROVED"
    INSUFFICIENT_BALANCE       = "INSUFFICIENT_BALANCE"
    ALREADY_NO_SHOW            = "ALREADY_NO_SHOW"
    ITEM_ALREADY_RECEIVED      = "ITEM_ALREADY_RECEIVED"
    SELF_PENALTY               = "SELF_PENALTY"
    SPLIT_USER_NOT_MEMBER      = "SPLIT_USER_NOT_MEMBER"
    SELF_TRANSFER              = "SELF_TRANSFER"
    INVALID_AMOUNT             = "INVALID_AMOUNT"
    DAILY_LIMIT_EXCEEDED       = "DAILY_LIMIT_EXCEEDED"

    # ── Auth Errors ────────────────────────────────────────────────────────
    # 401 = we do not know who you are (unauthenticated)
    # 403 = we know who you are, but you are not allowed (e.g. not the leader)
    TOKEN_MISSING              = "TOKEN_MISSING"          # 401
    TOKEN_INVALID              = "TOKEN_INVALID"          # 401
    TOKEN_EXPIRED              = "TOKEN_EXPIRED"          # 401
    FORBIDDEN                  = "FORBIDDEN"              # 403

    # ── System Errors ──────────────────────────────────────────────────────
    PROCESSING_ERROR           = "PROCESSING_ERROR"       # 503, retries exhausted
    INTERNAL_ERROR             = "INTERNAL_ERROR"         # 500

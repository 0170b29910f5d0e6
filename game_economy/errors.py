"""
Economy Error Taxonomy

Every failure surfaced to a caller carries a stable machine-readable code,
a human-readable message and the HTTP status the API layer should use.
"""

from typing import Any, Dict, Optional


class EconomyError(Exception):
    """Base class for all economy errors"""

    code = "ECONOMY_ERROR"
    status_code = 400

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        """Error envelope returned to callers"""
        payload = {
            "success": False,
            "error": self.message,
            "code": self.code,
        }
        payload.update(self.details)
        return payload


# Validation errors: bad input, rejected before touching the store

class ValidationError(EconomyError):
    code = "VALIDATION_ERROR"
    status_code = 400


class InvalidAmount(ValidationError):
    code = "INVALID_AMOUNT"


class InvalidCurrency(ValidationError):
    code = "INVALID_CURRENCY"


class SameAccount(ValidationError):
    code = "SAME_ACCOUNT"


class RateLimitExceeded(ValidationError):
    code = "RATE_LIMIT_EXCEEDED"
    status_code = 429

    def __init__(self, message: str, retry_after_seconds: int):
        super().__init__(message, {"retry_after_seconds": retry_after_seconds})
        self.retry_after_seconds = retry_after_seconds


# State errors: rejected after a consistency check, nothing applied

class StateError(EconomyError):
    code = "STATE_ERROR"
    status_code = 409


class InsufficientFunds(StateError):
    code = "INSUFFICIENT_FUNDS"


class AccountFrozen(StateError):
    code = "ACCOUNT_FROZEN"
    status_code = 403


class UnknownAccount(StateError):
    code = "UNKNOWN_ACCOUNT"
    status_code = 404


# Concurrency and infrastructure errors

class ConcurrencyError(EconomyError):
    code = "CONCURRENCY_ERROR"
    status_code = 503


class TransientStoreError(ConcurrencyError):
    """The store stayed busy after the bounded number of retries"""
    code = "STORE_BUSY"
    status_code = 503


class InfrastructureError(EconomyError):
    code = "INFRASTRUCTURE_ERROR"
    status_code = 503


class StoreUnavailable(InfrastructureError):
    code = "STORE_UNAVAILABLE"


class MigrationFailed(EconomyError):
    """A backfill batch halted; counts reflect what was already committed"""
    code = "MIGRATION_FAILED"
    status_code = 500

    def __init__(self, message: str, matched: int, modified: int):
        super().__init__(message, {"matched": matched, "modified": modified})
        self.matched = matched
        self.modified = modified


# Caller identity errors raised by the API layer

class Unauthorized(EconomyError):
    code = "UNAUTHORIZED"
    status_code = 401


class Forbidden(EconomyError):
    code = "FORBIDDEN"
    status_code = 403

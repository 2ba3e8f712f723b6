"""
Ledger error taxonomy

Every failure the core can surface to a caller is one of these. Each carries an
``error_type`` string so service entry points can return it in their
``{'success': False, 'error': ..., 'error_type': ...}`` result dicts.
"""

from decimal import Decimal
from typing import List, Optional


class LedgerError(Exception):
    """Base class for all ledger and transaction lifecycle errors"""

    error_type = "ledger_error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict:
        return {
            'success': False,
            'error': self.message,
            'error_type': self.error_type,
        }


class InsufficientFunds(LedgerError):
    """Available balance does not cover the requested debit"""

    error_type = "insufficient_funds"

    def __init__(self, available: Decimal, required: Decimal, message: Optional[str] = None):
        self.available = available
        self.required = required
        super().__init__(message or f"Insufficient funds: available {available}, required {required}")

    def to_dict(self) -> dict:
        result = super().to_dict()
        result['available'] = str(self.available)
        result['required'] = str(self.required)
        return result


class InvalidAmount(LedgerError):
    """Non-positive or non-finite amount"""

    error_type = "invalid_amount"


class ValidationFailed(LedgerError):
    """One or more field validations failed"""

    error_type = "validation_failed"

    def __init__(self, errors, message: Optional[str] = None):
        if isinstance(errors, str):
            errors = [errors]
        self.errors: List[str] = list(errors)
        super().__init__(message or "; ".join(self.errors))

    def to_dict(self) -> dict:
        result = super().to_dict()
        result['errors'] = self.errors
        return result


class NotFound(LedgerError):
    error_type = "not_found"


class Conflict(LedgerError):
    """The entity was changed by another actor since it was read"""

    error_type = "conflict"


class ProviderUnavailable(LedgerError):
    """External payout provider unreachable or erroring"""

    error_type = "provider_unavailable"


class RestrictedAccount(LedgerError):
    """Balance mutation attempted on an administrative account"""

    error_type = "restricted_account"

    def __init__(self, message: str = "Admin account balance mutation is restricted"):
        super().__init__(message)


class Forbidden(LedgerError):
    error_type = "forbidden"

    def __init__(self, message: str = "Not authorized to act on this account"):
        super().__init__(message)


class RateLimited(LedgerError):
    error_type = "rate_limited"

    def __init__(self, retry_after: float, message: Optional[str] = None):
        self.retry_after = retry_after
        super().__init__(message or f"Too many requests, retry in {int(retry_after) + 1}s")

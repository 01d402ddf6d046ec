"""Exception hierarchy for nanocharge.

All processor errors inherit from ChargeProcessorError, so callers can catch
one base class and still branch on the specific failure:

- ChargeNotFoundError: unknown charge id passed to a lookup or mutation
- ChargeStateError: operation not allowed in the charge's current status
- LedgerError: RPC/transport failure reported by the ledger client
- InsufficientBalanceError: send amount exceeds the sub-account balance

Usage:
    from nanocharge.exceptions import ChargeNotFoundError, InsufficientBalanceError

    try:
        await processor.sweep_charge(charge_id)
    except InsufficientBalanceError:
        ...  # wait for funds to settle instead of retrying blindly

All exceptions have:
- error_code: Machine-readable error code (e.g., "CHARGE_NOT_FOUND")
- message: Human-readable error message
- details: Optional additional context dictionary
- to_dict(): Convert to a serializable error payload
"""
from __future__ import annotations

from typing import Any, Optional


class ChargeProcessorError(Exception):
    """Base exception for all nanocharge errors.

    Attributes:
        message: Human-readable error message
        error_code: Machine-readable error code
        details: Optional additional context
    """

    error_code: str = "CHARGE_PROCESSOR_ERROR"

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if error_code:
            self.error_code = error_code
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        """Convert exception to an error payload."""
        result = {
            "error": self.error_code,
            "message": self.message,
        }
        if self.details:
            result["details"] = self.details
        return result


# =============================================================================
# Charge Errors
# =============================================================================

class ChargeValidationError(ChargeProcessorError):
    """Invalid input when creating or updating a charge."""

    error_code = "VALIDATION_ERROR"

    def __init__(
        self,
        message: str,
        field: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        details = details or {}
        if field:
            details["field"] = field
        super().__init__(message, details=details)


class ChargeNotFoundError(ChargeProcessorError):
    """Requested charge does not exist."""

    error_code = "CHARGE_NOT_FOUND"

    def __init__(
        self,
        charge_id: str,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        details = details or {}
        details["charge_id"] = charge_id
        super().__init__(f"Charge '{charge_id}' not found", details=details)
        self.charge_id = charge_id


class ChargeStateError(ChargeProcessorError):
    """Operation is not permitted for the charge's current status."""

    error_code = "INVALID_CHARGE_STATE"

    def __init__(
        self,
        message: str,
        charge_id: Optional[str] = None,
        status: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        details = details or {}
        if charge_id:
            details["charge_id"] = charge_id
        if status:
            details["status"] = status
        super().__init__(message, details=details)


class ChargeConflictError(ChargeProcessorError):
    """Charge id or address is already registered."""

    error_code = "CONFLICT"


# =============================================================================
# Ledger Errors
# =============================================================================

class LedgerError(ChargeProcessorError):
    """Ledger RPC or transport failure."""

    error_code = "LEDGER_ERROR"

    def __init__(
        self,
        message: str,
        action: Optional[str] = None,
        account_index: Optional[int] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        details = details or {}
        if action:
            details["action"] = action
        if account_index is not None:
            details["account_index"] = account_index
        super().__init__(message, details=details)


class AccountNotOpenedError(LedgerError):
    """Sub-account has never received funds, so it cannot send."""

    error_code = "ACCOUNT_NOT_OPENED"


class InsufficientBalanceError(LedgerError):
    """Send amount exceeds the sub-account's settled balance."""

    error_code = "INSUFFICIENT_BALANCE"

    def __init__(
        self,
        message: str,
        available: Optional[int] = None,
        required: Optional[int] = None,
        account_index: Optional[int] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        details = details or {}
        if available is not None:
            details["available"] = str(available)
        if required is not None:
            details["required"] = str(required)
        super().__init__(message, action="send", account_index=account_index, details=details)


# =============================================================================
# Persistence Errors
# =============================================================================

class SnapshotError(ChargeProcessorError):
    """Persisted snapshot could not be read or parsed."""

    error_code = "SNAPSHOT_ERROR"

    def __init__(
        self,
        message: str,
        path: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        details = details or {}
        if path:
            details["path"] = path
        super().__init__(message, details=details)

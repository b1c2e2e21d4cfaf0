"""
Custom exception classes for the mining engine.
Provides structured error handling across all modules.
"""

from decimal import Decimal
from typing import Any, Optional, Dict


class MiningEngineException(Exception):
    """Base exception class for the mining engine."""

    retryable: bool = False

    def __init__(
        self,
        message: str,
        code: str = "UNKNOWN_ERROR",
        details: Optional[Dict[str, Any]] = None
    ):
        self.message = message
        self.code = code
        self.details = details or {}
        super().__init__(self.message)


class ConfigurationError(MiningEngineException):
    """Raised when there's a configuration error."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, "CONFIGURATION_ERROR", details)


class PersistenceError(MiningEngineException):
    """Raised when the underlying storage fails. The transaction has been rolled back."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, "PERSISTENCE_ERROR", details)


class SchedulerError(MiningEngineException):
    """Raised when there's a scheduler error."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, "SCHEDULER_ERROR", details)


class ValidationError(MiningEngineException):
    """Raised when input validation fails, before any storage access."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, "VALIDATION_ERROR", details)


class NotFoundError(MiningEngineException):
    """Raised when a requested resource is not found."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, "NOT_FOUND", details)


class ConcurrencyConflictError(MiningEngineException):
    """
    Raised when a per-owner serialization point could not be taken in time,
    or when another writer advanced the same slot first.

    Safe to retry.
    """

    retryable = True

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, "CONCURRENCY_CONFLICT", details)


class OwnerNotFoundError(NotFoundError):
    """Raised when an owner is not found."""

    def __init__(self, owner_id: int):
        super().__init__(
            f"Owner not found: {owner_id}",
            {"owner_id": owner_id}
        )


class SlotNotFoundError(NotFoundError):
    """Raised when a slot is unknown or no longer active."""

    def __init__(self, slot_id: str, owner_id: Optional[int] = None):
        details: Dict[str, Any] = {"slot_id": slot_id}
        if owner_id is not None:
            details["owner_id"] = owner_id
        super().__init__(f"Active slot not found: {slot_id}", details)


class WalletNotFoundError(NotFoundError):
    """Raised when an owner has no wallet for the currency."""

    def __init__(self, owner_id: int, currency: str):
        super().__init__(
            f"Wallet not found: owner {owner_id}, currency {currency}",
            {"owner_id": owner_id, "currency": currency}
        )


class InsufficientBalanceError(MiningEngineException):
    """Raised when a wallet cannot cover a debit."""

    def __init__(self, required: Decimal, available: Optional[Decimal] = None):
        details: Dict[str, Any] = {"required": str(required)}
        if available is not None:
            details["available"] = str(available)
        super().__init__(
            f"Insufficient balance: required {required}, available {available}",
            "INSUFFICIENT_BALANCE",
            details
        )

"""
Error handling for wallet, betting and settlement operations.

This module defines the error taxonomy surfaced to callers and the retry
policy applied to store-level failures. Validation and business-rule errors
are never retried; transient store errors are retried with exponential
backoff because a failed unit of work commits nothing.
"""

import asyncio
import functools
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional

from sqlalchemy.exc import DBAPIError, IntegrityError, OperationalError, SQLAlchemyError

from infra.settings import settings


logger = logging.getLogger(__name__)


class ErrorSeverity(Enum):
    """Error severity levels"""
    LOW = "low"          # Transient, retryable
    MEDIUM = "medium"    # Rejected input or business rule
    HIGH = "high"        # Retries exhausted, operator attention


class ErrorCategory(Enum):
    """Categories of errors raised by the core"""
    VALIDATION = "validation"          # Bad colour, number or amount
    BUSINESS_RULE = "business_rule"    # Wallet state, balance, round rules
    TRANSIENT = "transient"            # Store unavailable, conflicts


@dataclass
class ErrorContext:
    """Additional context for error handling and debugging"""
    user_id: Optional[str] = None
    wallet_id: Optional[str] = None
    round_id: Optional[int] = None
    amount: Optional[int] = None
    metadata: Optional[Dict[str, Any]] = None


class BettingError(Exception):
    """Base exception for all errors surfaced by the core"""

    def __init__(
        self,
        message: str,
        category: ErrorCategory,
        severity: ErrorSeverity,
        retryable: bool = False,
        context: Optional[ErrorContext] = None,
        original_error: Optional[Exception] = None
    ):
        super().__init__(message)
        self.message = message
        self.category = category
        self.severity = severity
        self.retryable = retryable
        self.context = context or ErrorContext()
        self.original_error = original_error
        self.timestamp = time.time()

    def to_dict(self) -> Dict[str, Any]:
        """Convert error to dictionary for logging"""
        return {
            "error": type(self).__name__,
            "message": self.message,
            "category": self.category.value,
            "severity": self.severity.value,
            "retryable": self.retryable,
            "timestamp": self.timestamp,
            "context": {
                "user_id": self.context.user_id,
                "wallet_id": self.context.wallet_id,
                "round_id": self.context.round_id,
                "amount": self.context.amount,
                "metadata": self.context.metadata,
            },
            "original_error": str(self.original_error) if self.original_error else None
        }


class ValidationError(BettingError):
    """Malformed input, rejected before touching the store"""

    def __init__(self, message: str, context: Optional[ErrorContext] = None):
        super().__init__(
            message=message,
            category=ErrorCategory.VALIDATION,
            severity=ErrorSeverity.MEDIUM,
            context=context,
        )


class BusinessRuleError(BettingError):
    """A business rule rejected the operation; nothing was changed"""

    default_message = "Operation rejected"

    def __init__(self, message: Optional[str] = None, context: Optional[ErrorContext] = None):
        super().__init__(
            message=message or self.default_message,
            category=ErrorCategory.BUSINESS_RULE,
            severity=ErrorSeverity.MEDIUM,
            context=context,
        )


class WalletNotFound(BusinessRuleError):
    default_message = "Wallet not found."


class WalletBlocked(BusinessRuleError):
    default_message = "Wallet is blocked."


class InsufficientBalance(BusinessRuleError):
    default_message = "Insufficient balance."


class DuplicateBetInRound(BusinessRuleError):
    default_message = "You have already placed a bet in this round."


class BettingClosed(BusinessRuleError):
    default_message = "Betting is closed for this round. Wait for the next round."


class RoundStillOpen(BusinessRuleError):
    default_message = "Round is still open for betting. Settle it once betting has closed."


class NoOutcomeBetsEmpty(BusinessRuleError):
    default_message = "No bets to select an outcome from."


class BankAccountMissing(BusinessRuleError):
    default_message = "No active bank account found. Please add a bank account first."


class TransientStoreError(BettingError):
    """Store unavailable or unit of work aborted by a conflict"""

    def __init__(self, message: str, context: Optional[ErrorContext] = None, original_error: Optional[Exception] = None):
        super().__init__(
            message=message,
            category=ErrorCategory.TRANSIENT,
            severity=ErrorSeverity.LOW,
            retryable=True,
            context=context,
            original_error=original_error
        )


class RoundOutcomeConflict(TransientStoreError):
    """Another settlement pass persisted the round outcome first"""

    def __init__(self, round_id: int, original_error: Optional[Exception] = None):
        super().__init__(
            f"Outcome for round {round_id} was recorded concurrently",
            context=ErrorContext(round_id=round_id),
            original_error=original_error,
        )


class ErrorHandler:
    """Centralized error classification and retry policy"""

    @staticmethod
    def classify_store_error(error: SQLAlchemyError, context: Optional[ErrorContext] = None) -> BettingError:
        """
        Map a SQLAlchemy exception onto the error taxonomy.

        Connection problems, lock timeouts, deadlocks and serialization
        failures are transient. Anything else is reported as a
        non-retryable store failure.
        """
        if isinstance(error, OperationalError):
            return TransientStoreError(
                f"Store unavailable: {error.orig or error}",
                context=context,
                original_error=error
            )

        if isinstance(error, DBAPIError) and error.connection_invalidated:
            return TransientStoreError(
                f"Store connection lost: {error.orig or error}",
                context=context,
                original_error=error
            )

        error_msg = str(error).lower()
        if any(keyword in error_msg for keyword in [
            "deadlock", "could not serialize", "lock timeout", "database is locked"
        ]):
            return TransientStoreError(
                f"Store conflict: {error}",
                context=context,
                original_error=error
            )

        if isinstance(error, IntegrityError):
            return BettingError(
                f"Store constraint violated: {error.orig or error}",
                category=ErrorCategory.BUSINESS_RULE,
                severity=ErrorSeverity.HIGH,
                context=context,
                original_error=error
            )

        return BettingError(
            f"Store failure: {error}",
            category=ErrorCategory.TRANSIENT,
            severity=ErrorSeverity.HIGH,
            retryable=False,
            context=context,
            original_error=error
        )

    @staticmethod
    def should_retry(error: BettingError, attempt: int, max_attempts: int = 3) -> bool:
        """Determine if an error should be retried"""
        if attempt >= max_attempts:
            return False

        if not error.retryable:
            return False

        if error.category != ErrorCategory.TRANSIENT:
            return False

        return True

    @staticmethod
    def get_retry_delay(attempt: int, base_delay: float = 0.05) -> float:
        """Calculate exponential backoff delay for retry"""
        return min(base_delay * (2 ** attempt), 5.0)


def with_retry(max_retries: Optional[int] = None, base_delay: Optional[float] = None):
    """
    Decorator running a service method as a retryable unit of work.

    The decorated coroutine must belong to an object exposing the session
    as ``self.db``. Every failed attempt is rolled back before the next one,
    so a retry never observes the partial writes of the previous attempt.

    Usage:
    @with_retry()
    async def place_bet(self, ...):
        ...
    """
    def decorator(func):
        @functools.wraps(func)
        async def wrapper(self, *args, **kwargs):
            retries = settings.max_retries if max_retries is None else max_retries
            delay_base = settings.retry_base_delay if base_delay is None else base_delay
            attempt = 0

            while True:
                try:
                    return await func(self, *args, **kwargs)

                except BettingError as e:
                    await self.db.rollback()
                    if not ErrorHandler.should_retry(e, attempt, retries):
                        raise
                    error = e

                except SQLAlchemyError as e:
                    await self.db.rollback()
                    error = ErrorHandler.classify_store_error(e)
                    if not ErrorHandler.should_retry(error, attempt, retries):
                        if error.retryable:
                            raise TransientStoreError(
                                f"{func.__name__} failed after {attempt + 1} attempts: {error.message}",
                                original_error=e
                            ) from e
                        raise error from e

                logger.warning(f"{func.__name__} failed (attempt {attempt + 1}): {error.to_dict()}")
                delay = ErrorHandler.get_retry_delay(attempt, delay_base)
                logger.info(f"Retrying {func.__name__} in {delay:.2f}s...")
                await asyncio.sleep(delay)
                attempt += 1

        return wrapper
    return decorator

"""
Error Classification

Defines the error types raised across the coordinator.
Errors are classified as recoverable (the affected scope is skipped and
retried next cycle) or unrecoverable (the pipeline for the pair aborts, or
the request is recorded as not submitted).
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional


class ErrorCategory(str, Enum):
    """Categories of errors for skip/abort decisions."""

    CONFIGURATION = "configuration"   # Malformed key material, missing options
    NETWORK = "network"               # RPC unreachable, bad responses
    TIMEOUT = "timeout"               # RPC round trip timed out
    GAS_PRICE = "gas_price"           # Fee data unavailable
    INSUFFICIENT_FUNDS = "insufficient_funds"
    TRANSACTION_REVERTED = "transaction_reverted"  # Simulation or on-chain revert
    SUBMISSION = "submission"         # Network rejected the broadcast
    PROTOCOL_MISMATCH = "protocol_mismatch"  # Wrong ids/addresses presented to the contract
    UNKNOWN = "unknown"


@dataclass
class ErrorContext:
    """Additional context about an error."""

    category: ErrorCategory = ErrorCategory.UNKNOWN
    recoverable: bool = True
    chain_id: Optional[str] = None
    request_id: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)


class RecoverableError(Exception):
    """
    Base class for transient errors.

    The scope they occur in (one wallet, one chain) is skipped for the
    current cycle and picked up again by the next one.
    """

    def __init__(
        self,
        message: str,
        category: ErrorCategory = ErrorCategory.UNKNOWN,
        context: Optional[ErrorContext] = None,
    ):
        super().__init__(message)
        self.message = message
        self.category = category
        self.context = context or ErrorContext(category=category, recoverable=True)


class UnrecoverableError(Exception):
    """
    Base class for errors that a new cycle will not fix on its own.
    """

    def __init__(
        self,
        message: str,
        category: ErrorCategory = ErrorCategory.UNKNOWN,
        context: Optional[ErrorContext] = None,
    ):
        super().__init__(message)
        self.message = message
        self.category = category
        self.context = context or ErrorContext(category=category, recoverable=False)


# Recoverable
class RpcError(RecoverableError):
    """JSON-RPC call failed or returned an error object."""

    def __init__(
        self,
        message: str = "RPC error",
        method: Optional[str] = None,
        code: Optional[int] = None,
        data: Optional[str] = None,
    ):
        super().__init__(
            message,
            category=ErrorCategory.NETWORK,
            context=ErrorContext(
                category=ErrorCategory.NETWORK,
                recoverable=True,
                details={"method": method, "code": code, "data": data},
            ),
        )
        self.method = method
        self.code = code
        self.data = data


class RpcTimeoutError(RpcError):
    """JSON-RPC call timed out."""

    def __init__(self, message: str = "RPC call timed out", method: Optional[str] = None):
        super().__init__(message, method=method)
        self.category = ErrorCategory.TIMEOUT
        self.context.category = ErrorCategory.TIMEOUT


class GasPriceError(RecoverableError):
    """No usable fee data could be obtained for a chain."""

    def __init__(self, message: str = "Gas price unavailable", chain_id: Optional[str] = None):
        super().__init__(
            message,
            category=ErrorCategory.GAS_PRICE,
            context=ErrorContext(
                category=ErrorCategory.GAS_PRICE,
                recoverable=True,
                chain_id=chain_id,
            ),
        )


# Unrecoverable
class ConfigurationError(UnrecoverableError):
    """Malformed key material or node configuration."""

    def __init__(self, message: str = "Invalid configuration"):
        super().__init__(message, category=ErrorCategory.CONFIGURATION)


class InsufficientFundsError(UnrecoverableError):
    """Designated wallet cannot pay for the transaction."""

    def __init__(
        self,
        message: str = "Insufficient funds",
        required: Optional[int] = None,
        available: Optional[int] = None,
    ):
        super().__init__(
            message,
            category=ErrorCategory.INSUFFICIENT_FUNDS,
            context=ErrorContext(
                category=ErrorCategory.INSUFFICIENT_FUNDS,
                recoverable=False,
                details={"required": required, "available": available},
            ),
        )


class TransactionRevertedError(UnrecoverableError):
    """Call reverted, either in simulation or on-chain."""

    def __init__(
        self,
        message: str = "Transaction reverted",
        reason: Optional[str] = None,
        request_id: Optional[str] = None,
    ):
        super().__init__(
            message,
            category=ErrorCategory.TRANSACTION_REVERTED,
            context=ErrorContext(
                category=ErrorCategory.TRANSACTION_REVERTED,
                recoverable=False,
                request_id=request_id,
                details={"revert_reason": reason} if reason else {},
            ),
        )
        self.reason = reason


class TransactionSubmitError(UnrecoverableError):
    """Network refused the signed transaction."""

    def __init__(self, message: str = "Transaction rejected", request_id: Optional[str] = None):
        super().__init__(
            message,
            category=ErrorCategory.SUBMISSION,
            context=ErrorContext(
                category=ErrorCategory.SUBMISSION,
                recoverable=False,
                request_id=request_id,
            ),
        )


class ProtocolMismatchError(TransactionRevertedError):
    """fulfill/fail presented parameters that do not match the request record."""

    def __init__(self, message: str = "Incorrect fulfillment parameters", request_id: Optional[str] = None):
        super().__init__(message, reason=message, request_id=request_id)
        self.category = ErrorCategory.PROTOCOL_MISMATCH
        self.context.category = ErrorCategory.PROTOCOL_MISMATCH


def classify_error(error: Exception) -> ErrorContext:
    """
    Classify an exception and return its error context.

    Classified errors carry their own context; anything else is matched
    on its message.
    """
    if isinstance(error, (RecoverableError, UnrecoverableError)):
        return error.context

    message = str(error).lower()

    timeout_patterns = ["timeout", "timed out", "deadline"]
    if any(p in message for p in timeout_patterns):
        return ErrorContext(category=ErrorCategory.TIMEOUT, recoverable=True)

    network_patterns = [
        "connection",
        "network",
        "unreachable",
        "refused",
        "dns",
        "ssl",
    ]
    if any(p in message for p in network_patterns):
        return ErrorContext(category=ErrorCategory.NETWORK, recoverable=True)

    funds_patterns = [
        "insufficient funds",
        "not enough",
        "exceeds balance",
    ]
    if any(p in message for p in funds_patterns):
        return ErrorContext(category=ErrorCategory.INSUFFICIENT_FUNDS, recoverable=False)

    if "incorrect fulfillment parameters" in message:
        return ErrorContext(category=ErrorCategory.PROTOCOL_MISMATCH, recoverable=False)

    revert_patterns = ["revert", "execution reverted", "out of gas"]
    if any(p in message for p in revert_patterns):
        return ErrorContext(category=ErrorCategory.TRANSACTION_REVERTED, recoverable=False)

    submit_patterns = ["nonce too low", "already known", "replacement transaction underpriced"]
    if any(p in message for p in submit_patterns):
        return ErrorContext(category=ErrorCategory.SUBMISSION, recoverable=False)

    # Default to recoverable: the next cycle retries
    return ErrorContext(category=ErrorCategory.UNKNOWN, recoverable=True)

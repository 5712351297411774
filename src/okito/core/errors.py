"""
Error taxonomy and classifier.

Every failure that crosses an engine boundary ends up as a ``ClassifiedError``:
a closed ``ErrorCode`` plus severity, category and a retryable flag. The
mapping from code to flags is static; ``classify_error`` maps arbitrary
exceptions onto a code and never fails.
"""
from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional


class ErrorCode(str, Enum):
    """Closed set of error kinds"""

    # Signer & authentication
    SIGNER_NOT_CONNECTED = "SIGNER_NOT_CONNECTED"
    SIGNATURE_REJECTED = "SIGNATURE_REJECTED"
    INSUFFICIENT_PERMISSIONS = "INSUFFICIENT_PERMISSIONS"

    # Validation
    INVALID_INPUT = "INVALID_INPUT"
    INVALID_ADDRESS = "INVALID_ADDRESS"
    INVALID_AMOUNT = "INVALID_AMOUNT"
    VALIDATION_ERROR = "VALIDATION_ERROR"

    # Balance & funding
    INSUFFICIENT_FUNDS = "INSUFFICIENT_FUNDS"
    INSUFFICIENT_TOKEN_BALANCE = "INSUFFICIENT_TOKEN_BALANCE"

    # Network & connection
    NETWORK_ERROR = "NETWORK_ERROR"
    CONNECTION_TIMEOUT = "CONNECTION_TIMEOUT"
    RPC_ERROR = "RPC_ERROR"
    RATE_LIMITED = "RATE_LIMITED"
    SERVICE_UNAVAILABLE = "SERVICE_UNAVAILABLE"

    # Transaction
    TRANSACTION_FAILED = "TRANSACTION_FAILED"
    TRANSACTION_TIMEOUT = "TRANSACTION_TIMEOUT"
    SIMULATION_FAILED = "SIMULATION_FAILED"
    BLOCKHASH_EXPIRED = "BLOCKHASH_EXPIRED"
    TRANSACTION_TOO_LARGE = "TRANSACTION_TOO_LARGE"

    # Account
    TOKEN_ACCOUNT_NOT_FOUND = "TOKEN_ACCOUNT_NOT_FOUND"
    ACCOUNT_CREATION_FAILED = "ACCOUNT_CREATION_FAILED"

    # Operation
    TIMEOUT = "TIMEOUT"
    BATCH_EXECUTION_FAILED = "BATCH_EXECUTION_FAILED"
    OPERATION_CANCELLED = "OPERATION_CANCELLED"
    OPERATION_NOT_SUPPORTED = "OPERATION_NOT_SUPPORTED"

    # Configuration
    INVALID_CONFIGURATION = "INVALID_CONFIGURATION"
    MISSING_REQUIRED_PARAMETER = "MISSING_REQUIRED_PARAMETER"

    # External services
    EXTERNAL_API_ERROR = "EXTERNAL_API_ERROR"

    # Security
    SECURITY_VIOLATION = "SECURITY_VIOLATION"
    UNAUTHORIZED_OPERATION = "UNAUTHORIZED_OPERATION"

    # Generic
    UNKNOWN_ERROR = "UNKNOWN_ERROR"
    INTERNAL_ERROR = "INTERNAL_ERROR"


class ErrorSeverity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class ErrorCategory(str, Enum):
    AUTHENTICATION = "authentication"
    VALIDATION = "validation"
    NETWORK = "network"
    TRANSACTION = "transaction"
    ACCOUNT = "account"
    CONFIGURATION = "configuration"
    EXTERNAL = "external"
    SECURITY = "security"
    SYSTEM = "system"


_S = ErrorSeverity
_C = ErrorCategory

# code -> (severity, category, retryable)
ERROR_TABLE: Dict[ErrorCode, tuple] = {
    ErrorCode.SIGNER_NOT_CONNECTED: (_S.HIGH, _C.AUTHENTICATION, False),
    ErrorCode.SIGNATURE_REJECTED: (_S.HIGH, _C.AUTHENTICATION, False),
    ErrorCode.INSUFFICIENT_PERMISSIONS: (_S.HIGH, _C.AUTHENTICATION, False),

    ErrorCode.INVALID_INPUT: (_S.HIGH, _C.VALIDATION, False),
    ErrorCode.INVALID_ADDRESS: (_S.HIGH, _C.VALIDATION, False),
    ErrorCode.INVALID_AMOUNT: (_S.HIGH, _C.VALIDATION, False),
    ErrorCode.VALIDATION_ERROR: (_S.HIGH, _C.VALIDATION, False),

    ErrorCode.INSUFFICIENT_FUNDS: (_S.HIGH, _C.ACCOUNT, False),
    ErrorCode.INSUFFICIENT_TOKEN_BALANCE: (_S.HIGH, _C.ACCOUNT, False),

    ErrorCode.NETWORK_ERROR: (_S.MEDIUM, _C.NETWORK, True),
    ErrorCode.CONNECTION_TIMEOUT: (_S.MEDIUM, _C.NETWORK, True),
    ErrorCode.RPC_ERROR: (_S.MEDIUM, _C.NETWORK, True),
    ErrorCode.RATE_LIMITED: (_S.MEDIUM, _C.NETWORK, True),
    ErrorCode.SERVICE_UNAVAILABLE: (_S.HIGH, _C.NETWORK, True),

    ErrorCode.TRANSACTION_FAILED: (_S.HIGH, _C.TRANSACTION, False),
    ErrorCode.TRANSACTION_TIMEOUT: (_S.MEDIUM, _C.TRANSACTION, True),
    ErrorCode.SIMULATION_FAILED: (_S.MEDIUM, _C.TRANSACTION, True),
    ErrorCode.BLOCKHASH_EXPIRED: (_S.MEDIUM, _C.TRANSACTION, True),
    ErrorCode.TRANSACTION_TOO_LARGE: (_S.HIGH, _C.TRANSACTION, False),

    ErrorCode.TOKEN_ACCOUNT_NOT_FOUND: (_S.MEDIUM, _C.ACCOUNT, False),
    ErrorCode.ACCOUNT_CREATION_FAILED: (_S.HIGH, _C.ACCOUNT, True),

    ErrorCode.TIMEOUT: (_S.MEDIUM, _C.SYSTEM, True),
    ErrorCode.BATCH_EXECUTION_FAILED: (_S.HIGH, _C.SYSTEM, True),
    ErrorCode.OPERATION_CANCELLED: (_S.LOW, _C.SYSTEM, False),
    ErrorCode.OPERATION_NOT_SUPPORTED: (_S.HIGH, _C.SYSTEM, False),

    ErrorCode.INVALID_CONFIGURATION: (_S.HIGH, _C.CONFIGURATION, False),
    ErrorCode.MISSING_REQUIRED_PARAMETER: (_S.HIGH, _C.CONFIGURATION, False),

    ErrorCode.EXTERNAL_API_ERROR: (_S.MEDIUM, _C.EXTERNAL, True),

    ErrorCode.SECURITY_VIOLATION: (_S.CRITICAL, _C.SECURITY, False),
    ErrorCode.UNAUTHORIZED_OPERATION: (_S.HIGH, _C.SECURITY, False),

    ErrorCode.UNKNOWN_ERROR: (_S.MEDIUM, _C.SYSTEM, True),
    ErrorCode.INTERNAL_ERROR: (_S.HIGH, _C.SYSTEM, True),
}

_DEFAULT_INFO = (_S.MEDIUM, _C.SYSTEM, True)

USER_MESSAGES: Dict[ErrorCode, str] = {
    ErrorCode.SIGNER_NOT_CONNECTED: "Please connect your wallet to continue.",
    ErrorCode.INSUFFICIENT_FUNDS: "You don't have enough SOL to complete this transaction. Please add funds to your wallet.",
    ErrorCode.INSUFFICIENT_TOKEN_BALANCE: "You don't hold enough tokens to complete this transfer.",
    ErrorCode.RATE_LIMITED: "Too many requests. Please wait a moment and try again.",
    ErrorCode.NETWORK_ERROR: "Network connection issue. Please check your internet connection and try again.",
    ErrorCode.TRANSACTION_FAILED: "Transaction failed. Please try again.",
    ErrorCode.INVALID_INPUT: "Invalid input provided. Please check your parameters.",
}


def error_info(code: ErrorCode) -> tuple:
    """(severity, category, retryable) for a code"""
    return ERROR_TABLE.get(code, _DEFAULT_INFO)


@dataclass
class RecoverySuggestion:
    action: str
    description: str
    automated: bool = False


@dataclass
class ErrorContext:
    operation_id: Optional[str] = None
    timestamp: float = field(default_factory=time.time)
    transaction_signature: Optional[str] = None
    batch_index: Optional[int] = None
    additional_data: Dict[str, Any] = field(default_factory=dict)


class OkitoError(Exception):
    """Engine error with a code from the closed taxonomy."""

    def __init__(
        self,
        code: ErrorCode,
        message: str,
        details: Any = None,
        context: Optional[ErrorContext] = None,
        recovery_suggestions: Optional[List[RecoverySuggestion]] = None,
    ):
        super().__init__(message)
        self.code = code
        self.message = message
        self.details = details
        self.context = context or ErrorContext()
        self.recovery_suggestions = recovery_suggestions or []
        self.severity, self.category, self.retryable = error_info(code)

    def to_dict(self) -> dict:
        return {
            "name": type(self).__name__,
            "code": self.code.value,
            "message": self.message,
            "severity": self.severity.value,
            "category": self.category.value,
            "retryable": self.retryable,
            "details": self.details,
            "recovery_suggestions": [s.__dict__ for s in self.recovery_suggestions],
        }

    def get_user_message(self) -> str:
        return USER_MESSAGES.get(self.code, self.message)

    def __repr__(self) -> str:
        return f"OkitoError({self.code.value}, {self.message!r})"


class NetworkError(Exception):
    """
    Failure raised at the NetworkClient boundary.

    ``code`` is a structured reason set by the client adapter ("rate_limited",
    "timeout", "blockhash_not_found", "connection", "rpc",
    "insufficient_funds", "service_unavailable"); ``status`` is the HTTP status
    when one is known.
    """

    def __init__(self, message: str, code: Optional[str] = None, status: Optional[int] = None):
        super().__init__(message)
        self.code = code
        self.status = status


NETWORK_CODE_MAP: Dict[str, ErrorCode] = {
    "rate_limited": ErrorCode.RATE_LIMITED,
    "timeout": ErrorCode.CONNECTION_TIMEOUT,
    "blockhash_not_found": ErrorCode.BLOCKHASH_EXPIRED,
    "connection": ErrorCode.NETWORK_ERROR,
    "rpc": ErrorCode.RPC_ERROR,
    "insufficient_funds": ErrorCode.INSUFFICIENT_FUNDS,
    "service_unavailable": ErrorCode.SERVICE_UNAVAILABLE,
}

# Ordered fallback patterns for errors that carry no structured code.
MESSAGE_PATTERNS: List[tuple] = [
    (("wallet not connected", "signer not connected", "no public key"), ErrorCode.SIGNER_NOT_CONNECTED),
    (("insufficient token balance", "insufficient token"), ErrorCode.INSUFFICIENT_TOKEN_BALANCE),
    (("insufficient funds", "insufficient lamports", "not enough sol"), ErrorCode.INSUFFICIENT_FUNDS),
    (("429", "rate limit", "too many requests"), ErrorCode.RATE_LIMITED),
    (("blockhash not found", "blockhashnotfound", "block height exceeded"), ErrorCode.BLOCKHASH_EXPIRED),
    (("timeout", "timed out", "expired"), ErrorCode.TIMEOUT),
    (("simulation",), ErrorCode.SIMULATION_FAILED),
    (("network", "connection", "econnreset", "socket"), ErrorCode.NETWORK_ERROR),
]


@dataclass(frozen=True)
class ClassifiedError:
    """Immutable classification of a failure, carried inside ``Err``."""

    code: ErrorCode
    message: str
    severity: ErrorSeverity
    category: ErrorCategory
    retryable: bool
    cause: Optional[BaseException] = field(default=None, compare=False, repr=False)

    @classmethod
    def of(cls, code: ErrorCode, message: str, cause: Optional[BaseException] = None) -> "ClassifiedError":
        severity, category, retryable = error_info(code)
        return cls(code, message, severity, category, retryable, cause)

    def raise_(self) -> None:
        """Re-raise the original failure unchanged."""
        if self.cause is not None:
            raise self.cause
        raise OkitoError(self.code, self.message)

    def to_dict(self) -> dict:
        return {
            "code": self.code.value,
            "message": self.message,
            "severity": self.severity.value,
            "category": self.category.value,
            "retryable": self.retryable,
        }


def _match_message(message: str) -> Optional[ErrorCode]:
    lowered = message.lower()
    for needles, code in MESSAGE_PATTERNS:
        if any(n in lowered for n in needles):
            return code
    return None


def classify_error(error: Any) -> ClassifiedError:
    """
    Map any failure onto exactly one error kind.

    Already-classified errors keep their flags. Structured codes from the
    network boundary win over message matching; message matching is only the
    fallback for errors raised outside the engine.
    """
    if isinstance(error, ClassifiedError):
        return error

    if isinstance(error, OkitoError):
        return ClassifiedError(
            error.code, error.message, error.severity, error.category, error.retryable, error
        )

    message = str(error) if error is not None else ""
    if not message and isinstance(error, BaseException):
        message = type(error).__name__

    if isinstance(error, NetworkError):
        if error.status == 429:
            return ClassifiedError.of(ErrorCode.RATE_LIMITED, message, error)
        if error.status is not None and error.status >= 500:
            return ClassifiedError.of(ErrorCode.SERVICE_UNAVAILABLE, message, error)
        if error.code in NETWORK_CODE_MAP:
            return ClassifiedError.of(NETWORK_CODE_MAP[error.code], message, error)
        code = _match_message(message) or ErrorCode.NETWORK_ERROR
        return ClassifiedError.of(code, message, error)

    if isinstance(error, (asyncio.TimeoutError, TimeoutError)):
        return ClassifiedError.of(ErrorCode.TIMEOUT, message or "Operation timed out", error)

    # TimeoutError subclasses OSError and is handled above
    if isinstance(error, (ConnectionError, OSError)):
        return ClassifiedError.of(ErrorCode.NETWORK_ERROR, message, error)

    cause = error if isinstance(error, BaseException) else None
    code = _match_message(message) or ErrorCode.UNKNOWN_ERROR
    return ClassifiedError.of(code, message or "An unknown error occurred", cause)


class ErrorFactory:
    """Constructors for the common failure scenarios"""

    @staticmethod
    def signer_not_connected(context: Optional[ErrorContext] = None) -> OkitoError:
        return OkitoError(
            ErrorCode.SIGNER_NOT_CONNECTED,
            "Signer not connected or address not available",
            context=context,
            recovery_suggestions=[
                RecoverySuggestion("connect_wallet", "Connect your Solana wallet to continue"),
            ],
        )

    @staticmethod
    def invalid_input(errors: List[str], context: Optional[ErrorContext] = None) -> OkitoError:
        return OkitoError(
            ErrorCode.INVALID_INPUT,
            f"Validation failed: {', '.join(errors)}",
            details={"errors": list(errors)},
            context=context,
        )

    @staticmethod
    def insufficient_funds(required: int, available: int, context: Optional[ErrorContext] = None) -> OkitoError:
        return OkitoError(
            ErrorCode.INSUFFICIENT_FUNDS,
            f"Insufficient SOL for transaction fees. Required: {required / 1e9} SOL, "
            f"Available: {available / 1e9} SOL",
            details={"required": required, "available": available},
            context=context,
            recovery_suggestions=[
                RecoverySuggestion("add_funds", f"Add at least {(required - available) / 1e9} SOL to your wallet"),
            ],
        )

    @staticmethod
    def insufficient_token_balance(required: int, available: int, context: Optional[ErrorContext] = None) -> OkitoError:
        return OkitoError(
            ErrorCode.INSUFFICIENT_TOKEN_BALANCE,
            f"Insufficient token balance. Required: {required}, Available: {available}, "
            f"Deficit: {required - available}",
            details={"required": required, "available": available},
            context=context,
        )

    @staticmethod
    def network_error(original: BaseException, context: Optional[ErrorContext] = None) -> OkitoError:
        return OkitoError(
            ErrorCode.NETWORK_ERROR,
            f"Network error: {original or 'Connection failed'}",
            details=original,
            context=context,
            recovery_suggestions=[
                RecoverySuggestion("check_connection", "Check your internet connection"),
                RecoverySuggestion("retry_operation", "Retry the operation", automated=True),
            ],
        )

    @staticmethod
    def rate_limited(retry_after: Optional[float] = None, context: Optional[ErrorContext] = None) -> OkitoError:
        if retry_after:
            hint = f" Please wait {int(retry_after + 0.999)} seconds before retrying."
        else:
            hint = " Please wait a moment before retrying."
        return OkitoError(
            ErrorCode.RATE_LIMITED,
            f"Rate limited by RPC endpoint.{hint}",
            details={"retry_after": retry_after},
            context=context,
            recovery_suggestions=[RecoverySuggestion("wait_and_retry", "Wait and retry", automated=True)],
        )

    @staticmethod
    def transaction_failed(signature: Optional[str] = None, details: Any = None,
                           context: Optional[ErrorContext] = None) -> OkitoError:
        suffix = f" ({signature[:8]}...)" if signature else ""
        context = context or ErrorContext()
        context.transaction_signature = signature
        return OkitoError(
            ErrorCode.TRANSACTION_FAILED,
            f"Transaction failed{suffix}: {details}" if details else f"Transaction failed{suffix}",
            details=details,
            context=context,
            recovery_suggestions=[
                RecoverySuggestion("retry_transaction", "Retry the transaction with adjusted parameters"),
            ],
        )

    @staticmethod
    def service_unavailable(reason: str, context: Optional[ErrorContext] = None) -> OkitoError:
        return OkitoError(ErrorCode.SERVICE_UNAVAILABLE, reason, context=context)

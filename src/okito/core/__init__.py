"""Engine core: errors, retry, health monitoring and the operation lifecycle."""

from okito.core.circuit_breaker import (
    CircuitBreakerConfig,
    CircuitState,
    ConnectionHealthMonitor,
    HealthCheckResult,
    check_network_stability,
)
from okito.core.config import BatchConfig, OperationConfig
from okito.core.errors import (
    ClassifiedError,
    ErrorCategory,
    ErrorCode,
    ErrorFactory,
    ErrorSeverity,
    NetworkError,
    OkitoError,
    classify_error,
)
from okito.core.network import (
    AccountResolver,
    ConfirmationStrategy,
    ConfirmResult,
    NetworkClient,
    Signer,
    SimulationResult,
    TransactionDraft,
)
from okito.core.operation import OperationContext, OperationHooks, run_operation
from okito.core.result import Err, Ok
from okito.core.retry import RetryConfig, with_retry
from okito.core.types import FeeEstimation, OperationResult, ValidationResult

__all__ = [
    # Health monitor
    "CircuitBreakerConfig",
    "CircuitState",
    "ConnectionHealthMonitor",
    "HealthCheckResult",
    "check_network_stability",
    # Config
    "BatchConfig",
    "OperationConfig",
    # Errors
    "ClassifiedError",
    "ErrorCategory",
    "ErrorCode",
    "ErrorFactory",
    "ErrorSeverity",
    "NetworkError",
    "OkitoError",
    "classify_error",
    # Collaborators
    "AccountResolver",
    "ConfirmationStrategy",
    "ConfirmResult",
    "NetworkClient",
    "Signer",
    "SimulationResult",
    "TransactionDraft",
    # Lifecycle
    "OperationContext",
    "OperationHooks",
    "run_operation",
    "Err",
    "Ok",
    "RetryConfig",
    "with_retry",
    "FeeEstimation",
    "OperationResult",
    "ValidationResult",
]

"""Resilient batch transfer engine for Solana SPL tokens."""

from okito.airdrop.operation import (
    AirdropOperation,
    BatchAirdropOperation,
    airdrop_tokens,
    airdrop_tokens_batch,
)
from okito.core.circuit_breaker import ConnectionHealthMonitor
from okito.core.config import BatchConfig, OperationConfig
from okito.core.errors import ErrorCode, OkitoError, classify_error
from okito.core.types import OperationResult

__version__ = "0.3.0"

__all__ = [
    "AirdropOperation",
    "BatchAirdropOperation",
    "airdrop_tokens",
    "airdrop_tokens_batch",
    "ConnectionHealthMonitor",
    "BatchConfig",
    "OperationConfig",
    "ErrorCode",
    "OkitoError",
    "classify_error",
    "OperationResult",
]

"""
Operation and batch policy.

Both configs are frozen: defaults are merged with caller overrides once, at
construction, and never change during a run.
"""
from __future__ import annotations

import dataclasses
from dataclasses import dataclass, field
from typing import Any, Mapping, Optional, Tuple

from okito.core.errors import ErrorCode, OkitoError
from okito.core.network import ConfirmationStrategy
from okito.core.retry import RetryConfig

MAX_BATCH_SIZE = 20
DEFAULT_BATCH_SIZE = 15
MIN_BATCH_DELAY_MS = 2000
DEFAULT_BATCH_DELAY_MS = 3000
MAX_PRIORITY_FEE = 50_000
MAX_BATCH_RETRY_DELAY_MS = 30_000


def _strategy(value: Any) -> ConfirmationStrategy:
    try:
        return ConfirmationStrategy(value)
    except ValueError:
        raise OkitoError(
            ErrorCode.INVALID_CONFIGURATION,
            f"Unknown confirmation strategy: {value!r}",
            details={"allowed": [s.value for s in ConfirmationStrategy]},
        ) from None


@dataclass(frozen=True)
class OperationConfig:
    """Policy for a single operation. Durations in milliseconds."""

    max_retries: int = 3
    timeout_ms: int = 60_000
    confirmation_strategy: ConfirmationStrategy = ConfirmationStrategy.CONFIRMED
    priority_fee: int = 0
    enable_simulation: bool = True
    validate_balance: bool = True
    enable_logging: bool = False
    retry: RetryConfig = field(default_factory=RetryConfig)
    health_check_timeout_ms: int = 10_000

    def __post_init__(self):
        object.__setattr__(self, "confirmation_strategy", _strategy(self.confirmation_strategy))
        if self.max_retries < 1:
            raise OkitoError(ErrorCode.INVALID_CONFIGURATION, "max_retries must be at least 1")
        if self.timeout_ms <= 0:
            raise OkitoError(ErrorCode.INVALID_CONFIGURATION, "timeout_ms must be positive")
        if self.priority_fee < 0:
            raise OkitoError(ErrorCode.INVALID_CONFIGURATION, "priority_fee must not be negative")

    @property
    def timeout(self) -> float:
        return self.timeout_ms / 1000

    @classmethod
    def merged(cls, overrides: Optional[Mapping[str, Any]] = None, **kwargs):
        """Defaults with caller overrides applied; unknown keys are rejected."""
        values = dict(overrides or {})
        values.update(kwargs)
        known = {f.name for f in dataclasses.fields(cls) if f.init}
        unknown = sorted(set(values) - known)
        if unknown:
            raise OkitoError(
                ErrorCode.INVALID_CONFIGURATION,
                f"Unknown configuration option(s): {', '.join(unknown)}",
                details={"unknown": unknown},
            )
        return cls(**values)

    def replace(self, **changes):
        return dataclasses.replace(self, **changes)


@dataclass(frozen=True)
class BatchConfig(OperationConfig):
    """
    Policy for a large airdrop run.

    Out-of-range batch size, delay and priority fee are clamped rather than
    rejected; each clamp is recorded in ``adjustments``.
    """

    max_retries: int = 5
    timeout_ms: int = 300_000
    confirmation_strategy: ConfirmationStrategy = ConfirmationStrategy.FINALIZED
    priority_fee: int = MAX_PRIORITY_FEE
    enable_logging: bool = True

    batch_size: int = DEFAULT_BATCH_SIZE
    batch_delay_ms: int = DEFAULT_BATCH_DELAY_MS
    max_batch_retries: int = 3
    preflight_validation: bool = True
    network_stability_check: bool = True
    pause_on_error: bool = False
    dry_run: bool = False
    create_recipient_accounts: bool = True
    account_check_retries: int = 5
    resolution_chunk_size: int = 50
    resolution_chunk_pause_ms: int = 100

    adjustments: Tuple[str, ...] = field(default=(), init=False, compare=False)

    def __post_init__(self):
        notes = []
        if self.batch_size > MAX_BATCH_SIZE or self.batch_size < 1:
            clamped = min(max(self.batch_size, 1), MAX_BATCH_SIZE)
            notes.append(f"batch_size {self.batch_size} clamped to {clamped}")
            object.__setattr__(self, "batch_size", clamped)
        if self.batch_delay_ms < MIN_BATCH_DELAY_MS:
            notes.append(f"batch_delay_ms {self.batch_delay_ms} raised to {MIN_BATCH_DELAY_MS} for network stability")
            object.__setattr__(self, "batch_delay_ms", MIN_BATCH_DELAY_MS)
        if self.priority_fee > MAX_PRIORITY_FEE or self.priority_fee < 0:
            clamped = min(max(self.priority_fee, 0), MAX_PRIORITY_FEE)
            notes.append(f"priority_fee {self.priority_fee} clamped to {clamped}")
            object.__setattr__(self, "priority_fee", clamped)
        object.__setattr__(self, "adjustments", tuple(notes))

        super().__post_init__()

        if self.max_batch_retries < 1:
            raise OkitoError(ErrorCode.INVALID_CONFIGURATION, "max_batch_retries must be at least 1")
        if self.account_check_retries < 1:
            raise OkitoError(ErrorCode.INVALID_CONFIGURATION, "account_check_retries must be at least 1")
        if self.resolution_chunk_size < 1:
            raise OkitoError(ErrorCode.INVALID_CONFIGURATION, "resolution_chunk_size must be at least 1")

    @property
    def batch_delay(self) -> float:
        return self.batch_delay_ms / 1000

    def retry_delay(self, attempt: int) -> float:
        """Pause before re-attempting a batch, seconds."""
        return min(self.batch_delay_ms * attempt, MAX_BATCH_RETRY_DELAY_MS) / 1000

"""
Value types shared across the lifecycle.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from okito.core.errors import ClassifiedError


@dataclass
class ValidationResult:
    """Produced before any network call; failures are never retried."""
    is_valid: bool = True
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    def add_error(self, message: str) -> None:
        self.errors.append(message)
        self.is_valid = False

    def add_warning(self, message: str) -> None:
        self.warnings.append(message)


@dataclass(frozen=True)
class FeeEstimation:
    estimated_fee: int
    breakdown: Dict[str, int] = field(default_factory=dict)


@dataclass(frozen=True)
class OperationResult:
    """Terminal record of an operation or batch run."""

    success: bool
    transaction_ids: Tuple[str, ...] = ()
    successful_batches: int = 0
    failed_batches: int = 0
    recipients_processed: int = 0
    recipients_failed: int = 0
    total_amount_sent: int = 0
    elapsed_ms: float = 0.0
    error: Optional[ClassifiedError] = None

    operation_id: Optional[str] = None
    estimated_fee: int = 0
    accounts_created: int = 0
    batch_count: int = 0
    success_rate: float = 0.0
    paused: bool = False
    dry_run: bool = False
    metrics: Dict[str, Any] = field(default_factory=dict)
    batches: Tuple[Dict[str, Any], ...] = ()
    warnings: Tuple[str, ...] = ()
    data: Dict[str, Any] = field(default_factory=dict)

    @property
    def transaction_id(self) -> Optional[str]:
        return self.transaction_ids[0] if self.transaction_ids else None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "operation_id": self.operation_id,
            "transaction_ids": list(self.transaction_ids),
            "successful_batches": self.successful_batches,
            "failed_batches": self.failed_batches,
            "batch_count": self.batch_count,
            "recipients_processed": self.recipients_processed,
            "recipients_failed": self.recipients_failed,
            "total_amount_sent": str(self.total_amount_sent),
            "accounts_created": self.accounts_created,
            "estimated_fee": self.estimated_fee,
            "success_rate": self.success_rate,
            "elapsed_ms": round(self.elapsed_ms, 3),
            "paused": self.paused,
            "dry_run": self.dry_run,
            "error": self.error.to_dict() if self.error else None,
            "metrics": dict(self.metrics),
            "batches": [dict(b) for b in self.batches],
            "warnings": list(self.warnings),
            "data": dict(self.data),
        }

"""
Sequential batch executor with progress reporting.

Batches run one at a time. The remote network rate-limits per caller, so
parallel submission only turns into account contention and cascading 429s.
"""
from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, replace
from typing import Any, Awaitable, Callable, List, Optional, Sequence

from okito.airdrop.costs import estimate_batch_fee
from okito.airdrop.planner import Batch, BatchStatus, RecipientStatus
from okito.core.circuit_breaker import ConnectionHealthMonitor
from okito.core.config import BatchConfig
from okito.core.confirmation import confirm_with_escalation
from okito.core.errors import ClassifiedError, ErrorCategory, ErrorCode, ErrorFactory, OkitoError, classify_error
from okito.core.network import NetworkClient, Signer
from okito.core.operation import (
    check_signer,
    draft_transaction,
    failure_result,
    sign_draft,
    simulate_transaction,
    submit_transaction,
)
from okito.core.result import Err, Ok, Result, capture
from okito.core.types import OperationResult
from okito.utils.logger import get_logger, log_operation_event
from okito.utils.trace_context import OperationTrace, get_current_trace

logger = get_logger(__name__)

DRY_RUN_PREFIX = "DRY_RUN_"

InstructionBuilder = Callable[[Batch], List[Any]]
ProgressCallback = Callable[["Progress"], Any]


def _from_health_gate(error: ClassifiedError) -> bool:
    """Already counted by the monitor itself."""
    details = getattr(error.cause, "details", None)
    return isinstance(details, dict) and details.get("health_check", False)


@dataclass
class Progress:
    total_batches: int
    total_recipients: int
    completed_batches: int = 0
    failed_batches: int = 0
    processed_recipients: int = 0
    failed_recipients: int = 0
    current_batch: int = 0
    estimated_time_remaining_ms: float = 0.0
    last_transaction_id: Optional[str] = None

    @property
    def percentage(self) -> float:
        if not self.total_batches:
            return 0.0
        return round((self.completed_batches + self.failed_batches) / self.total_batches * 100, 2)

    def snapshot(self) -> "Progress":
        return replace(self)


class BatchExecutor:
    """
    Runs planned batches through build -> sign -> simulate -> submit ->
    confirm, retrying each batch up to ``max_batch_retries`` times.

    A failed batch never aborts its siblings unless ``pause_on_error`` is
    set; then batches not yet started stay pending.
    """

    def __init__(
        self,
        network: NetworkClient,
        signer: Signer,
        config: BatchConfig,
        instruction_builder: InstructionBuilder,
        monitor: Optional[ConnectionHealthMonitor] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.network = network
        self.signer = signer
        self.config = config
        self.instruction_builder = instruction_builder
        self.monitor = monitor
        self._sleep = sleep
        self._clock = clock
        self.batches: List[Batch] = []
        self.progress: Optional[Progress] = None
        self.paused = False

    def _info(self, message: str) -> None:
        if self.config.enable_logging:
            logger.info(message)

    def _warning(self, message: str) -> None:
        if self.config.enable_logging:
            logger.warning(message)

    async def execute_all(
        self,
        batches: Sequence[Batch],
        progress_callback: Optional[ProgressCallback] = None,
        *,
        estimated_fee: int = 0,
        warnings: Sequence[str] = (),
    ) -> OperationResult:
        trace = get_current_trace()
        owns_trace = trace is None
        if owns_trace:
            trace = OperationTrace.start("batch_execution")

        started = self._clock()
        self.batches = list(batches)
        self.paused = False
        self.progress = Progress(
            total_batches=len(self.batches),
            total_recipients=sum(len(b.recipients) for b in self.batches),
        )

        try:
            try:
                check_signer(self.signer)
            except OkitoError as e:
                logger.error(e.message)
                return failure_result(classify_error(e), trace, list(warnings), batch_count=len(self.batches))

            for position, batch in enumerate(self.batches):
                self.progress.current_batch = batch.index
                self._info(f"Processing batch {batch.index + 1}/{len(self.batches)} "
                           f"({len(batch.recipients)} recipients)")

                with trace.stage("batch"):
                    outcome = await self._run_with_retries(batch)
                trace.retry_count += max(0, batch.attempts - 1)

                self._record(batch, outcome, started, position)
                self._emit_progress(progress_callback)

                if isinstance(outcome, Err) and self.config.pause_on_error:
                    self.paused = True
                    logger.warning(f"Batch {batch.index} failed; pausing, "
                                   f"{len(self.batches) - position - 1} batch(es) not started")
                    break

                if position < len(self.batches) - 1:
                    await self._sleep(self.config.batch_delay)

            return self._build_result(trace, started, estimated_fee, warnings)
        finally:
            if owns_trace:
                trace.finish()

    async def _run_with_retries(self, batch: Batch) -> Result[str]:
        while True:
            batch.status = BatchStatus.PROCESSING
            batch.attempts += 1
            batch.set_recipient_status(RecipientStatus.PROCESSING)

            outcome = await capture(self._execute_batch(batch))

            if isinstance(outcome, Ok):
                batch.status = BatchStatus.COMPLETED
                batch.transaction_id = outcome.value
                batch.last_error = None
                batch.set_recipient_status(RecipientStatus.COMPLETED)
                log_operation_event("batch_completed", "airdrop", batch_index=batch.index,
                                    transaction_id=outcome.value)
                return outcome

            error = outcome.error
            batch.last_error = error.message
            if self.monitor is not None and error.category == ErrorCategory.NETWORK and not _from_health_gate(error):
                await self.monitor.record_failure(error.message)

            if error.retryable and batch.attempts < self.config.max_batch_retries:
                batch.status = BatchStatus.RETRYING
                delay = self.config.retry_delay(batch.attempts)
                self._warning(f"Batch {batch.index} attempt {batch.attempts} failed "
                              f"({error.code.value}): {error.message}. Retrying in {delay:.1f}s")
                await self._sleep(delay)
                continue

            batch.status = BatchStatus.FAILED
            batch.set_recipient_status(RecipientStatus.FAILED)
            logger.error(f"Batch {batch.index} failed after {batch.attempts} attempt(s): "
                         f"[{error.code.value}] {error.message}")
            log_operation_event("batch_failed", "airdrop", batch_index=batch.index,
                                transaction_id=batch.transaction_id, extra=error.to_dict())
            return outcome

    async def _execute_batch(self, batch: Batch) -> str:
        if self.monitor is not None:
            health = await self.monitor.check_health(self.network)
            if not health.is_healthy:
                error = ErrorFactory.service_unavailable(f"Network unhealthy: {health.error}")
                error.details = {"health_check": True}
                raise error

        instructions = self.instruction_builder(batch)
        batch.estimated_fee = estimate_batch_fee(batch, self.config.priority_fee).estimated_fee
        logger.debug(f"Batch {batch.index}: {len(instructions)} instructions, est. fee {batch.estimated_fee}")

        draft = await draft_transaction(self.network, instructions, self.signer.address)
        signed = await sign_draft(self.signer, draft)

        if self.config.dry_run:
            return f"{DRY_RUN_PREFIX}{batch.index}"

        if self.config.enable_simulation:
            await simulate_transaction(self.network, signed)

        tx_id = await submit_transaction(self.network, signed)
        batch.transaction_id = tx_id
        await confirm_with_escalation(
            self.network, tx_id, self.config.confirmation_strategy, self.config.timeout, clock=self._clock,
        )
        return tx_id

    def _record(self, batch: Batch, outcome: Result[str], started: float, position: int) -> None:
        progress = self.progress
        if isinstance(outcome, Ok):
            progress.completed_batches += 1
            progress.processed_recipients += len(batch.recipients)
            progress.last_transaction_id = outcome.value
            self._info(f"Batch {batch.index} completed: {outcome.value}")
        else:
            progress.failed_batches += 1
            progress.failed_recipients += len(batch.recipients)

        done = position + 1
        remaining = len(self.batches) - done
        elapsed = self._clock() - started
        progress.estimated_time_remaining_ms = (elapsed / done) * remaining * 1000 if remaining else 0.0

    def _emit_progress(self, callback: Optional[ProgressCallback]) -> None:
        if callback is None:
            return
        try:
            callback(self.progress.snapshot())
        except Exception:
            logger.exception("Progress callback raised; continuing")

    def _build_result(self, trace: OperationTrace, started: float, estimated_fee: int,
                      warnings: Sequence[str]) -> OperationResult:
        completed = [b for b in self.batches if b.status == BatchStatus.COMPLETED]
        failed = [b for b in self.batches if b.status == BatchStatus.FAILED]
        total = len(self.batches)

        error: Optional[ClassifiedError] = None
        if failed:
            error = ClassifiedError.of(
                ErrorCode.BATCH_EXECUTION_FAILED,
                f"{len(failed)} of {total} batch(es) failed; first failure: {failed[0].last_error}",
            )

        result = OperationResult(
            success=not failed and not self.paused,
            transaction_ids=tuple(b.transaction_id for b in completed),
            successful_batches=len(completed),
            failed_batches=len(failed),
            recipients_processed=sum(len(b.recipients) for b in completed),
            recipients_failed=sum(len(b.recipients) for b in failed),
            total_amount_sent=0 if self.config.dry_run else sum(b.total_amount for b in completed),
            elapsed_ms=(self._clock() - started) * 1000,
            error=error,
            operation_id=trace.operation_id,
            estimated_fee=estimated_fee,
            accounts_created=0 if self.config.dry_run else sum(len(b.accounts_to_create) for b in completed),
            batch_count=total,
            success_rate=round(len(completed) / total * 100, 2) if total else 0.0,
            paused=self.paused,
            dry_run=self.config.dry_run,
            metrics=trace.metrics(),
            batches=tuple(b.snapshot() for b in self.batches),
            warnings=tuple(warnings),
        )
        self._info(f"Batch run finished: {len(completed)}/{total} succeeded "
                   f"({result.success_rate}%), {result.recipients_processed} recipients processed")
        return result

"""
Operation lifecycle shared by every ledger-mutating action.

A concrete operation implements ``OperationHooks``; ``run_operation`` drives
the fixed stage order:

    validate -> prepare -> estimate_fee -> check_balance -> build_instructions
    -> simulate -> submit -> confirm -> build_result

The stage helpers below (``draft_transaction``, ``simulate_transaction`` ...)
are reused by the batch executor for its per-batch lifecycle.
"""
from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field, replace
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol

from okito.core.config import OperationConfig
from okito.core.confirmation import confirm_with_escalation
from okito.core.errors import (
    ClassifiedError,
    ErrorCode,
    ErrorFactory,
    NetworkError,
    OkitoError,
    classify_error,
)
from okito.core.network import ConfirmationStrategy, NetworkClient, Signer, SimulationResult, TransactionDraft
from okito.core.result import Err, Ok, Result, capture
from okito.core.retry import with_retry
from okito.core.types import FeeEstimation, OperationResult, ValidationResult
from okito.utils.logger import get_logger, log_operation_event
from okito.utils.trace_context import OperationTrace

logger = get_logger(__name__)


@dataclass
class OperationContext:
    """Mutable per-run state handed to every hook."""

    network: NetworkClient
    signer: Signer
    config: OperationConfig
    trace: OperationTrace
    clock: Callable[[], float] = time.monotonic
    data: Dict[str, Any] = field(default_factory=dict)
    fee: Optional[FeeEstimation] = None
    instructions: List[Any] = field(default_factory=list)
    signed_tx: Any = None
    transaction_id: Optional[str] = None
    confirmed_at: Optional[ConfirmationStrategy] = None
    simulation: Optional[SimulationResult] = None
    submitted: bool = False

    @property
    def signer_address(self) -> str:
        return self.signer.address

    def info(self, message: str) -> None:
        if self.config.enable_logging:
            logger.info(message)

    def warning(self, message: str) -> None:
        if self.config.enable_logging:
            logger.warning(message)


class OperationHooks(Protocol):
    """Per-operation behaviour plugged into ``run_operation``."""

    name: str

    def validate(self) -> ValidationResult: ...

    async def prepare(self, ctx: OperationContext) -> None: ...

    async def estimate_fee(self, ctx: OperationContext) -> FeeEstimation: ...

    async def build_instructions(self, ctx: OperationContext) -> List[Any]: ...

    def build_success_result(self, ctx: OperationContext) -> OperationResult: ...


def check_signer(signer: Optional[Signer]) -> str:
    if signer is None or not getattr(signer, "address", None):
        raise ErrorFactory.signer_not_connected()
    return signer.address


async def check_fee_balance(network: NetworkClient, address: str, required: int) -> int:
    """Native balance must cover ``required``; returns the balance."""
    balance = await network.get_balance(address)
    if balance < required:
        raise ErrorFactory.insufficient_funds(required, balance)
    return balance


async def draft_transaction(network: NetworkClient, instructions: List[Any], fee_payer: str) -> TransactionDraft:
    blockhash, last_valid = await network.get_latest_blockhash()
    return TransactionDraft(
        instructions=list(instructions),
        fee_payer=fee_payer,
        recent_blockhash=blockhash,
        last_valid_block_height=last_valid,
    )


async def sign_draft(signer: Signer, draft: TransactionDraft) -> Any:
    try:
        return await signer.sign(draft)
    except OkitoError:
        raise
    except Exception as e:
        raise OkitoError(ErrorCode.SIGNATURE_REJECTED, f"Signing failed: {e}", details=e) from e


async def simulate_transaction(network: NetworkClient, signed_tx: Any) -> SimulationResult:
    """
    Rejected simulations are terminal (TRANSACTION_FAILED); failing to run
    the simulation at all is SIMULATION_FAILED and retryable.
    """
    try:
        result = await network.simulate(signed_tx)
    except (NetworkError, asyncio.TimeoutError):
        raise
    except OkitoError:
        raise
    except Exception as e:
        raise OkitoError(ErrorCode.SIMULATION_FAILED, f"Transaction simulation failed: {e}", details=e) from e

    if not result.ok:
        raise OkitoError(
            ErrorCode.TRANSACTION_FAILED,
            f"Simulation rejected transaction: {result.error}",
            details={"error": result.error, "logs": list(result.logs)},
        )
    return result


async def submit_transaction(network: NetworkClient, signed_tx: Any) -> str:
    tx_id = await network.submit(signed_tx)
    if not tx_id:
        raise OkitoError(ErrorCode.TRANSACTION_FAILED, "Network returned no transaction id")
    return str(tx_id)


def failure_result(
    error: ClassifiedError,
    trace: OperationTrace,
    warnings: Optional[List[str]] = None,
    **extra,
) -> OperationResult:
    return OperationResult(
        success=False,
        error=error,
        elapsed_ms=trace.elapsed_ms,
        operation_id=trace.operation_id,
        metrics=trace.metrics(),
        warnings=tuple(warnings or ()),
        **extra,
    )


async def _run_stages(hooks: OperationHooks, ctx: OperationContext) -> Result[OperationContext]:
    """One pass over prepare..confirm; the first ``Err`` short-circuits."""
    config = ctx.config

    async def prepare():
        await hooks.prepare(ctx)

    async def estimate():
        ctx.fee = await hooks.estimate_fee(ctx)

    async def check_balance():
        if config.validate_balance:
            await check_fee_balance(ctx.network, ctx.signer_address, ctx.fee.estimated_fee if ctx.fee else 0)

    async def build():
        ctx.instructions = list(await hooks.build_instructions(ctx))
        draft = await draft_transaction(ctx.network, ctx.instructions, ctx.signer_address)
        ctx.signed_tx = await sign_draft(ctx.signer, draft)

    async def simulate():
        if config.enable_simulation:
            ctx.simulation = await simulate_transaction(ctx.network, ctx.signed_tx)

    async def submit():
        ctx.transaction_id = await submit_transaction(ctx.network, ctx.signed_tx)
        ctx.submitted = True
        ctx.info(f"{hooks.name}: submitted {ctx.transaction_id}")

    async def confirm():
        ctx.confirmed_at = await confirm_with_escalation(
            ctx.network, ctx.transaction_id, config.confirmation_strategy, config.timeout, clock=ctx.clock,
        )

    stages = (
        ("prepare", prepare),
        ("estimate_fee", estimate),
        ("check_balance", check_balance),
        ("build_instructions", build),
        ("simulate", simulate),
        ("submit", submit),
        ("confirm", confirm),
    )
    for name, stage in stages:
        with ctx.trace.stage(name):
            outcome = await capture(stage())
        if isinstance(outcome, Err):
            logger.debug(f"{hooks.name}: stage '{name}' failed with {outcome.error.code.value}")
            return outcome
    return Ok(ctx)


async def run_operation(
    hooks: OperationHooks,
    network: NetworkClient,
    signer: Signer,
    config: Optional[OperationConfig] = None,
    *,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> OperationResult:
    """
    Drive ``hooks`` through the lifecycle and return a terminal result.

    Never raises for operation failures: they come back as
    ``OperationResult(success=False, error=...)``. The stage sequence is
    retried as a whole for retryable errors, but never once a transaction
    has been submitted.
    """
    config = config or OperationConfig()
    trace = OperationTrace.start(hooks.name)
    try:
        validation = hooks.validate()
        if not validation.is_valid:
            error = classify_error(ErrorFactory.invalid_input(validation.errors))
            logger.error(f"{hooks.name}: validation failed: {', '.join(validation.errors)}")
            return failure_result(error, trace, validation.warnings)

        try:
            check_signer(signer)
        except OkitoError as e:
            logger.error(f"{hooks.name}: {e.message}")
            return failure_result(classify_error(e), trace, validation.warnings)

        ctx = OperationContext(network=network, signer=signer, config=config, trace=trace, clock=clock)
        ctx.info(f"Starting {hooks.name} operation")

        def on_retry(attempt: int, error: ClassifiedError, delay: float) -> None:
            trace.retry_count += 1

        outcome = await with_retry(
            lambda: _run_stages(hooks, ctx),
            config.retry,
            max_attempts=config.max_retries,
            sleep=sleep,
            retry_if=lambda error: not ctx.submitted,
            on_retry=on_retry,
            name=hooks.name,
        )

        if isinstance(outcome, Err):
            error = outcome.error
            logger.error(f"{hooks.name} failed: [{error.code.value}] {error.message}")
            log_operation_event("operation_failed", hooks.name, transaction_id=ctx.transaction_id,
                                extra=error.to_dict())
            transaction_ids = (ctx.transaction_id,) if ctx.transaction_id else ()
            return failure_result(error, trace, validation.warnings, transaction_ids=transaction_ids,
                                  estimated_fee=ctx.fee.estimated_fee if ctx.fee else 0)

        trace.finish("success")
        result = hooks.build_success_result(ctx)
        ctx.info(f"{hooks.name} completed: {ctx.transaction_id}")
        log_operation_event("operation_completed", hooks.name, transaction_id=ctx.transaction_id)
        if validation.warnings and not result.warnings:
            result = _with_warnings(result, validation.warnings)
        return result
    finally:
        if trace.finished is None:
            trace.finish("failure")


def _with_warnings(result: OperationResult, warnings: List[str]) -> OperationResult:
    return replace(result, warnings=tuple(warnings))

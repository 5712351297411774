"""
Airdrop entry points.

``AirdropOperation`` sends one transaction through the operation template.
``BatchAirdropOperation`` plans a large recipient list and hands it to the
batch executor.
"""
from __future__ import annotations

import asyncio
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

from okito.airdrop.costs import RENT_EXEMPT_TOKEN_ACCOUNT, estimate_plan_fee
from okito.airdrop.executor import BatchExecutor, InstructionBuilder, Progress, ProgressCallback
from okito.airdrop.planner import (
    Batch,
    RecipientRecord,
    partition,
    plan,
    resolve_destinations,
    validate_recipients,
)
from okito.core.circuit_breaker import CircuitBreakerConfig, ConnectionHealthMonitor, check_network_stability
from okito.core.config import BatchConfig, OperationConfig
from okito.core.errors import ErrorCode, ErrorFactory, OkitoError, classify_error
from okito.core.network import AccountResolver, NetworkClient, Signer
from okito.core.operation import OperationContext, check_fee_balance, check_signer, failure_result, run_operation
from okito.core.types import FeeEstimation, OperationResult, ValidationResult
from okito.solana.accounts import AssociatedTokenAccountResolver, is_valid_address
from okito.solana.instructions import AirdropInstructionBuilder
from okito.utils.logger import get_logger, log_operation_event
from okito.utils.trace_context import OperationTrace

logger = get_logger(__name__)

MAX_INSTRUCTIONS_PER_TX = 18


async def check_token_balance(network: NetworkClient, resolver: AccountResolver, owner: str, required: int) -> int:
    """Sender's token account must exist and hold ``required``."""
    source = resolver.derive(owner)
    if not await network.get_account_exists(source):
        raise OkitoError(
            ErrorCode.TOKEN_ACCOUNT_NOT_FOUND,
            f"Sender {owner} has no token account for this mint",
            details={"token_account": source},
        )
    balance = await network.get_token_balance(source)
    if balance < required:
        raise ErrorFactory.insufficient_token_balance(required, balance)
    return balance


class AirdropOperation:
    """Single-transaction airdrop, driven by ``run_operation``."""

    name = "token_airdrop"

    def __init__(
        self,
        mint: str,
        recipients: Sequence[Any],
        decimals: Optional[int] = None,
        create_recipient_accounts: bool = True,
        resolver: Optional[AccountResolver] = None,
        instruction_builder: Optional[InstructionBuilder] = None,
        account_check_retries: int = 3,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.mint = mint
        self.recipients = recipients
        self.decimals = decimals
        self.create_recipient_accounts = create_recipient_accounts
        self.resolver = resolver
        self.instruction_builder = instruction_builder
        self.account_check_retries = account_check_retries
        self._sleep = sleep
        self._validated: List[Any] = []

    def validate(self) -> ValidationResult:
        result = validate_recipients(self.recipients, self.decimals, batch_size=MAX_INSTRUCTIONS_PER_TX)
        if not is_valid_address(self.mint):
            result.add_error(f"Invalid mint address: {self.mint}")
        if len(self.recipients or ()) > MAX_INSTRUCTIONS_PER_TX:
            result.add_error(
                f"Maximum {MAX_INSTRUCTIONS_PER_TX} recipients per single-transaction airdrop; "
                f"use BatchAirdropOperation for {len(self.recipients)}"
            )
        self._validated = result.recipients
        return result

    async def prepare(self, ctx: OperationContext) -> None:
        resolver = self.resolver or AssociatedTokenAccountResolver(ctx.network, self.mint)
        builder = self.instruction_builder or AirdropInstructionBuilder(
            ctx.signer_address, self.mint, ctx.config.priority_fee
        )

        destinations = [resolver.derive(r.address) for r in self._validated]
        records = [RecipientRecord(r.address, r.amount, d, 0) for r, d in zip(self._validated, destinations)]

        # transfers plus fixed instructions, before any network call
        self._check_size(builder(partition(records, dict.fromkeys(destinations, True), len(records))[0]))

        existing = await resolve_destinations(
            resolver, destinations, retries=self.account_check_retries, sleep=self._sleep
        )
        missing = [r.address for r, d in zip(self._validated, destinations) if not existing[d]]
        if missing and not self.create_recipient_accounts:
            raise OkitoError(
                ErrorCode.TOKEN_ACCOUNT_NOT_FOUND,
                f"Recipient {missing[0]} does not have a token account and auto-creation is disabled",
                details={"recipients": missing},
            )

        batch = partition(records, existing, len(records))[0]
        self._check_size(builder(batch))
        await check_token_balance(ctx.network, resolver, ctx.signer_address, batch.total_amount)

        ctx.data["batch"] = batch
        ctx.data["builder"] = builder
        ctx.info(f"Airdrop prepared: {len(records)} recipients, {len(missing)} account(s) to create")

    async def estimate_fee(self, ctx: OperationContext) -> FeeEstimation:
        batch: Batch = ctx.data["batch"]
        instructions = ctx.data["builder"](batch)
        network_fee = await ctx.network.estimate_fee(instructions, ctx.signer_address)
        rent = RENT_EXEMPT_TOKEN_ACCOUNT * len(batch.accounts_to_create)
        return FeeEstimation(
            estimated_fee=network_fee + rent,
            breakdown={"transaction_fee": network_fee, "account_creations": rent},
        )

    @staticmethod
    def _check_size(instructions: List[Any]) -> None:
        if len(instructions) > MAX_INSTRUCTIONS_PER_TX:
            raise OkitoError(
                ErrorCode.TRANSACTION_TOO_LARGE,
                f"{len(instructions)} instructions exceed the {MAX_INSTRUCTIONS_PER_TX} per transaction limit; "
                f"use BatchAirdropOperation for this recipient list",
                details={"instructions": len(instructions)},
            )

    async def build_instructions(self, ctx: OperationContext) -> List[Any]:
        instructions = ctx.data["builder"](ctx.data["batch"])
        self._check_size(instructions)
        return instructions

    def build_success_result(self, ctx: OperationContext) -> OperationResult:
        batch: Batch = ctx.data["batch"]
        return OperationResult(
            success=True,
            transaction_ids=(ctx.transaction_id,),
            successful_batches=1,
            recipients_processed=len(batch.recipients),
            total_amount_sent=batch.total_amount,
            elapsed_ms=ctx.trace.elapsed_ms,
            operation_id=ctx.trace.operation_id,
            estimated_fee=ctx.fee.estimated_fee if ctx.fee else 0,
            accounts_created=len(batch.accounts_to_create),
            batch_count=1,
            success_rate=100.0,
            metrics=ctx.trace.metrics(),
            data={"confirmation": ctx.confirmed_at.value if ctx.confirmed_at else None},
        )


async def airdrop_tokens(
    network: NetworkClient,
    signer: Signer,
    mint: str,
    recipients: Sequence[Any],
    config: Optional[OperationConfig] = None,
    **kwargs,
) -> OperationResult:
    """Airdrop to a handful of recipients in one transaction."""
    operation = AirdropOperation(mint, recipients, **kwargs)
    return await run_operation(operation, network, signer, config)


class BatchAirdropOperation:
    """
    Large airdrop: validate -> stability probe -> plan -> preflight balance
    checks -> sequential batch execution.

    Validation and preflight failures end the run before any batch starts.

    Pass a shared ``monitor`` to keep breaker state across runs against the
    same endpoint; without one a fresh breaker is built from
    ``config.health_check_timeout_ms`` and forgotten with the operation.
    """

    name = "batch_airdrop"

    def __init__(
        self,
        network: NetworkClient,
        signer: Signer,
        mint: str,
        recipients: Sequence[Any],
        config: Optional[BatchConfig] = None,
        *,
        decimals: Optional[int] = None,
        monitor: Optional[ConnectionHealthMonitor] = None,
        resolver: Optional[AccountResolver] = None,
        instruction_builder: Optional[InstructionBuilder] = None,
        progress_callback: Optional[ProgressCallback] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.network = network
        self.signer = signer
        self.mint = mint
        self.recipients = recipients
        self.config = config or BatchConfig()
        self.decimals = decimals
        self.monitor = monitor or ConnectionHealthMonitor(
            name="airdrop",
            config=CircuitBreakerConfig(latency_ceiling_ms=self.config.health_check_timeout_ms),
            clock=clock,
        )
        self.resolver = resolver
        self.instruction_builder = instruction_builder
        self.progress_callback = progress_callback
        self._sleep = sleep
        self._clock = clock
        self.executor: Optional[BatchExecutor] = None

    def _info(self, message: str) -> None:
        if self.config.enable_logging:
            logger.info(message)

    async def execute(self) -> OperationResult:
        trace = OperationTrace.start(self.name)
        warnings: List[str] = list(self.config.adjustments)
        try:
            return await self._execute(trace, warnings)
        except Exception as e:
            error = classify_error(e)
            logger.error(f"Batch airdrop failed: [{error.code.value}] {error.message}")
            log_operation_event("operation_failed", self.name, extra=error.to_dict())
            return failure_result(error, trace, warnings)
        finally:
            trace.finish()

    async def _execute(self, trace: OperationTrace, warnings: List[str]) -> OperationResult:
        config = self.config
        for note in config.adjustments:
            logger.warning(note)

        with trace.stage("validate"):
            validation = validate_recipients(self.recipients, self.decimals, config.batch_size)
            if not is_valid_address(self.mint):
                validation.add_error(f"Invalid mint address: {self.mint}")
        warnings.extend(validation.warnings)
        if not validation.is_valid:
            logger.error(f"Recipient validation failed: {len(validation.errors)} error(s)")
            return failure_result(classify_error(ErrorFactory.invalid_input(validation.errors)), trace, warnings)

        sender = check_signer(self.signer)

        if config.preflight_validation and config.network_stability_check:
            with trace.stage("network_stability"):
                report = await check_network_stability(self.network, sleep=self._sleep)
            if not report.stable:
                raise ErrorFactory.service_unavailable(report.reason or "Network unstable")
            self._info(f"Network stable: avg {report.average_ms:.0f}ms, max {report.max_ms:.0f}ms")

        resolver = self.resolver or AssociatedTokenAccountResolver(self.network, self.mint)
        with trace.stage("plan"):
            batch_plan = await plan(
                validation.recipients, config.batch_size, resolver,
                config=config, decimals=None, sleep=self._sleep,
            )
        warnings.extend(w for w in batch_plan.warnings if w not in warnings)

        fee = estimate_plan_fee(batch_plan, config.priority_fee)
        self._info(f"Planned {len(batch_plan)} batch(es), {batch_plan.accounts_to_create} account(s) "
                   f"to create, estimated fee {fee.estimated_fee} lamports")

        if config.preflight_validation:
            with trace.stage("check_balance"):
                await check_token_balance(self.network, resolver, sender, batch_plan.total_amount)
                if config.validate_balance:
                    await check_fee_balance(self.network, sender, fee.estimated_fee)

        builder = self.instruction_builder or AirdropInstructionBuilder(sender, self.mint, config.priority_fee)
        self.executor = BatchExecutor(
            self.network, self.signer, config, builder,
            monitor=self.monitor, sleep=self._sleep, clock=self._clock,
        )
        log_operation_event("operation_started", self.name, extra={"batches": len(batch_plan)})
        result = await self.executor.execute_all(
            batch_plan.batches,
            self.progress_callback,
            estimated_fee=fee.estimated_fee,
            warnings=warnings,
        )
        log_operation_event("operation_completed" if result.success else "operation_failed", self.name,
                            extra={"success_rate": result.success_rate})
        return result

    def get_progress(self) -> Optional[Progress]:
        if self.executor is None or self.executor.progress is None:
            return None
        return self.executor.progress.snapshot()

    def get_batch_status(self) -> List[Dict[str, Any]]:
        if self.executor is None:
            return []
        return [b.snapshot() for b in self.executor.batches]


async def airdrop_tokens_batch(
    network: NetworkClient,
    signer: Signer,
    mint: str,
    recipients: Sequence[Any],
    config: Optional[BatchConfig] = None,
    progress_callback: Optional[ProgressCallback] = None,
    monitor: Optional[ConnectionHealthMonitor] = None,
    **kwargs,
) -> OperationResult:
    """
    Plan and execute a batched airdrop; see ``BatchAirdropOperation``.

    Callers making repeated airdrops should create one
    ``ConnectionHealthMonitor`` per endpoint and pass it on every call.
    """
    operation = BatchAirdropOperation(
        network, signer, mint, recipients, config,
        monitor=monitor, progress_callback=progress_callback, **kwargs,
    )
    return await operation.execute()

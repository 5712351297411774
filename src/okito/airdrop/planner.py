"""
Recipient intake and batch planning.

Amounts are normalized once, here, into integer base units. Planning resolves
every destination account before partitioning, so ``accounts_to_create`` is
decided from finished existence checks.
"""
from __future__ import annotations

import asyncio
import math
from dataclasses import dataclass, field
from decimal import ROUND_DOWN, Decimal, InvalidOperation
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Iterable, Iterator, List, Optional, Sequence, Tuple

from okito.core.config import DEFAULT_BATCH_SIZE, MAX_BATCH_SIZE, BatchConfig
from okito.core.errors import ErrorCode, ErrorFactory, OkitoError
from okito.core.network import AccountResolver
from okito.core.result import Err
from okito.core.retry import RetryConfig, with_retry
from okito.core.types import ValidationResult
from okito.solana.accounts import is_valid_address
from okito.utils.logger import get_logger

logger = get_logger(__name__)

U64_MAX = 2 ** 64 - 1
LARGE_AIRDROP_RECIPIENTS = 10_000
SUSPICIOUS_AMOUNT = 10 ** 18
ACCOUNT_CHECK_RETRIES = 5

# 1s, 2s, 4s, capped at 5s
ACCOUNT_CHECK_RETRY = RetryConfig(base_delay=1.0, max_delay=5.0, backoff_factor=2.0, jitter=0.0)


class RecipientStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class BatchStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    RETRYING = "retrying"


@dataclass(frozen=True)
class Recipient:
    address: str
    amount: int


def parse_amount(value: Any, decimals: Optional[int] = None) -> int:
    """
    Normalize a caller amount into integer base units.

    Accepts int, Decimal, float and numeric strings. With ``decimals`` the
    value is treated as a UI amount and scaled. Fractions of a base unit are
    floored. Scientific notation in strings, non-positive values and values above u64
    are rejected with INVALID_AMOUNT.
    """
    if isinstance(value, bool) or value is None:
        raise OkitoError(ErrorCode.INVALID_AMOUNT, f"Invalid amount: {value!r}")

    if isinstance(value, int):
        raw = Decimal(value)
    elif isinstance(value, Decimal):
        raw = value
    elif isinstance(value, float):
        raw = Decimal(repr(value))
    else:
        text = str(value).strip()
        if not text:
            raise OkitoError(ErrorCode.INVALID_AMOUNT, "Amount is required")
        if "e" in text.lower():
            raise OkitoError(ErrorCode.INVALID_AMOUNT, f"Scientific notation is not supported: {text}")
        try:
            raw = Decimal(text)
        except InvalidOperation:
            raise OkitoError(ErrorCode.INVALID_AMOUNT, f"Invalid amount format: {text}") from None

    if not raw.is_finite():
        raise OkitoError(ErrorCode.INVALID_AMOUNT, f"Invalid amount: {value}")

    if decimals:
        raw = raw.scaleb(decimals)
    amount = int(raw.to_integral_value(rounding=ROUND_DOWN))

    if amount <= 0:
        raise OkitoError(ErrorCode.INVALID_AMOUNT, f"Amount must be greater than 0, got {value}")
    if amount > U64_MAX:
        raise OkitoError(ErrorCode.INVALID_AMOUNT, f"Amount exceeds maximum u64 value: {value}")
    return amount


def _unpack(entry: Any) -> Tuple[Any, Any]:
    if isinstance(entry, Recipient):
        return entry.address, entry.amount
    if isinstance(entry, dict):
        return entry.get("address"), entry.get("amount")
    if isinstance(entry, (tuple, list)) and len(entry) == 2:
        return entry[0], entry[1]
    return getattr(entry, "address", None), getattr(entry, "amount", None)


@dataclass
class RecipientValidation(ValidationResult):
    recipients: List[Recipient] = field(default_factory=list)
    summary: Dict[str, Any] = field(default_factory=dict)


def validate_recipients(
    recipients: Sequence[Any],
    decimals: Optional[int] = None,
    batch_size: int = DEFAULT_BATCH_SIZE,
    address_validator: Callable[[Any], bool] = is_valid_address,
) -> RecipientValidation:
    """
    Check a recipient list without touching the network.

    Duplicate addresses are reported as warnings and kept as separate
    entries; amounts are never merged.
    """
    result = RecipientValidation()
    if not recipients:
        result.add_error("At least one recipient is required")
        return result

    if len(recipients) > LARGE_AIRDROP_RECIPIENTS:
        result.add_warning(f"Very large airdrop ({len(recipients)} recipients). Consider splitting into smaller runs.")

    seen: Dict[str, int] = {}
    duplicates = 0
    total = 0
    for position, entry in enumerate(recipients, start=1):
        address, raw_amount = _unpack(entry)
        address = address.strip() if isinstance(address, str) else address

        if not address:
            result.add_error(f"Recipient {position}: address is required")
            continue
        if not address_validator(address):
            result.add_error(f"Recipient {position}: invalid address {address}")
            continue

        try:
            amount = parse_amount(raw_amount, decimals)
        except OkitoError as e:
            result.add_error(f"Recipient {position}: {e.message}")
            continue

        if amount > SUSPICIOUS_AMOUNT:
            result.add_warning(f"Recipient {position}: very large amount {amount}. Please verify.")

        if address in seen:
            duplicates += 1
            if seen[address] == amount:
                result.add_warning(f"Duplicate recipient address: {address} (position {position})")
            else:
                result.add_warning(
                    f"Recipient {address} appears with different amounts ({seen[address]} and {amount}, "
                    f"position {position}); entries are not merged"
                )
        else:
            seen[address] = amount

        total += amount
        result.recipients.append(Recipient(address, amount))

    size = min(max(batch_size, 1), MAX_BATCH_SIZE)
    result.summary = {
        "total_recipients": len(recipients),
        "unique_addresses": len(seen),
        "duplicates": duplicates,
        "total_amount": total,
        "estimated_batches": math.ceil(len(result.recipients) / size) if result.recipients else 0,
    }
    return result


@dataclass
class RecipientRecord:
    address: str
    amount: int
    destination_account: str
    batch_index: int
    status: RecipientStatus = RecipientStatus.PENDING


@dataclass(frozen=True)
class AccountCreation:
    owner: str
    destination_account: str


_BATCH_MUTABLE = frozenset({"status", "attempts", "transaction_id", "last_error", "estimated_fee"})


@dataclass
class Batch:
    """
    One planned submission.

    Only ``status``, ``attempts``, ``transaction_id``, ``last_error`` and
    the executor-filled ``estimated_fee`` may change after planning.
    """

    index: int
    recipients: Tuple[RecipientRecord, ...]
    accounts_to_create: Tuple[AccountCreation, ...]
    total_amount: int
    status: BatchStatus = BatchStatus.PENDING
    attempts: int = 0
    transaction_id: Optional[str] = None
    last_error: Optional[str] = None
    estimated_fee: int = 0

    def __post_init__(self):
        if sum(r.amount for r in self.recipients) != self.total_amount:
            raise OkitoError(ErrorCode.INTERNAL_ERROR, f"Batch {self.index}: total_amount mismatch")
        object.__setattr__(self, "_planned", True)

    def __setattr__(self, name, value):
        if getattr(self, "_planned", False) and name not in _BATCH_MUTABLE:
            raise AttributeError(f"Batch.{name} is fixed once planned")
        object.__setattr__(self, name, value)

    def set_recipient_status(self, status: RecipientStatus) -> None:
        for record in self.recipients:
            record.status = status

    def snapshot(self) -> Dict[str, Any]:
        return {
            "index": self.index,
            "status": self.status.value,
            "recipients": len(self.recipients),
            "accounts_to_create": len(self.accounts_to_create),
            "total_amount": self.total_amount,
            "attempts": self.attempts,
            "transaction_id": self.transaction_id,
            "last_error": self.last_error,
            "estimated_fee": self.estimated_fee,
        }


@dataclass
class BatchPlan:
    batches: List[Batch]
    warnings: List[str] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.batches)

    def __iter__(self) -> Iterator[Batch]:
        return iter(self.batches)

    def __getitem__(self, index: int) -> Batch:
        return self.batches[index]

    @property
    def total_amount(self) -> int:
        return sum(b.total_amount for b in self.batches)

    @property
    def total_recipients(self) -> int:
        return sum(len(b.recipients) for b in self.batches)

    @property
    def accounts_to_create(self) -> int:
        return sum(len(b.accounts_to_create) for b in self.batches)


async def resolve_account_exists(
    resolver: AccountResolver,
    destination: str,
    retries: int = ACCOUNT_CHECK_RETRIES,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> bool:
    """
    Existence check with backoff for transient failures.

    A definitive answer ends the loop at once. When every attempt fails
    transiently the account is assumed missing; creation instructions are
    idempotent so this is safe.
    """
    outcome = await with_retry(
        lambda: resolver.exists(destination),
        ACCOUNT_CHECK_RETRY,
        max_attempts=retries,
        sleep=sleep,
        name=f"account check {destination[:8]}",
    )
    if isinstance(outcome, Err):
        if not outcome.retryable:
            outcome.unwrap()
        logger.warning(
            f"Failed to check account existence for {destination}, assuming it doesn't exist: "
            f"{outcome.error.message}"
        )
        return False
    return bool(outcome.value)


async def resolve_destinations(
    resolver: AccountResolver,
    destinations: Iterable[str],
    retries: int = ACCOUNT_CHECK_RETRIES,
    chunk_size: int = 50,
    chunk_pause: float = 0.1,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> Dict[str, bool]:
    """Existence of each unique destination, checked concurrently in chunks."""
    unique = list(dict.fromkeys(destinations))
    resolved: Dict[str, bool] = {}
    for start in range(0, len(unique), chunk_size):
        chunk = unique[start:start + chunk_size]
        tasks = [asyncio.ensure_future(resolve_account_exists(resolver, d, retries, sleep)) for d in chunk]
        try:
            results = await asyncio.gather(*tasks)
        except BaseException:
            # first failure wins; siblings are cancelled and reaped
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise
        resolved.update(zip(chunk, results))
        if start + chunk_size < len(unique):
            await sleep(chunk_pause)
    return resolved


def partition(records: Sequence[RecipientRecord], existing: Dict[str, bool], batch_size: int) -> List[Batch]:
    """Fixed-size, order-preserving batches; only the last may be short."""
    batches: List[Batch] = []
    for index, start in enumerate(range(0, len(records), batch_size)):
        members = tuple(records[start:start + batch_size])
        creations: Dict[str, AccountCreation] = {}
        for record in members:
            if not existing.get(record.destination_account, False):
                creations.setdefault(
                    record.destination_account, AccountCreation(record.address, record.destination_account)
                )
        batches.append(Batch(
            index=index,
            recipients=members,
            accounts_to_create=tuple(creations.values()),
            total_amount=sum(r.amount for r in members),
        ))
    return batches


async def plan(
    recipients: Sequence[Any],
    batch_size: int,
    account_resolver: AccountResolver,
    *,
    config: Optional[BatchConfig] = None,
    decimals: Optional[int] = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> BatchPlan:
    """
    Validate, resolve destination accounts and partition into batches.

    Raises ``OkitoError(INVALID_INPUT)`` before any network call when a
    recipient is invalid, and TOKEN_ACCOUNT_NOT_FOUND when a destination is
    missing while account creation is disabled.
    """
    config = config or BatchConfig()
    warnings: List[str] = []

    size = min(max(batch_size, 1), MAX_BATCH_SIZE)
    if size != batch_size:
        warnings.append(f"batch_size {batch_size} clamped to {size}")

    validation = validate_recipients(recipients, decimals, size)
    if not validation.is_valid:
        error = ErrorFactory.invalid_input(validation.errors)
        error.details["warnings"] = list(validation.warnings)
        raise error
    warnings.extend(validation.warnings)

    owners = validation.recipients
    destinations = [account_resolver.derive(r.address) for r in owners]

    existing = await resolve_destinations(
        account_resolver,
        destinations,
        retries=config.account_check_retries,
        chunk_size=config.resolution_chunk_size,
        chunk_pause=config.resolution_chunk_pause_ms / 1000,
        sleep=sleep,
    )

    missing = [r.address for r, d in zip(owners, destinations) if not existing[d]]
    if missing and not config.create_recipient_accounts:
        raise OkitoError(
            ErrorCode.TOKEN_ACCOUNT_NOT_FOUND,
            f"{len(missing)} recipient(s) have no token account and auto-creation is disabled",
            details={"recipients": missing},
        )

    records = [
        RecipientRecord(r.address, r.amount, d, batch_index=i // size)
        for i, (r, d) in enumerate(zip(owners, destinations))
    ]
    batches = partition(records, existing, size)

    logger.info(
        f"Planned {len(batches)} batch(es) for {len(records)} recipient(s), "
        f"{len(missing)} account(s) to create"
    )
    return BatchPlan(batches=batches, warnings=warnings)

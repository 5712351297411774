"""Тесты для нормализации сумм и планирования батчей"""
import asyncio
from decimal import Decimal

import pytest

from conftest import FakeResolver, make_addresses
from okito.airdrop.planner import (
    U64_MAX,
    Batch,
    BatchStatus,
    Recipient,
    RecipientRecord,
    parse_amount,
    partition,
    plan,
    resolve_account_exists,
    resolve_destinations,
    validate_recipients,
)
from okito.core.config import BatchConfig
from okito.core.errors import ErrorCode, NetworkError, OkitoError


class TestParseAmount:
    """Tests for parse_amount"""

    @pytest.mark.parametrize("value, expected", [
        (1000, 1000),
        ("1000", 1000),
        (" 42 ", 42),
        (Decimal("7"), 7),
        ("12.9", 12),
        (str(U64_MAX), U64_MAX),
    ])
    def test_base_units(self, value, expected):
        assert parse_amount(value) == expected

    @pytest.mark.parametrize("value, decimals, expected", [
        ("1.5", 6, 1_500_000),
        ("0.000001", 6, 1),
        (2, 9, 2_000_000_000),
        ("1.23456789", 2, 123),
    ])
    def test_ui_amounts(self, value, decimals, expected):
        assert parse_amount(value, decimals) == expected

    @pytest.mark.parametrize("value, decimals, expected", [
        (Decimal("1E+3"), None, 1000),
        (Decimal("1000").normalize(), None, 1000),
        (1e16, None, 10 ** 16),
        (2.5, 6, 2_500_000),
        (Decimal("1.5E-3"), 9, 1_500_000),
    ])
    def test_numeric_objects_with_exponent_form(self, value, decimals, expected):
        assert parse_amount(value, decimals) == expected

    @pytest.mark.parametrize("value", [float("nan"), float("inf"), Decimal("-1E+2")])
    def test_rejected_numeric_objects(self, value):
        with pytest.raises(OkitoError) as exc_info:
            parse_amount(value)
        assert exc_info.value.code == ErrorCode.INVALID_AMOUNT

    @pytest.mark.parametrize("value", ["0", -5, "-5", "", "abc", "1e5", "1E-3", None, True, "NaN", "Infinity"])
    def test_rejected(self, value):
        with pytest.raises(OkitoError) as exc_info:
            parse_amount(value)
        assert exc_info.value.code == ErrorCode.INVALID_AMOUNT

    def test_rounds_to_zero(self):
        with pytest.raises(OkitoError):
            parse_amount("0.0000001", 6)

    def test_above_u64(self):
        with pytest.raises(OkitoError) as exc_info:
            parse_amount(U64_MAX + 1)
        assert "u64" in exc_info.value.message


class TestValidateRecipients:
    """Tests for validate_recipients"""

    def test_empty(self):
        result = validate_recipients([])
        assert not result.is_valid
        assert result.errors == ["At least one recipient is required"]

    def test_accepts_mixed_shapes(self):
        a, b, c = make_addresses(3)
        result = validate_recipients([Recipient(a, 1), {"address": b, "amount": "2"}, (c, 3)])

        assert result.is_valid
        assert [r.amount for r in result.recipients] == [1, 2, 3]
        assert result.summary["total_amount"] == 6
        assert result.summary["estimated_batches"] == 1

    def test_reports_every_bad_entry(self):
        (good,) = make_addresses(1)
        result = validate_recipients([
            {"address": good, "amount": "0"},
            {"address": "not-an-address", "amount": 5},
            {"address": good, "amount": -5},
            {"address": "", "amount": 1},
        ])

        assert not result.is_valid
        assert len(result.errors) == 4
        assert result.errors[0].startswith("Recipient 1:")
        assert "invalid address" in result.errors[1]

    def test_duplicates_warn_and_are_kept(self):
        a, b = make_addresses(2)
        result = validate_recipients([(a, 10), (b, 5), (a, 10), (a, 20)])

        assert result.is_valid
        assert len(result.recipients) == 4
        assert any(w.startswith(f"Duplicate recipient address: {a}") for w in result.warnings)
        assert any("different amounts" in w for w in result.warnings)
        assert result.summary["duplicates"] == 2
        assert result.summary["unique_addresses"] == 2
        assert result.summary["total_amount"] == 45

    def test_suspicious_amount_warning(self):
        (a,) = make_addresses(1)
        result = validate_recipients([(a, 10 ** 19)])
        assert result.is_valid
        assert "very large amount" in result.warnings[0]

    def test_decimals(self):
        (a,) = make_addresses(1)
        assert validate_recipients([(a, "2.5")], decimals=3).recipients[0].amount == 2500


def records(amounts):
    return [RecipientRecord(f"owner{i}", amount, f"ata-owner{i}", 0) for i, amount in enumerate(amounts)]


class TestPartition:
    """Tests for partition"""

    @pytest.mark.parametrize("count, size, expected", [
        (47, 15, [15, 15, 15, 2]),
        (45, 15, [15, 15, 15]),
        (1, 20, [1]),
        (21, 20, [20, 1]),
    ])
    def test_sizes(self, count, size, expected):
        batches = partition(records([1] * count), {}, size)
        assert [len(b.recipients) for b in batches] == expected
        assert [b.index for b in batches] == list(range(len(expected)))

    def test_order_and_sums(self):
        amounts = list(range(1, 48))
        batches = partition(records(amounts), {}, 15)

        flattened = [r.amount for b in batches for r in b.recipients]
        assert flattened == amounts
        assert sum(b.total_amount for b in batches) == sum(amounts)
        for batch in batches:
            assert batch.total_amount == sum(r.amount for r in batch.recipients)

    def test_creations_only_for_missing(self):
        recs = records([1, 2, 3])
        batches = partition(recs, {"ata-owner0": True, "ata-owner1": False, "ata-owner2": False}, 15)
        assert [c.owner for c in batches[0].accounts_to_create] == ["owner1", "owner2"]

    def test_duplicate_owner_created_once_per_batch(self):
        recs = [RecipientRecord("owner", 1, "ata-owner", 0), RecipientRecord("owner", 2, "ata-owner", 0)]
        batches = partition(recs, {"ata-owner": False}, 15)
        assert len(batches[0].accounts_to_create) == 1
        assert len(batches[0].recipients) == 2

    def test_deterministic(self):
        recs = records([5, 6, 7, 8])
        first = partition(recs, {}, 3)
        second = partition(recs, {}, 3)
        assert [b.snapshot() for b in first] == [b.snapshot() for b in second]


class TestBatch:
    """Tests for Batch"""

    def test_planned_fields_are_fixed(self):
        batch = partition(records([1, 2]), {}, 15)[0]
        with pytest.raises(AttributeError):
            batch.total_amount = 99
        with pytest.raises(AttributeError):
            batch.recipients = ()

        batch.status = BatchStatus.RETRYING
        batch.attempts = 2
        assert batch.snapshot()["status"] == "retrying"
        assert batch.snapshot()["attempts"] == 2

    def test_total_amount_must_match(self):
        with pytest.raises(OkitoError) as exc_info:
            Batch(index=0, recipients=tuple(records([1, 2])), accounts_to_create=(), total_amount=5)
        assert exc_info.value.code == ErrorCode.INTERNAL_ERROR


class TestResolveAccount:
    """Tests for resolve_account_exists"""

    @pytest.mark.asyncio
    async def test_backoff_then_success(self, network, resolver, sleep):
        network.fail("get_account_exists", NetworkError("reset", code="connection"),
                     NetworkError("429", code="rate_limited"))

        exists = await resolve_account_exists(resolver, "ata-x", retries=5, sleep=sleep)

        assert exists is True
        assert sleep.delays == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_exhausted_assumes_missing(self, network, resolver, sleep):
        network.fail("get_account_exists", *[NetworkError("reset", code="connection") for _ in range(5)])

        exists = await resolve_account_exists(resolver, "ata-x", retries=5, sleep=sleep)

        assert exists is False
        assert network.count("get_account_exists") == 5
        assert sleep.delays == [1.0, 2.0, 4.0, 5.0]

    @pytest.mark.asyncio
    async def test_missing_is_definitive(self, network, resolver, sleep):
        network.missing_accounts.add("ata-x")

        assert await resolve_account_exists(resolver, "ata-x", sleep=sleep) is False
        assert network.count("get_account_exists") == 1

    @pytest.mark.asyncio
    async def test_non_retryable_propagates(self, network, resolver, sleep):
        network.fail("get_account_exists", OkitoError(ErrorCode.INVALID_ADDRESS, "bad"))

        with pytest.raises(OkitoError):
            await resolve_account_exists(resolver, "ata-x", sleep=sleep)


class StallingResolver:
    """Первый адрес падает сразу, остальные висят до отмены"""

    def __init__(self):
        self.cancelled = []

    def derive(self, owner):
        return f"ata-{owner}"

    async def exists(self, account):
        if account == "ata-bad":
            raise OkitoError(ErrorCode.INVALID_ADDRESS, "bad")
        try:
            await asyncio.Event().wait()
        except asyncio.CancelledError:
            self.cancelled.append(account)
            raise
        return True


class TestResolveDestinations:
    """Tests for resolve_destinations"""

    @pytest.mark.asyncio
    async def test_failure_cancels_siblings(self, sleep):
        resolver = StallingResolver()

        with pytest.raises(OkitoError) as exc_info:
            await resolve_destinations(resolver, ["ata-bad", "ata-a", "ata-b"], sleep=sleep)

        assert exc_info.value.code == ErrorCode.INVALID_ADDRESS
        assert sorted(resolver.cancelled) == ["ata-a", "ata-b"]

    @pytest.mark.asyncio
    async def test_deduplicates(self, network, resolver, sleep):
        network.missing_accounts.add("ata-b")

        resolved = await resolve_destinations(resolver, ["ata-a", "ata-b", "ata-a"], sleep=sleep)

        assert resolved == {"ata-a": True, "ata-b": False}
        assert network.count("get_account_exists") == 2


class TestPlan:
    """Tests for plan"""

    @pytest.mark.asyncio
    async def test_plan_47(self, network, resolver, sleep):
        addresses = make_addresses(47)
        network.missing_accounts.update(f"ata-{a}" for a in addresses[:10])

        batch_plan = await plan([(a, 100) for a in addresses], 15, resolver, sleep=sleep)

        assert [len(b.recipients) for b in batch_plan] == [15, 15, 15, 2]
        assert batch_plan.total_amount == 4700
        assert batch_plan.total_recipients == 47
        assert batch_plan.accounts_to_create == 10
        assert all(r.batch_index == b.index for b in batch_plan for r in b.recipients)
        assert all(b.status == BatchStatus.PENDING for b in batch_plan)

    @pytest.mark.asyncio
    async def test_batch_size_clamped_with_warning(self, resolver, sleep):
        batch_plan = await plan([(a, 1) for a in make_addresses(25)], 50, resolver, sleep=sleep)

        assert [len(b.recipients) for b in batch_plan] == [20, 5]
        assert "batch_size 50 clamped to 20" in batch_plan.warnings

    @pytest.mark.asyncio
    async def test_invalid_recipient_makes_no_network_call(self, network, resolver, sleep):
        a, b = make_addresses(2)

        with pytest.raises(OkitoError) as exc_info:
            await plan([(a, "0"), (b, -5)], 15, resolver, sleep=sleep)

        assert exc_info.value.code == ErrorCode.INVALID_INPUT
        assert len(exc_info.value.details["errors"]) == 2
        assert network.calls == []

    @pytest.mark.asyncio
    async def test_creation_disabled(self, network, resolver, sleep):
        a, b = make_addresses(2)
        network.missing_accounts.add(f"ata-{b}")

        with pytest.raises(OkitoError) as exc_info:
            await plan([(a, 1), (b, 1)], 15, resolver,
                       config=BatchConfig(create_recipient_accounts=False), sleep=sleep)

        assert exc_info.value.code == ErrorCode.TOKEN_ACCOUNT_NOT_FOUND
        assert exc_info.value.details == {"recipients": [b]}

    @pytest.mark.asyncio
    async def test_duplicate_destinations_resolved_once(self, network, resolver, sleep):
        (a,) = make_addresses(1)

        batch_plan = await plan([(a, 1), (a, 2)], 15, resolver, sleep=sleep)

        assert network.count("get_account_exists") == 1
        assert batch_plan.total_amount == 3
        assert any("different amounts" in w for w in batch_plan.warnings)

    @pytest.mark.asyncio
    async def test_resolution_chunks(self, network, sleep):
        resolver = FakeResolver(network)
        config = BatchConfig(resolution_chunk_size=10, resolution_chunk_pause_ms=250)

        await plan([(a, 1) for a in make_addresses(25)], 15, resolver, config=config, sleep=sleep)

        assert sleep.delays == [0.25, 0.25]
        assert network.count("get_account_exists") == 25

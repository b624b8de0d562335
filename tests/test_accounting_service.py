from __future__ import annotations

from datetime import timedelta
from decimal import Decimal

import pytest

from credit_ledger.db.memory import InMemoryDBManager
from credit_ledger.errors import (
    InsufficientCredits,
    InvalidAdjustment,
    InvalidAmount,
    PackageNotFound,
)
from credit_ledger.logging.audit_logger import AuditLogger
from credit_ledger.models.ledger import LedgerEntryType
from credit_ledger.services.accounting_service import AccountingEngine

from conftest import build_stack


@pytest.mark.asyncio
async def test_purchase_then_deduct(stack):
    package = await stack.package(credits=100, validity_days=90)
    user_id = "user-1"

    result = await stack.engine.purchase(user_id=user_id, package_id=package.id)
    assert result.credits_added == 100
    assert result.new_balance == Decimal("100")
    assert result.expires_at == stack.clock.now + timedelta(days=90)
    assert result.transaction.package_name == package.name
    assert result.transaction.credits_purchased == 100
    assert result.transaction.amount == package.price

    balance = await stack.engine.get_balance(user_id)
    assert balance.total == 100
    assert balance.available == 100

    usage = await stack.engine.deduct(user_id=user_id, amount=30, description="test")
    assert usage.type == LedgerEntryType.USAGE
    assert usage.credit == 30
    assert usage.debit == 0
    assert usage.balance == 70
    assert usage.description == "test"

    balance = await stack.engine.get_balance(user_id)
    assert balance.available == 70
    assert balance.used == 30
    assert balance.total == 100
    await stack.assert_consistent(user_id)


@pytest.mark.asyncio
async def test_purchase_records_payment_details(stack):
    package = await stack.package()

    default = await stack.engine.purchase(user_id="u", package_id=package.id)
    assert default.transaction.payment_method == "manual"
    assert default.transaction.status.value == "completed"

    paid = await stack.engine.purchase(
        user_id="u",
        package_id=package.id,
        payment_method="stripe",
        payment_transaction_id="pi_123",
    )
    assert paid.transaction.payment_method == "stripe"
    assert paid.transaction.payment_transaction_id == "pi_123"

    entry = await stack.purchase_entry("u", paid.transaction.id)
    assert entry.debit == 100
    assert entry.expires_at == paid.expires_at
    assert entry.metadata["transaction_id"] == paid.transaction.id


@pytest.mark.asyncio
async def test_deduct_consumes_soonest_expiring_purchase_first(stack):
    p1 = await stack.package(credits=50, validity_days=10, name="P1")
    p2 = await stack.package(credits=30, validity_days=5, name="P2")
    user_id = "user-1"

    r1 = await stack.engine.purchase(user_id=user_id, package_id=p1.id)
    stack.clock.advance(minutes=1)
    r2 = await stack.engine.purchase(user_id=user_id, package_id=p2.id)
    e1 = await stack.purchase_entry(user_id, r1.transaction.id)
    e2 = await stack.purchase_entry(user_id, r2.transaction.id)

    usage = await stack.engine.deduct(user_id=user_id, amount=40, description="batch")
    assert usage.metadata["used_ledger_ids"] == [e2.id, e1.id]
    assert usage.metadata["allocations"] == {e2.id: "30.00", e1.id: "10.00"}
    assert "adjustment_credits" not in usage.metadata

    e1 = await stack.db.get_ledger_entry(e1.id)
    e2 = await stack.db.get_ledger_entry(e2.id)
    assert e2.credit == 30
    assert e1.credit == 10
    assert (await stack.engine.get_balance(user_id)).available == 40
    await stack.assert_consistent(user_id)


@pytest.mark.asyncio
async def test_same_expiry_consumes_older_purchase_first(stack):
    package = await stack.package(credits=20, validity_days=30)
    first = await stack.engine.purchase(user_id="u", package_id=package.id)
    second = await stack.engine.purchase(user_id="u", package_id=package.id)

    usage = await stack.engine.deduct(user_id="u", amount=25, description="x")
    e1 = await stack.purchase_entry("u", first.transaction.id)
    e2 = await stack.purchase_entry("u", second.transaction.id)
    assert usage.metadata["used_ledger_ids"] == [e1.id, e2.id]
    assert e1.credit == 20
    assert e2.credit == 5


@pytest.mark.asyncio
async def test_caller_metadata_is_kept_on_usage_entry(stack):
    package = await stack.package()
    await stack.engine.purchase(user_id="u", package_id=package.id)

    usage = await stack.engine.deduct(
        user_id="u", amount=1, description="api call", metadata={"request_id": "r-9"}
    )
    assert usage.metadata["request_id"] == "r-9"
    assert len(usage.metadata["used_ledger_ids"]) == 1


@pytest.mark.asyncio
async def test_insufficient_credits_leaves_state_unchanged(stack):
    package = await stack.package(credits=100)
    await stack.engine.purchase(user_id="u", package_id=package.id)
    before = await stack.engine.get_balance("u")

    with pytest.raises(InsufficientCredits) as excinfo:
        await stack.engine.deduct(user_id="u", amount=150, description="too much")
    assert excinfo.value.requested == 150
    assert excinfo.value.available == 100

    assert await stack.engine.get_balance("u") == before
    entries = await stack.ledger("u")
    assert [e.type for e in entries] == [LedgerEntryType.PURCHASE]
    assert entries[0].credit == 0


@pytest.mark.asyncio
async def test_deduct_for_unknown_user_is_insufficient(stack):
    with pytest.raises(ValueError, match="insufficient credits"):
        await stack.engine.deduct(user_id="nobody", amount=1, description="x")
    assert await stack.db.get_credit_summary("nobody") is None


@pytest.mark.asyncio
@pytest.mark.parametrize("amount", [0, -5, "abc", Decimal("NaN"), True, None])
async def test_deduct_rejects_invalid_amounts(stack, amount):
    package = await stack.package()
    await stack.engine.purchase(user_id="u", package_id=package.id)

    with pytest.raises(InvalidAmount):
        await stack.engine.deduct(user_id="u", amount=amount, description="bad")
    assert (await stack.engine.get_balance("u")).available == 100


@pytest.mark.asyncio
async def test_fractional_amounts_are_quantized(stack):
    package = await stack.package(credits=10)
    await stack.engine.purchase(user_id="u", package_id=package.id)

    usage = await stack.engine.deduct(user_id="u", amount="2.505", description="x")
    assert usage.credit == Decimal("2.51")
    assert (await stack.engine.get_balance("u")).available == Decimal("7.49")
    await stack.assert_consistent("u")


@pytest.mark.asyncio
async def test_purchase_of_unknown_package_writes_nothing(stack):
    with pytest.raises(PackageNotFound):
        await stack.engine.purchase(user_id="u", package_id="missing")

    assert await stack.db.get_credit_summary("u") is None
    page = await stack.engine.list_transactions("u")
    assert page.meta.total == 0
    assert await stack.ledger("u") == []


@pytest.mark.asyncio
async def test_purchase_of_inactive_package_is_rejected(stack):
    package = await stack.package(is_active=False)

    with pytest.raises(PackageNotFound):
        await stack.engine.purchase(user_id="u", package_id=package.id)
    assert (await stack.engine.get_balance("u")).total == 0


@pytest.mark.asyncio
async def test_positive_adjustment_is_spendable(stack):
    result = await stack.engine.adjust(user_id="u", amount=25, description="goodwill")
    assert result.adjustment == 25
    assert result.new_balance == 25
    assert result.entry.type == LedgerEntryType.ADMIN_ADJUSTMENT
    assert result.entry.debit == 25
    assert result.entry.credit == 0

    balance = await stack.engine.get_balance("u")
    assert balance.total == 25
    assert balance.available == 25

    usage = await stack.engine.deduct(user_id="u", amount=10, description="x")
    assert usage.metadata["used_ledger_ids"] == []
    assert usage.metadata["adjustment_credits"] == "10.00"
    await stack.assert_consistent("u")


@pytest.mark.asyncio
async def test_deduction_beyond_purchases_records_adjustment_share(stack):
    package = await stack.package(credits=10)
    await stack.engine.purchase(user_id="u", package_id=package.id)
    await stack.engine.adjust(user_id="u", amount=5, description="bonus")

    usage = await stack.engine.deduct(user_id="u", amount=12, description="x")
    assert sum(Decimal(v) for v in usage.metadata["allocations"].values()) == 10
    assert usage.metadata["adjustment_credits"] == "2.00"
    assert (await stack.engine.get_balance("u")).available == 3
    await stack.assert_consistent("u")


@pytest.mark.asyncio
async def test_negative_adjustment(stack):
    package = await stack.package(credits=100)
    await stack.engine.purchase(user_id="u", package_id=package.id)

    result = await stack.engine.adjust(user_id="u", amount=-40, description="refund")
    assert result.new_balance == 60
    assert result.entry.credit == 40
    assert result.entry.debit == 0

    balance = await stack.engine.get_balance("u")
    assert balance.available == 60
    assert balance.total == 60
    assert balance.used == 0

    # Purchase entries are untouched by adjustments.
    entries = [e for e in await stack.ledger("u") if e.type == LedgerEntryType.PURCHASE]
    assert entries[0].credit == 0
    await stack.assert_consistent("u")


@pytest.mark.asyncio
async def test_negative_adjustment_cannot_overdraw(stack):
    await stack.engine.adjust(user_id="u", amount=5, description="grant")

    with pytest.raises(InvalidAdjustment):
        await stack.engine.adjust(user_id="u", amount=-10, description="clawback")
    assert (await stack.engine.get_balance("u")).available == 5

    await stack.engine.adjust(user_id="u", amount=-5, description="clawback")
    balance = await stack.engine.get_balance("u")
    assert balance.available == 0
    assert balance.total == 0
    await stack.assert_consistent("u")


@pytest.mark.asyncio
async def test_negative_balance_allowed_when_configured(tmp_path):
    stack = build_stack(tmp_path, allow_negative_adjustments=True)

    result = await stack.engine.adjust(user_id="u", amount=-10, description="debt")
    assert result.new_balance == -10

    balance = await stack.engine.get_balance("u")
    assert balance.available == -10
    assert balance.total == -10
    await stack.assert_consistent("u")

    with pytest.raises(InsufficientCredits):
        await stack.engine.deduct(user_id="u", amount=1, description="x")


@pytest.mark.asyncio
async def test_zero_adjustment_is_rejected(stack):
    with pytest.raises(InvalidAmount):
        await stack.engine.adjust(user_id="u", amount=0, description="noop")
    assert await stack.db.get_credit_summary("u") is None


@pytest.mark.asyncio
async def test_balance_of_unknown_user_is_zero(tmp_path):
    db = InMemoryDBManager()
    engine = AccountingEngine(db=db, audit=AuditLogger(file_path=tmp_path / "audit.log"))

    balance = await engine.get_balance("ghost")
    assert balance.user_id == "ghost"
    assert (balance.total, balance.used, balance.available, balance.expired) == (0, 0, 0, 0)
    assert balance.expiring_soon == 0


@pytest.mark.asyncio
async def test_expiring_soon_counts_unconsumed_credits_in_window(stack):
    short = await stack.package(credits=50, validity_days=5)
    long = await stack.package(credits=20, validity_days=30)
    await stack.engine.purchase(user_id="u", package_id=short.id)
    await stack.engine.purchase(user_id="u", package_id=long.id)

    assert (await stack.engine.get_balance("u")).expiring_soon == 50

    await stack.engine.deduct(user_id="u", amount=10, description="x")
    assert (await stack.engine.get_balance("u")).expiring_soon == 40

    stack.clock.advance(days=24)
    await stack.sweeper.run_expiration_sweep()
    balance = await stack.engine.get_balance("u")
    assert balance.expired == 40
    assert balance.expiring_soon == 20


@pytest.mark.asyncio
async def test_list_ledger_newest_first_with_pages(stack):
    package = await stack.package(credits=100)
    await stack.engine.purchase(user_id="u", package_id=package.id)
    for i in range(3):
        stack.clock.advance(minutes=1)
        await stack.engine.deduct(user_id="u", amount=i + 1, description=f"d{i}")

    first = await stack.engine.list_ledger("u", page=1, limit=2)
    assert first.meta.total == 4
    assert first.meta.total_pages == 2
    assert first.meta.page == 1
    assert [e.description for e in first.data] == ["d2", "d1"]

    second = await stack.engine.list_ledger("u", page=2, limit=2)
    assert [e.type for e in second.data] == [LedgerEntryType.USAGE, LedgerEntryType.PURCHASE]

    beyond = await stack.engine.list_ledger("u", page=3, limit=2)
    assert beyond.data == []
    assert beyond.meta.total == 4


@pytest.mark.asyncio
async def test_list_transactions_newest_first(stack):
    small = await stack.package(credits=10, name="Small")
    large = await stack.package(credits=500, name="Large", price="40")
    await stack.engine.purchase(user_id="u", package_id=small.id)
    stack.clock.advance(hours=1)
    await stack.engine.purchase(user_id="u", package_id=large.id)
    await stack.engine.purchase(user_id="someone-else", package_id=large.id)

    page = await stack.engine.list_transactions("u", page=1, limit=10)
    assert page.meta.total == 2
    assert page.meta.total_pages == 1
    assert [t.package_name for t in page.data] == ["Large", "Small"]


@pytest.mark.asyncio
async def test_empty_history_has_no_pages(stack):
    page = await stack.engine.list_ledger("u")
    assert page.data == []
    assert page.meta.total == 0
    assert page.meta.total_pages == 0


@pytest.mark.asyncio
@pytest.mark.parametrize("page, limit", [(0, 10), (1, 0), (1, 101), (-1, 5)])
async def test_invalid_pagination_is_rejected(stack, page, limit):
    with pytest.raises(ValueError):
        await stack.engine.list_ledger("u", page=page, limit=limit)
    with pytest.raises(ValueError):
        await stack.engine.list_transactions("u", page=page, limit=limit)


@pytest.mark.asyncio
async def test_reconcile_detects_drift(stack):
    package = await stack.package(credits=40, validity_days=3)
    await stack.engine.purchase(user_id="u", package_id=package.id)
    await stack.engine.deduct(user_id="u", amount=15, description="x")
    await stack.engine.adjust(user_id="u", amount=5, description="bonus")
    stack.clock.advance(days=4)
    await stack.sweeper.run_expiration_sweep()

    assert await stack.engine.reconcile("u")

    summary = await stack.db.get_credit_summary("u")
    summary.available_credits += 1
    await stack.db.save_credit_summary(summary)
    assert not await stack.engine.reconcile("u")
    assert "does not reconcile" in stack.audit.file_path.read_text()


@pytest.mark.asyncio
async def test_operations_are_audited(stack):
    package = await stack.package()
    await stack.engine.purchase(user_id="u", package_id=package.id, correlation_id="c-1")
    with pytest.raises(InsufficientCredits):
        await stack.engine.deduct(user_id="u", amount=1000, description="x")

    lines = stack.audit.file_path.read_text().splitlines()
    assert any('"Credits purchased"' in line and '"c-1"' in line for line in lines)
    assert any('"Insufficient credits for deduction"' in line for line in lines)


@pytest.mark.asyncio
async def test_huge_amounts_are_invalid_not_crashes(stack):
    package = await stack.package(credits=10)
    await stack.engine.purchase(user_id="u", package_id=package.id)

    with pytest.raises(InvalidAmount):
        await stack.engine.deduct(user_id="u", amount="1e30", description="x")
    with pytest.raises(InvalidAmount):
        await stack.engine.adjust(user_id="u", amount="1e30", description="x")
    assert (await stack.engine.get_balance("u")).available == 10

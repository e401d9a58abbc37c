"""
Unit Tests for Co-Owner Balances and Settlements

Tests:
- Pairwise balance from paid transactions and settlements (antisymmetric)
- Property and user balance listings skip settled pairs
- Settlement validation and the overpayment warning

Run with: pytest tests/test_balances.py -v
"""

from datetime import date
from decimal import Decimal

import pytest

from services.balances import BalanceService
from services.ledger_errors import NotAnOwnerError, SelfSettlementError, SettlementValidationError
from services.ledger_service import LedgerService

MARCH = date(2024, 3, 1)


async def seed(ledger, property_id="prop-1", shares=(("alice", 50), ("bob", 50))):
    await ledger.replace_owners(property_id, [(u, Decimal(str(p))) for u, p in shares])


async def expense(ledger, amount, paid_by, property_id="prop-1"):
    return await LedgerService(ledger).record_transaction(
        property_id=property_id, type="expense", category="Repair",
        amount=amount, transaction_date=MARCH, paid_by_user_id=paid_by,
    )


class TestPairwiseBalance:
    """Test balance derivation."""

    @pytest.mark.asyncio
    async def test_payer_is_owed_other_split(self, ledger):
        await seed(ledger)
        await expense(ledger, 100, "alice")
        service = BalanceService(ledger)

        assert await service.calculate_pairwise_balance("prop-1", "alice", "bob") == Decimal("50.00")
        assert await service.calculate_pairwise_balance("prop-1", "bob", "alice") == Decimal("-50.00")

    @pytest.mark.asyncio
    async def test_payments_offset(self, ledger):
        await seed(ledger, shares=(("alice", 60), ("bob", 40)))
        await expense(ledger, 100, "alice")
        await expense(ledger, 50, "bob")

        balance = await BalanceService(ledger).calculate_pairwise_balance("prop-1", "alice", "bob")

        # bob owes 40, alice owes 30
        assert balance == Decimal("10.00")

    @pytest.mark.asyncio
    async def test_settlement_reduces_balance(self, ledger):
        await seed(ledger)
        await expense(ledger, 100, "alice")
        await ledger.create_settlement("bob", "alice", "prop-1", Decimal("30"), MARCH)

        service = BalanceService(ledger)

        assert await service.calculate_pairwise_balance("prop-1", "alice", "bob") == Decimal("20.00")
        assert await service.calculate_pairwise_balance("prop-1", "bob", "alice") == Decimal("-20.00")

    @pytest.mark.asyncio
    async def test_sixty_forty_expense_then_partial_settlement(self, ledger):
        await seed(ledger, shares=(("alice", 60), ("bob", 40)))
        transaction = await expense(ledger, 1000, "alice")
        service = BalanceService(ledger)

        assert {s.user_id: s.amount for s in transaction.splits} == {
            "alice": Decimal("600.00"), "bob": Decimal("400.00"),
        }
        assert await service.calculate_pairwise_balance("prop-1", "alice", "bob") == Decimal("400.00")

        await service.record_settlement("bob", "alice", "prop-1", 200, MARCH)

        assert await service.calculate_pairwise_balance("prop-1", "alice", "bob") == Decimal("200.00")
        assert await service.calculate_pairwise_balance("prop-1", "bob", "alice") == Decimal("-200.00")

    @pytest.mark.asyncio
    async def test_unpaid_transactions_ignored(self, ledger):
        await seed(ledger)
        await expense(ledger, 100, None)

        assert await BalanceService(ledger).calculate_pairwise_balance("prop-1", "alice", "bob") == 0

    @pytest.mark.asyncio
    async def test_other_property_ignored(self, ledger):
        await seed(ledger)
        await seed(ledger, property_id="prop-2")
        await expense(ledger, 100, "alice", property_id="prop-2")

        assert await BalanceService(ledger).calculate_pairwise_balance("prop-1", "alice", "bob") == 0


class TestBalanceListings:
    """Test property and user balance views."""

    @pytest.mark.asyncio
    async def test_property_balances_skip_settled_pairs(self, ledger):
        await seed(ledger, shares=(("alice", 50), ("bob", 25), ("carol", 25)))
        await expense(ledger, 100, "alice")
        await ledger.create_settlement("carol", "alice", "prop-1", Decimal("25"), MARCH)

        balances = await BalanceService(ledger).get_property_balances("prop-1")

        assert [(b.user_a, b.user_b, b.amount) for b in balances] == [("alice", "bob", Decimal("25.00"))]
        assert balances[0].to_dict() == {"user_a": "alice", "user_b": "bob", "amount": 25.0}

    @pytest.mark.asyncio
    async def test_user_balances_grouped_by_property(self, ledger):
        await seed(ledger)
        await seed(ledger, property_id="prop-2")
        await expense(ledger, 100, "alice")

        result = await BalanceService(ledger).get_user_balances("bob")

        assert len(result) == 1
        assert result[0]["property_id"] == "prop-1"
        assert result[0]["balances"][0].amount == Decimal("50.00")


class TestSettlements:
    """Test recording settlements."""

    @pytest.mark.asyncio
    async def test_record_settlement(self, ledger):
        await seed(ledger)
        await expense(ledger, 100, "alice")

        result = await BalanceService(ledger).record_settlement("bob", "alice", "prop-1", "50", MARCH, notes="March")

        assert result.overpayment_warning is None
        assert result.settlement.amount == Decimal("50.00")
        assert await BalanceService(ledger).get_property_balances("prop-1") == []

    @pytest.mark.asyncio
    async def test_overpayment_warns_but_records(self, ledger):
        await seed(ledger)
        await expense(ledger, 100, "alice")

        result = await BalanceService(ledger).record_settlement("bob", "alice", "prop-1", 80, MARCH)

        assert result.overpayment_warning == "Settling £80.00 but only £50.00 is owed"
        assert len(ledger.settlements) == 1

    @pytest.mark.asyncio
    async def test_overpayment_tolerance(self, ledger):
        await seed(ledger)
        await expense(ledger, 100, "alice")

        result = await BalanceService(ledger, overpayment_tolerance=Decimal("1.00")).record_settlement(
            "bob", "alice", "prop-1", "50.75", MARCH,
        )

        assert result.overpayment_warning is None

    @pytest.mark.asyncio
    async def test_self_settlement(self, ledger):
        with pytest.raises(SelfSettlementError):
            await BalanceService(ledger).record_settlement("alice", "alice", "prop-1", 10, MARCH)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("amount,notes", [(0, None), (-10, None), ("abc", None), (10, "x" * 501)])
    async def test_invalid_settlement(self, ledger, amount, notes):
        await seed(ledger)

        with pytest.raises(SettlementValidationError):
            await BalanceService(ledger).record_settlement("bob", "alice", "prop-1", amount, MARCH, notes=notes)
        assert ledger.settlements == []

    @pytest.mark.asyncio
    async def test_parties_must_be_owners(self, ledger):
        await seed(ledger)

        with pytest.raises(NotAnOwnerError) as exc_info:
            await BalanceService(ledger).record_settlement("bob", "mallory", "prop-1", 10, MARCH)
        assert exc_info.value.user_id == "mallory"

    @pytest.mark.asyncio
    async def test_list_settlements_newest_first(self, ledger):
        await seed(ledger)
        service = BalanceService(ledger)
        await service.record_settlement("bob", "alice", "prop-1", 10, date(2024, 1, 1))
        await service.record_settlement("alice", "bob", "prop-1", 5, date(2024, 2, 1))

        settlements = await service.list_settlements("prop-1")

        assert [s.settlement_date for s in settlements] == [date(2024, 2, 1), date(2024, 1, 1)]

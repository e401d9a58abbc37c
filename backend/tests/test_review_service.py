"""
Unit Tests for Classification and the Pending Review Queue

Tests:
- classify(): auto-import when fully matched with a valid category,
  pending otherwise, pending fallback when the ledger rejects the import
- approve/reject/update of pending transactions
- reprocess_pending() after rule changes, scoped per account
- test_rule() against a sample transaction

Run with: pytest tests/test_review_service.py -v
"""

import json
from datetime import datetime, timezone
from decimal import Decimal

import pytest

from reconciliation.matching_rules import parse_rule
from reconciliation.services.review_service import (
    ClassificationOutcome,
    IncompleteClassificationError,
    PendingTransactionNotFoundError,
    ReviewService,
)
from services.ledger_errors import TransactionValidationError


def contains(value, field="description"):
    return json.dumps({"operator": "AND", "rules": [
        {"field": field, "matchType": "contains", "value": value},
    ]})


@pytest.fixture
def account(store):
    return store.add_account()


@pytest.fixture
def rent_rule(store, account):
    return store.add_rule(
        account.id, contains("rent"),
        name="Rent", property_id="prop-1", type="INCOME", category="Rent",
    )


class TestClassify:
    """Test classification of newly ingested transactions."""

    @pytest.mark.asyncio
    async def test_fully_matched_is_imported(self, store, account, rent_rule):
        store.add_owners("prop-1", [("alice", 60), ("bob", 40)])
        bank_tx = store.add_transaction(
            account.id, amount=Decimal("1200.00"), description="RENT MARCH",
            transaction_date=datetime(2024, 3, 1, 9, 30, tzinfo=timezone.utc),
        )
        review = ReviewService(store)

        outcome = await review.classify(bank_tx, await review.load_rules(account.id))

        assert outcome == ClassificationOutcome.MATCHED
        [ledger_tx] = store.ledger.transactions.values()
        assert ledger_tx.type == "income"
        assert ledger_tx.category == "Rent"
        assert ledger_tx.amount == Decimal("1200.00")
        assert ledger_tx.transaction_date.isoformat() == "2024-03-01"
        assert ledger_tx.is_imported is True
        assert ledger_tx.bank_transaction_id == bank_tx.id
        assert sorted((s.user_id, s.amount) for s in ledger_tx.splits) == [
            ("alice", Decimal("720.00")), ("bob", Decimal("480.00")),
        ]
        assert bank_tx.ledger_transaction_id == ledger_tx.id
        assert store.pending_rows == {}

    @pytest.mark.asyncio
    async def test_money_out_imported_as_positive_amount(self, store, account):
        store.add_rule(account.id, contains("plumb"), property_id="prop-1", type="EXPENSE", category="Repair")
        bank_tx = store.add_transaction(account.id, amount=Decimal("-85.50"), description="PLUMBER")
        review = ReviewService(store)

        await review.classify(bank_tx, await review.load_rules(account.id))

        [ledger_tx] = store.ledger.transactions.values()
        assert ledger_tx.amount == Decimal("85.50")

    @pytest.mark.asyncio
    async def test_partial_match_queued_with_inferred_fields(self, store, account):
        store.add_rule(account.id, contains("rent"), type="INCOME", category="Rent")
        bank_tx = store.add_transaction(account.id, amount=Decimal("900"), description="rent")
        review = ReviewService(store)

        outcome = await review.classify(bank_tx, await review.load_rules(account.id))

        assert outcome == ClassificationOutcome.PENDING
        [pending] = store.pending_rows.values()
        assert pending.bank_transaction_id == bank_tx.id
        assert (pending.property_id, pending.type, pending.category) == (None, "INCOME", "Rent")
        assert store.ledger.transactions == {}

    @pytest.mark.asyncio
    async def test_invalid_category_for_type_queued(self, store, account):
        store.add_rule(account.id, contains("rent"), property_id="prop-1", type="EXPENSE", category="Rent")
        bank_tx = store.add_transaction(account.id, description="rent")
        review = ReviewService(store)

        outcome = await review.classify(bank_tx, await review.load_rules(account.id))

        assert outcome == ClassificationOutcome.PENDING
        assert store.ledger.transactions == {}

    @pytest.mark.asyncio
    async def test_ledger_rejection_falls_back_to_pending(self, store, account, rent_rule):
        bank_tx = store.add_transaction(account.id, amount=Decimal("0"), description="rent")
        review = ReviewService(store)

        outcome = await review.classify(bank_tx, await review.load_rules(account.id))

        assert outcome == ClassificationOutcome.PENDING
        assert len(store.pending_rows) == 1
        assert bank_tx.ledger_transaction_id is None

    @pytest.mark.asyncio
    async def test_account_rules_before_global(self, store, account):
        store.add_rule(None, contains("rent"), priority=0, category="Other")
        store.add_rule(account.id, contains("rent"), priority=0, category="Rent")
        review = ReviewService(store)

        rules = await review.load_rules(account.id)

        assert [r.category for r in rules] == ["Rent", "Other"]

    @pytest.mark.asyncio
    async def test_list_rule_parse_errors(self, store, account, rent_rule):
        broken = store.add_rule(account.id, "{oops", name="Broken")

        errors = await ReviewService(store).list_rule_parse_errors()

        assert [e["id"] for e in errors] == [broken.id]
        assert errors[0]["parse_error"]


class TestReviewQueue:
    """Test manual review operations."""

    @pytest.fixture
    def pending(self, store, account):
        bank_tx = store.add_transaction(
            account.id, amount=Decimal("-120.00"), description="B&Q",
            transaction_date=datetime(2024, 2, 10, tzinfo=timezone.utc),
        )
        return store.add_pending(bank_tx.id, id="p-1")

    @pytest.mark.asyncio
    async def test_approve_with_overrides(self, store, pending):
        ledger_tx = await ReviewService(store).approve_pending(
            pending.id, property_id="prop-9", type="expense", category="Maintenance",
        )

        assert ledger_tx.property_id == "prop-9"
        assert ledger_tx.type == "expense"
        assert ledger_tx.amount == Decimal("120.00")
        assert ledger_tx.transaction_date.isoformat() == "2024-02-10"
        assert pending.bank_transaction.ledger_transaction_id == ledger_tx.id
        assert store.pending_rows == {}

    @pytest.mark.asyncio
    async def test_approve_uses_stored_fields(self, store, pending):
        pending.property_id, pending.type, pending.category = "prop-1", "EXPENSE", "Repair"

        ledger_tx = await ReviewService(store).approve_pending(pending.id)

        assert (ledger_tx.type, ledger_tx.category) == ("expense", "Repair")

    @pytest.mark.asyncio
    async def test_approve_incomplete(self, store, pending):
        with pytest.raises(IncompleteClassificationError):
            await ReviewService(store).approve_pending(pending.id, property_id="prop-1")
        assert "p-1" in store.pending_rows

    @pytest.mark.asyncio
    async def test_approve_invalid_category_keeps_pending(self, store, pending):
        with pytest.raises(TransactionValidationError):
            await ReviewService(store).approve_pending(
                pending.id, property_id="prop-1", type="income", category="Repair",
            )
        assert "p-1" in store.pending_rows

    @pytest.mark.asyncio
    async def test_reject(self, store, pending):
        await ReviewService(store).reject_pending(pending.id)

        assert store.pending_rows == {}
        assert pending.bank_transaction.id in store.transaction_rows
        assert pending.bank_transaction.ledger_transaction_id is None

    @pytest.mark.asyncio
    async def test_update(self, store, pending):
        updated = await ReviewService(store).update_pending(pending.id, {"review_notes": "ask Bob"})

        assert updated.review_notes == "ask Bob"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("operation", ["reject_pending", "approve_pending"])
    async def test_missing(self, store, operation):
        with pytest.raises(PendingTransactionNotFoundError):
            await getattr(ReviewService(store), operation)("missing")

    @pytest.mark.asyncio
    async def test_list_and_count(self, store, account, pending):
        other = store.add_account()
        other_tx = store.add_transaction(other.id)
        store.add_pending(other_tx.id, id="p-2")
        review = ReviewService(store)

        assert await review.count_pending() == 2
        assert await review.count_pending(account.id) == 1
        assert [p.id for p in await review.list_pending(limit=1)] == ["p-2"]


class TestReprocess:
    """Test re-running rules over the pending queue."""

    @pytest.mark.asyncio
    async def test_reprocess_after_rule_added(self, store, account):
        review = ReviewService(store)
        rent_tx = store.add_transaction(account.id, amount=Decimal("950"), description="RENT FLAT 2")
        other_tx = store.add_transaction(account.id, amount=Decimal("-3.00"), description="COFFEE")
        for tx in (rent_tx, other_tx):
            await review.classify(tx, await review.load_rules(account.id))
        assert len(store.pending_rows) == 2

        store.add_rule(account.id, contains("rent"), property_id="prop-1", type="INCOME", category="Rent")
        store.add_rule(account.id, contains("coffee"), type="EXPENSE")
        result = await review.reprocess_pending(account.id)

        assert result.to_dict() == {"processed": 2, "approved": 1, "failed": 0}
        assert rent_tx.ledger_transaction_id is not None
        [remaining] = store.pending_rows.values()
        assert remaining.bank_transaction_id == other_tx.id
        assert remaining.type == "EXPENSE"

    @pytest.mark.asyncio
    async def test_reprocess_scoped_to_account(self, store, account):
        other = store.add_account()
        review = ReviewService(store)
        for acc in (account, other):
            tx = store.add_transaction(acc.id, description="rent")
            await review.classify(tx, [])

        store.add_rule(None, contains("rent"), property_id="prop-1", type="INCOME", category="Rent")
        result = await review.reprocess_pending(other.id)

        assert result.processed == 1
        assert await review.count_pending(account.id) == 1
        assert await review.count_pending(other.id) == 0

    @pytest.mark.asyncio
    async def test_reprocess_counts_failures(self, store, account):
        review = ReviewService(store)
        tx = store.add_transaction(account.id, description="rent")
        await review.classify(tx, [])
        store.add_rule(account.id, contains("rent"), property_id="prop-1", type="INCOME", category="Rent")

        async def broken(*args, **kwargs):
            raise RuntimeError("db down")
        store.ledger.create_transaction = broken

        result = await review.reprocess_pending()

        assert result.to_dict() == {"processed": 1, "approved": 0, "failed": 1}
        assert len(store.pending_rows) == 1


class TestRuleTester:
    """Test dry-running one rule."""

    def test_matching_sample(self, store, account, rent_rule):
        result = ReviewService.test_rule(parse_rule(rent_rule), {"description": "Monthly RENT", "amount": 800})

        assert result["matches"] is True
        assert result["parse_error"] is None
        assert result["result"]["is_fully_matched"] is True

    def test_disabled_rule_still_tested(self, store, account):
        rule = store.add_rule(account.id, contains("rent"), enabled=False, category="Rent")

        result = ReviewService.test_rule(parse_rule(rule), {"description": "rent"})

        assert result["matches"] is True
        assert result["result"]["category"] == "Rent"

    def test_unparseable_rule(self, store, account):
        rule = store.add_rule(account.id, "not json", category="Rent")

        result = ReviewService.test_rule(parse_rule(rule), {"description": "rent"})

        assert result["matches"] is False
        assert result["parse_error"]
        assert result["result"]["matched_rule_ids"] == []

